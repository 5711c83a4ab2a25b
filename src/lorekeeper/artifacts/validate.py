"""构件结构校验：逐字段检查，汇总所有问题后一次性报告。"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from lorekeeper.errors import ArtifactValidationError
from lorekeeper.models.artifact import (
    ARTIFACT_MODELS,
    ENTITY_IMPORTANCE,
    ENTITY_TYPES,
    RELATION_TYPES,
    ArtifactType,
    CharactersArtifact,
    NovelFoundationArtifact,
    OutlineArtifact,
    WorldviewArtifact,
    dump_artifact,
    parse_artifact_type,
)

logger = logging.getLogger(__name__)


def _check_text(
    issues: list[str],
    path: str,
    value: str | None,
    max_len: int,
    required: bool = False,
    trim: bool = False,
) -> None:
    """长度按原始取值的码点数计算；trim=True 时按去空白后的取值计算。"""
    value = value or ""
    if required and not value.strip():
        issues.append(f"{path} is required")
        return
    if len(value.strip() if trim else value) > max_len:
        issues.append(f"{path} too long")


def _check_key(issues: list[str], path: str, key: str, seen: set[str]) -> None:
    key = key.strip()
    if not key:
        issues.append(f"{path}.key is required")
        return
    if key in seen:
        issues.append(f"{path}.key duplicated: {key}")
    else:
        seen.add(key)
    if len(key) > 128:
        issues.append(f"{path}.key too long")


def validate_novel_foundation(a: NovelFoundationArtifact) -> list[str]:
    issues: list[str] = []
    _check_text(issues, "title", a.title, 255, required=True)
    _check_text(issues, "description", a.description, 50000, required=True)
    _check_text(issues, "genre", a.genre, 64)
    return issues


def validate_worldview(a: WorldviewArtifact) -> list[str]:
    issues: list[str] = []
    _check_text(issues, "world_bible", a.world_bible, 200000)
    _check_text(issues, "writing_style", a.writing_style, 5000)
    _check_text(issues, "pov", a.pov, 5000)
    _check_text(issues, "genre", a.genre, 64)
    if a.world_settings.is_empty():
        issues.append("world_settings is required")
    return issues


def validate_characters(a: CharactersArtifact) -> list[str]:
    issues: list[str] = []

    entity_keys: set[str] = set()
    for i, e in enumerate(a.entities):
        path = f"entities[{i}]"
        _check_key(issues, path, e.key, entity_keys)
        _check_text(issues, f"{path}.name", e.name, 128, required=True, trim=True)
        if e.type not in ENTITY_TYPES:
            issues.append(f"{path}.type invalid: {e.type}")
        if e.importance and e.importance not in ENTITY_IMPORTANCE:
            issues.append(f"{path}.importance invalid: {e.importance}")
        _check_text(issues, f"{path}.description", e.description, 20000)
        _check_text(issues, f"{path}.current_state", e.current_state, 20000)

    relation_ids: set[str] = set()
    for i, r in enumerate(a.relations):
        path = f"relations[{i}]"
        source, target = r.source_key.strip(), r.target_key.strip()
        if not source:
            issues.append(f"{path}.source_key is required")
        elif source not in entity_keys:
            issues.append(f"{path}.source_key not found: {source}")
        if not target:
            issues.append(f"{path}.target_key is required")
        elif target not in entity_keys:
            issues.append(f"{path}.target_key not found: {target}")
        if r.relation_type not in RELATION_TYPES:
            issues.append(f"{path}.relation_type invalid: {r.relation_type}")
        elif source and target:
            if r.identity in relation_ids:
                issues.append(f"{path} duplicated: {r.identity}")
            relation_ids.add(r.identity)
        _check_text(issues, f"{path}.description", r.description, 20000)
    return issues


def validate_outline(a: OutlineArtifact) -> list[str]:
    issues: list[str] = []
    volume_keys: set[str] = set()
    # 章节 key 在整部大纲内全局唯一
    chapter_keys: set[str] = set()
    for i, v in enumerate(a.volumes):
        v_path = f"volumes[{i}]"
        _check_key(issues, v_path, v.key, volume_keys)
        _check_text(issues, f"{v_path}.title", v.title, 255, required=True)
        _check_text(issues, f"{v_path}.summary", v.summary, 20000)
        for j, ch in enumerate(v.chapters):
            c_path = f"{v_path}.chapters[{j}]"
            _check_key(issues, c_path, ch.key, chapter_keys)
            _check_text(issues, f"{c_path}.title", ch.title, 255, required=True)
            _check_text(issues, f"{c_path}.outline", ch.outline, 50000, required=True)
    return issues


_VALIDATORS = {
    ArtifactType.NOVEL_FOUNDATION: validate_novel_foundation,
    ArtifactType.WORLDVIEW: validate_worldview,
    ArtifactType.CHARACTERS: validate_characters,
    ArtifactType.OUTLINE: validate_outline,
}


def parse_artifact(artifact_type: ArtifactType, data: Any) -> BaseModel:
    """解析为类型化构件。

    Raises:
        ArtifactValidationError: 形状无法解析（非对象、字段类型不符等）。
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ArtifactValidationError(
                artifact_type.value, [f"failed to parse {artifact_type.value} json: {e}"]
            ) from e
    if not isinstance(data, dict):
        raise ArtifactValidationError(
            artifact_type.value, [f"{artifact_type.value} json must be an object"]
        )
    try:
        return ARTIFACT_MODELS[artifact_type].model_validate(data)
    except ValidationError as e:
        issues = [
            f"{'.'.join(str(p) for p in err['loc']) or 'content'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ArtifactValidationError(artifact_type.value, issues) from e


def normalize_and_validate(artifact_type: str | ArtifactType, data: Any) -> dict[str, Any]:
    """解析、校验并返回规范化后的构件字典。

    Raises:
        ValueError: 构件类型非法。
        ArtifactValidationError: 汇总全部结构问题。
    """
    atype = parse_artifact_type(artifact_type)
    model = parse_artifact(atype, data)
    issues = _VALIDATORS[atype](model)
    if issues:
        logger.debug("构件 %s 校验失败: %d 个问题", atype.value, len(issues))
        raise ArtifactValidationError(atype.value, issues)
    return dump_artifact(model)
