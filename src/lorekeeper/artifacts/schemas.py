"""各构件类型的 JSON Schema，用于模型结构化输出约束。"""

from __future__ import annotations

from typing import Any

from lorekeeper.models.artifact import (
    ENTITY_IMPORTANCE,
    ENTITY_TYPES,
    RELATION_TYPES,
    ArtifactType,
)

ALLOWED_PATCH_OPS = ("add", "replace")

# 补丁模式下各类型允许修改的顶层路径
ALLOWED_PATCH_PATHS: dict[ArtifactType, tuple[str, ...]] = {
    ArtifactType.NOVEL_FOUNDATION: ("/title", "/description", "/genre"),
    ArtifactType.WORLDVIEW: (
        "/genre",
        "/target_word_count",
        "/writing_style",
        "/pov",
        "/temperature",
        "/world_bible",
        "/world_settings",
    ),
    ArtifactType.CHARACTERS: ("/entities", "/relations"),
    ArtifactType.OUTLINE: ("/volumes",),
}

_STRING = {"type": "string"}
_INTEGER = {"type": "integer"}
_NUMBER = {"type": "number"}
_STRING_ARRAY = {"type": "array", "items": _STRING}


def _object(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    return {
        "type": "object",
        "additionalProperties": False,
        "required": required if required is not None else list(properties),
        "properties": properties,
    }


def _novel_foundation_schema() -> dict[str, Any]:
    return _object({"title": _STRING, "description": _STRING, "genre": _STRING})


def _worldview_schema() -> dict[str, Any]:
    return _object(
        {
            "genre": _STRING,
            "target_word_count": _INTEGER,
            "writing_style": _STRING,
            "pov": _STRING,
            "temperature": _NUMBER,
            "world_bible": _STRING,
            "world_settings": _object(
                {"time_system": _STRING, "calendar": _STRING, "locations": _STRING_ARRAY}
            ),
        }
    )


def _characters_schema() -> dict[str, Any]:
    entity = _object(
        {
            "key": _STRING,
            "name": _STRING,
            "type": {"type": "string", "enum": sorted(ENTITY_TYPES)},
            "importance": {"type": "string", "enum": sorted(ENTITY_IMPORTANCE)},
            "description": _STRING,
            "aliases": _STRING_ARRAY,
            "attributes": _object(
                {
                    "age": _INTEGER,
                    "gender": _STRING,
                    "occupation": _STRING,
                    "personality": _STRING,
                    "abilities": _STRING_ARRAY,
                    "background": _STRING,
                }
            ),
            "current_state": _STRING,
        }
    )
    relation = _object(
        {
            "source_key": _STRING,
            "target_key": _STRING,
            "relation_type": {"type": "string", "enum": sorted(RELATION_TYPES)},
            "strength": _NUMBER,
            "description": _STRING,
            "attributes": _object({"since": _STRING, "origin": _STRING, "development": _STRING}),
        }
    )
    return _object(
        {
            "entities": {"type": "array", "items": entity},
            "relations": {"type": "array", "items": relation},
        }
    )


def _outline_schema() -> dict[str, Any]:
    chapter = _object(
        {
            "key": _STRING,
            "title": _STRING,
            "outline": _STRING,
            "target_word_count": _INTEGER,
            "story_time_start": _INTEGER,
        }
    )
    volume = _object(
        {
            "key": _STRING,
            "title": _STRING,
            "summary": _STRING,
            "chapters": {"type": "array", "items": chapter},
        }
    )
    return _object({"volumes": {"type": "array", "items": volume}})


_SCHEMA_BUILDERS = {
    ArtifactType.NOVEL_FOUNDATION: _novel_foundation_schema,
    ArtifactType.WORLDVIEW: _worldview_schema,
    ArtifactType.CHARACTERS: _characters_schema,
    ArtifactType.OUTLINE: _outline_schema,
}


def artifact_json_schema(artifact_type: ArtifactType) -> dict[str, Any]:
    """全量模式：完整构件文档的 Schema。"""
    return _SCHEMA_BUILDERS[artifact_type]()


def artifact_patch_json_schema(artifact_type: ArtifactType) -> dict[str, Any]:
    """补丁模式：{"ops": [...]}，仅允许 add/replace 且路径在白名单内的操作。

    json_schema 输出要求根节点为对象，因此操作数组包在 ops 字段里。
    """
    op = {
        "type": "object",
        "additionalProperties": False,
        "required": ["op", "path", "value"],
        "properties": {
            "op": {"type": "string", "enum": list(ALLOWED_PATCH_OPS)},
            "path": {"type": "string", "enum": list(ALLOWED_PATCH_PATHS[artifact_type])},
            "value": {},
        },
    }
    return {
        "type": "object",
        "additionalProperties": False,
        "required": ["ops"],
        "properties": {"ops": {"type": "array", "items": op}},
    }


def conflict_scan_json_schema() -> dict[str, Any]:
    conflict = _object(
        {
            "severity": {"type": "string", "enum": ["high", "medium", "low"]},
            "message": _STRING,
            "existing_ref": _STRING,
            "new_ref": _STRING,
            "suggestion": _STRING,
        },
        required=["severity", "message"],
    )
    return _object({"conflicts": {"type": "array", "items": conflict}})


def response_format(name: str, schema: dict[str, Any]) -> dict[str, Any]:
    """OpenAI 风格的 response_format 参数。"""
    return {
        "type": "json_schema",
        "json_schema": {"name": name, "strict": False, "schema": schema},
    }
