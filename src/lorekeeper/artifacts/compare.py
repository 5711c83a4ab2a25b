"""构件版本结构化对比。

标量逐字段比较；列表字段按集合比较（规范化、去重、排序后求差）；
实体/关系/卷/章按 key 分类为新增、删除、更新，章节跨卷移动单独标记。
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from lorekeeper.models.artifact import (
    ARTIFACT_MODELS,
    ArtifactType,
    ChapterPlan,
    CharactersArtifact,
    EntityAttributes,
    EntityPlan,
    NovelFoundationArtifact,
    OutlineArtifact,
    RelationAttributes,
    RelationPlan,
    VolumePlan,
    WorldSettings,
    WorldviewArtifact,
    parse_artifact_type,
)


class NovelFoundationCompareDiff(BaseModel):
    title_changed: bool = False
    description_changed: bool = False
    genre_changed: bool = False


class WorldviewCompareDiff(BaseModel):
    genre_changed: bool = False
    target_word_count_changed: bool = False
    writing_style_changed: bool = False
    pov_changed: bool = False
    temperature_changed: bool = False
    world_bible_changed: bool = False
    world_settings_changed: bool = False
    locations_added: list[str] = Field(default_factory=list)
    locations_removed: list[str] = Field(default_factory=list)


class CharactersCompareDiff(BaseModel):
    entities_added: list[str] = Field(default_factory=list)
    entities_removed: list[str] = Field(default_factory=list)
    entities_updated: list[str] = Field(default_factory=list)
    relations_added: list[str] = Field(default_factory=list)
    relations_removed: list[str] = Field(default_factory=list)
    relations_updated: list[str] = Field(default_factory=list)


class ChapterMove(BaseModel):
    key: str
    from_volume_key: str
    to_volume_key: str


class OutlineCompareDiff(BaseModel):
    volumes_added: list[str] = Field(default_factory=list)
    volumes_removed: list[str] = Field(default_factory=list)
    volumes_updated: list[str] = Field(default_factory=list)
    chapters_added: list[str] = Field(default_factory=list)
    chapters_removed: list[str] = Field(default_factory=list)
    chapters_updated: list[str] = Field(default_factory=list)
    chapters_moved: list[ChapterMove] = Field(default_factory=list)


class ArtifactCompareDiff(BaseModel):
    artifact_type: str
    changed_fields: list[str] = Field(default_factory=list)
    novel_foundation: NovelFoundationCompareDiff | None = None
    worldview: WorldviewCompareDiff | None = None
    characters: CharactersCompareDiff | None = None
    outline: OutlineCompareDiff | None = None

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)


# ────────────────────────────────────────────
# 通用工具
# ────────────────────────────────────────────


def _s(value: str | None) -> str:
    return (value or "").strip()


def normalize_string_set(items: list[str] | None) -> list[str]:
    """去空白、去重、排序。"""
    return sorted({s.strip() for s in items or [] if s and s.strip()})


def _diff_sets(before: list[str], after: list[str]) -> tuple[list[str], list[str]]:
    a, b = set(before), set(after)
    return sorted(b - a), sorted(a - b)


def _diff_keys(before: dict[str, Any], after: dict[str, Any]) -> tuple[list[str], list[str], list[str]]:
    added = sorted(k for k in after if k not in before)
    removed = sorted(k for k in before if k not in after)
    common = sorted(k for k in before if k in after)
    return added, removed, common


def _raw_text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return _s(value)


def _compare_raw(artifact_type: str, before: Any, after: Any) -> ArtifactCompareDiff:
    if _raw_text(before) == _raw_text(after):
        return ArtifactCompareDiff(artifact_type=artifact_type)
    return ArtifactCompareDiff(artifact_type=artifact_type, changed_fields=["content"])


def _parse(model_cls: type[BaseModel], value: Any) -> BaseModel:
    if isinstance(value, (str, bytes)):
        return model_cls.model_validate_json(value)
    return model_cls.model_validate(value)


# ────────────────────────────────────────────
# 各类型对比
# ────────────────────────────────────────────


def _compare_novel_foundation(a: NovelFoundationArtifact, b: NovelFoundationArtifact) -> ArtifactCompareDiff:
    d = NovelFoundationCompareDiff(
        title_changed=_s(a.title) != _s(b.title),
        description_changed=_s(a.description) != _s(b.description),
        genre_changed=_s(a.genre) != _s(b.genre),
    )
    fields = [
        name
        for name, flag in (
            ("title", d.title_changed),
            ("description", d.description_changed),
            ("genre", d.genre_changed),
        )
        if flag
    ]
    out = ArtifactCompareDiff(artifact_type=ArtifactType.NOVEL_FOUNDATION.value)
    if fields:
        out.changed_fields = fields
        out.novel_foundation = d
    return out


def _compare_world_settings(a: WorldSettings, b: WorldSettings) -> tuple[bool, list[str], list[str]]:
    added, removed = _diff_sets(normalize_string_set(a.locations), normalize_string_set(b.locations))
    changed = (
        _s(a.time_system) != _s(b.time_system)
        or _s(a.calendar) != _s(b.calendar)
        or bool(added or removed)
    )
    return changed, added, removed


def _compare_worldview(a: WorldviewArtifact, b: WorldviewArtifact) -> ArtifactCompareDiff:
    ws_changed, loc_added, loc_removed = _compare_world_settings(a.world_settings, b.world_settings)
    d = WorldviewCompareDiff(
        genre_changed=_s(a.genre) != _s(b.genre),
        target_word_count_changed=(a.target_word_count or 0) != (b.target_word_count or 0),
        writing_style_changed=_s(a.writing_style) != _s(b.writing_style),
        pov_changed=_s(a.pov) != _s(b.pov),
        temperature_changed=(a.temperature or 0.0) != (b.temperature or 0.0),
        world_bible_changed=_s(a.world_bible) != _s(b.world_bible),
        world_settings_changed=ws_changed,
    )
    if ws_changed:
        d.locations_added = loc_added
        d.locations_removed = loc_removed

    fields = [
        name
        for name, flag in (
            ("genre", d.genre_changed),
            ("target_word_count", d.target_word_count_changed),
            ("writing_style", d.writing_style_changed),
            ("pov", d.pov_changed),
            ("temperature", d.temperature_changed),
            ("world_bible", d.world_bible_changed),
            ("world_settings", d.world_settings_changed),
        )
        if flag
    ]
    out = ArtifactCompareDiff(artifact_type=ArtifactType.WORLDVIEW.value)
    if fields:
        out.changed_fields = fields
        out.worldview = d
    return out


def _equal_entity_attributes(a: EntityAttributes | None, b: EntityAttributes | None) -> bool:
    a = a or EntityAttributes()
    b = b or EntityAttributes()
    return (
        (a.age or 0) == (b.age or 0)
        and _s(a.gender) == _s(b.gender)
        and _s(a.occupation) == _s(b.occupation)
        and _s(a.personality) == _s(b.personality)
        and _s(a.background) == _s(b.background)
        and normalize_string_set(a.abilities) == normalize_string_set(b.abilities)
    )


def _equal_entity(a: EntityPlan, b: EntityPlan) -> bool:
    return (
        _s(a.name) == _s(b.name)
        and a.type == b.type
        and _s(a.importance) == _s(b.importance)
        and _s(a.description) == _s(b.description)
        and _s(a.current_state) == _s(b.current_state)
        and normalize_string_set(a.aliases) == normalize_string_set(b.aliases)
        and _equal_entity_attributes(a.attributes, b.attributes)
    )


def _equal_relation_attributes(a: RelationAttributes | None, b: RelationAttributes | None) -> bool:
    a = a or RelationAttributes()
    b = b or RelationAttributes()
    return _s(a.since) == _s(b.since) and _s(a.origin) == _s(b.origin) and _s(a.development) == _s(b.development)


def _equal_relation(a: RelationPlan, b: RelationPlan) -> bool:
    return (
        (a.strength or 0.0) == (b.strength or 0.0)
        and _s(a.description) == _s(b.description)
        and _equal_relation_attributes(a.attributes, b.attributes)
    )


def _relation_identity(r: RelationPlan) -> str:
    if not (_s(r.source_key) and _s(r.target_key) and _s(r.relation_type)):
        return ""
    return r.identity


def _compare_characters(a: CharactersArtifact, b: CharactersArtifact) -> ArtifactCompareDiff:
    from_ent = {_s(e.key): e for e in a.entities if _s(e.key)}
    to_ent = {_s(e.key): e for e in b.entities if _s(e.key)}
    from_rel = {_relation_identity(r): r for r in a.relations if _relation_identity(r)}
    to_rel = {_relation_identity(r): r for r in b.relations if _relation_identity(r)}

    d = CharactersCompareDiff()
    d.entities_added, d.entities_removed, common = _diff_keys(from_ent, to_ent)
    d.entities_updated = [k for k in common if not _equal_entity(from_ent[k], to_ent[k])]
    d.relations_added, d.relations_removed, common = _diff_keys(from_rel, to_rel)
    d.relations_updated = [k for k in common if not _equal_relation(from_rel[k], to_rel[k])]

    fields = []
    if d.entities_added or d.entities_removed or d.entities_updated:
        fields.append("entities")
    if d.relations_added or d.relations_removed or d.relations_updated:
        fields.append("relations")
    out = ArtifactCompareDiff(artifact_type=ArtifactType.CHARACTERS.value)
    if fields:
        out.changed_fields = fields
        out.characters = d
    return out


def _flatten_chapters(volumes: list[VolumePlan]) -> tuple[dict[str, ChapterPlan], dict[str, str]]:
    chapters: dict[str, ChapterPlan] = {}
    volume_of: dict[str, str] = {}
    for v in volumes:
        for ch in v.chapters:
            key = _s(ch.key)
            if key:
                chapters[key] = ch
                volume_of[key] = _s(v.key)
    return chapters, volume_of


def _equal_chapter(a: ChapterPlan, b: ChapterPlan) -> bool:
    return (
        _s(a.title) == _s(b.title)
        and _s(a.outline) == _s(b.outline)
        and (a.target_word_count or 0) == (b.target_word_count or 0)
        and (a.story_time_start or 0) == (b.story_time_start or 0)
    )


def _compare_outline(a: OutlineArtifact, b: OutlineArtifact) -> ArtifactCompareDiff:
    from_vol = {_s(v.key): v for v in a.volumes if _s(v.key)}
    to_vol = {_s(v.key): v for v in b.volumes if _s(v.key)}

    d = OutlineCompareDiff()
    d.volumes_added, d.volumes_removed, common = _diff_keys(from_vol, to_vol)
    d.volumes_updated = [
        k
        for k in common
        if _s(from_vol[k].title) != _s(to_vol[k].title)
        or _s(from_vol[k].summary) != _s(to_vol[k].summary)
    ]

    ch_from, vol_from = _flatten_chapters(a.volumes)
    ch_to, vol_to = _flatten_chapters(b.volumes)
    d.chapters_added, d.chapters_removed, common = _diff_keys(ch_from, ch_to)
    for key in common:
        if not _equal_chapter(ch_from[key], ch_to[key]):
            d.chapters_updated.append(key)
        elif vol_from[key] != vol_to[key]:
            d.chapters_moved.append(
                ChapterMove(key=key, from_volume_key=vol_from[key], to_volume_key=vol_to[key])
            )

    out = ArtifactCompareDiff(artifact_type=ArtifactType.OUTLINE.value)
    if any(
        (
            d.volumes_added,
            d.volumes_removed,
            d.volumes_updated,
            d.chapters_added,
            d.chapters_removed,
            d.chapters_updated,
            d.chapters_moved,
        )
    ):
        out.changed_fields = ["volumes"]
        out.outline = d
    return out


_COMPARATORS = {
    ArtifactType.NOVEL_FOUNDATION: _compare_novel_foundation,
    ArtifactType.WORLDVIEW: _compare_worldview,
    ArtifactType.CHARACTERS: _compare_characters,
    ArtifactType.OUTLINE: _compare_outline,
}


def compare_artifact_content(
    artifact_type: str | ArtifactType, before: Any, after: Any
) -> ArtifactCompareDiff:
    """对比同一构件的两个版本。

    任一侧为空时报告 changed_fields=["content"]；任一侧无法解析为类型化构件时
    退化为原文比较。
    """
    atype = parse_artifact_type(artifact_type)
    if not _raw_text(before) or not _raw_text(after):
        return ArtifactCompareDiff(artifact_type=atype.value, changed_fields=["content"])

    model_cls = ARTIFACT_MODELS[atype]
    try:
        a = _parse(model_cls, before)
        b = _parse(model_cls, after)
    except ValidationError:
        return _compare_raw(atype.value, before, after)
    return _COMPARATORS[atype](a, b)
