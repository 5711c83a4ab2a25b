"""构件（设定文档）数据模型。

四类构件：小说基础信息、世界观、角色与关系、卷章大纲。
可选字段默认为 None，序列化时省略，保持输出紧凑。
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ArtifactType(str, Enum):
    """构件类型（封闭集合）。"""

    NOVEL_FOUNDATION = "novel_foundation"
    WORLDVIEW = "worldview"
    CHARACTERS = "characters"
    OUTLINE = "outline"


ARTIFACT_TYPES: tuple[str, ...] = tuple(t.value for t in ArtifactType)

ENTITY_TYPES = frozenset({"character", "item", "location", "organization", "concept"})
ENTITY_IMPORTANCE = frozenset({"protagonist", "major", "secondary", "minor"})
RELATION_TYPES = frozenset(
    {"friend", "enemy", "family", "lover", "subordinate", "mentor", "rival", "ally"}
)


def parse_artifact_type(value: str | ArtifactType) -> ArtifactType:
    """解析构件类型。

    Raises:
        ValueError: 类型不在封闭集合内时。
    """
    if isinstance(value, ArtifactType):
        return value
    try:
        return ArtifactType(str(value).strip())
    except ValueError:
        raise ValueError(f"invalid artifact type: {value!r}") from None


# ────────────────────────────────────────────
# 小说基础信息 / 世界观
# ────────────────────────────────────────────


class NovelFoundationArtifact(BaseModel):
    """小说基础信息。"""

    title: str = Field(default="", description="小说标题")
    description: str = Field(default="", description="简介")
    genre: str | None = Field(default=None, description="类型")


class WorldSettings(BaseModel):
    """世界设定：时间体系、历法、地点。"""

    time_system: str | None = Field(default=None, description="时间体系")
    calendar: str | None = Field(default=None, description="历法")
    locations: list[str] | None = Field(default=None, description="主要地点")

    def is_empty(self) -> bool:
        if (self.time_system or "").strip():
            return False
        if (self.calendar or "").strip():
            return False
        return not self.locations


class WorldviewArtifact(BaseModel):
    """世界观与写作参数。"""

    genre: str | None = Field(default=None, description="类型")
    target_word_count: int | None = Field(default=None, description="目标字数")
    writing_style: str | None = Field(default=None, description="文风")
    pov: str | None = Field(default=None, description="叙事视角")
    temperature: float | None = Field(default=None, description="生成温度偏好")
    world_settings: WorldSettings = Field(default_factory=WorldSettings)
    world_bible: str | None = Field(default=None, description="世界观圣经（长文本）")


# ────────────────────────────────────────────
# 角色与关系
# ────────────────────────────────────────────


class EntityAttributes(BaseModel):
    age: int | None = None
    gender: str | None = None
    occupation: str | None = None
    personality: str | None = None
    abilities: list[str] | None = None
    background: str | None = None


class RelationAttributes(BaseModel):
    since: str | None = None
    origin: str | None = None
    development: str | None = None


class EntityPlan(BaseModel):
    """实体（角色/物品/地点/组织/概念）规划。key 在构件内唯一且跨版本稳定。"""

    key: str = Field(default="", description="稳定唯一键")
    name: str = Field(default="", description="名称")
    type: str = Field(default="", description="实体类型")
    importance: str | None = Field(default=None, description="重要程度")
    description: str | None = Field(default=None, description="描述")
    aliases: list[str] | None = Field(default=None, description="别名")
    attributes: EntityAttributes | None = Field(default=None, description="扩展属性")
    current_state: str | None = Field(default=None, description="当前状态")


class RelationPlan(BaseModel):
    """实体间关系规划。身份为 source_key + target_key + relation_type。"""

    source_key: str = Field(default="", description="起点实体 key")
    target_key: str = Field(default="", description="终点实体 key")
    relation_type: str = Field(default="", description="关系类型")
    strength: float | None = Field(default=None, description="关系强度 0-1")
    description: str | None = Field(default=None, description="关系描述")
    attributes: RelationAttributes | None = Field(default=None, description="扩展属性")

    @property
    def identity(self) -> str:
        return f"{self.source_key.strip()}->{self.target_key.strip()}:{self.relation_type.strip()}"


class CharactersArtifact(BaseModel):
    entities: list[EntityPlan] = Field(default_factory=list)
    relations: list[RelationPlan] = Field(default_factory=list)


# ────────────────────────────────────────────
# 卷章大纲
# ────────────────────────────────────────────


class ChapterPlan(BaseModel):
    """章节规划。key 在整部大纲内全局唯一。"""

    key: str = Field(default="", description="稳定唯一键")
    title: str = Field(default="", description="章节标题")
    outline: str = Field(default="", description="章节梗概")
    target_word_count: int | None = Field(default=None, description="目标字数")
    story_time_start: int | None = Field(default=None, description="故事内起始时间")


class VolumePlan(BaseModel):
    """卷规划。"""

    key: str = Field(default="", description="稳定唯一键")
    title: str = Field(default="", description="卷标题")
    summary: str | None = Field(default=None, description="卷概要")
    chapters: list[ChapterPlan] = Field(default_factory=list)


class OutlineArtifact(BaseModel):
    volumes: list[VolumePlan] = Field(default_factory=list)


ARTIFACT_MODELS: dict[ArtifactType, type[BaseModel]] = {
    ArtifactType.NOVEL_FOUNDATION: NovelFoundationArtifact,
    ArtifactType.WORLDVIEW: WorldviewArtifact,
    ArtifactType.CHARACTERS: CharactersArtifact,
    ArtifactType.OUTLINE: OutlineArtifact,
}


def dump_artifact(model: BaseModel) -> dict[str, Any]:
    """序列化构件，省略未设置的可选字段。"""
    return model.model_dump(mode="json", exclude_none=True)
