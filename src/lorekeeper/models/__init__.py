"""Pydantic 数据模型。"""

from lorekeeper.models.artifact import (
    ARTIFACT_TYPES,
    ArtifactType,
    ChapterPlan,
    CharactersArtifact,
    EntityPlan,
    NovelFoundationArtifact,
    OutlineArtifact,
    RelationPlan,
    VolumePlan,
    WorldSettings,
    WorldviewArtifact,
    parse_artifact_type,
)
from lorekeeper.models.generation import (
    ArtifactConflict,
    ArtifactConflictScanInput,
    ArtifactConflictScanOutput,
    ArtifactGenerateInput,
    ArtifactGenerateOutput,
    LLMUsageMeta,
    TextAttachment,
)
from lorekeeper.models.segment import (
    ChapterDocument,
    DebugInfo,
    EntityRef,
    SearchInput,
    SearchOutput,
    Segment,
    SegmentMeta,
    VectorSearchParams,
    VectorSearchResult,
    VectorStorySegment,
)

__all__ = [
    "ARTIFACT_TYPES",
    "ArtifactConflict",
    "ArtifactConflictScanInput",
    "ArtifactConflictScanOutput",
    "ArtifactGenerateInput",
    "ArtifactGenerateOutput",
    "ArtifactType",
    "ChapterDocument",
    "ChapterPlan",
    "CharactersArtifact",
    "DebugInfo",
    "EntityPlan",
    "EntityRef",
    "LLMUsageMeta",
    "NovelFoundationArtifact",
    "OutlineArtifact",
    "RelationPlan",
    "SearchInput",
    "SearchOutput",
    "Segment",
    "SegmentMeta",
    "TextAttachment",
    "VectorSearchParams",
    "VectorSearchResult",
    "VectorStorySegment",
    "VolumePlan",
    "WorldSettings",
    "WorldviewArtifact",
    "parse_artifact_type",
]
