"""检索与索引相关数据模型。"""

from __future__ import annotations

from pydantic import BaseModel, Field

CHAPTER_SEGMENT_TYPE = "chapter"

DOC_TYPE_CHAPTER = "chapter"
DOC_TYPE_ARTIFACT = "artifact"


def artifact_segment_type(artifact_type: str) -> str:
    """构件类型 -> 向量库 segment_type（用于过滤、删除、检索）。"""
    return f"artifact_{artifact_type}"


class SegmentMeta(BaseModel):
    """写入片段文本头部的结构化元信息，用于召回后的结构化定位。"""

    doc_type: str = Field(default="", description="chapter | artifact")
    chapter_id: str = Field(default="")
    chapter_title: str = Field(default="")
    artifact_id: str = Field(default="")
    artifact_type: str = Field(default="")
    ref_path: str = Field(default="", description="JSON Pointer 路径，以 / 开头")

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


class ChapterDocument(BaseModel):
    """待索引的章节正文。"""

    id: str = Field(description="章节 ID")
    title: str = Field(default="", description="章节标题")
    content_text: str = Field(default="", description="正文")
    story_time_start: int = Field(default=0, description="故事内起始时间")
    story_time_end: int = Field(default=0, description="故事内结束时间，0 表示未设置")


class VectorStorySegment(BaseModel):
    """向量库中的存储单元。"""

    id: str
    tenant_id: str
    project_id: str
    doc_id: str
    story_time: int = 0
    segment_type: str
    text_content: str
    vector: list[float] = Field(default_factory=list)


class VectorSearchParams(BaseModel):
    tenant_id: str
    project_id: str
    query_vector: list[float]
    current_story_time: int = 0
    top_k: int = 10
    segment_types: list[str] = Field(default_factory=list, description="为空表示不过滤")


class VectorSearchResult(BaseModel):
    """向量库命中。distance 为距离，越小越相似。"""

    id: str
    distance: float
    text_content: str
    doc_id: str = ""
    story_time: int = 0
    segment_type: str = ""


# ────────────────────────────────────────────
# 检索输入 / 输出
# ────────────────────────────────────────────


class SearchInput(BaseModel):
    tenant_id: str = ""
    project_id: str = ""
    query: str = ""
    current_story_time: int = 0
    top_k: int = 0
    segment_types: list[str] = Field(default_factory=list, description="为空表示不过滤")
    include_entities: bool = False
    include_embedding: bool = False


class Segment(BaseModel):
    """一条召回结果（已解码元信息）。"""

    id: str = ""
    text: str = ""
    score: float = 0.0
    source: str = "vector"
    doc_type: str = ""
    chapter_id: str = ""
    chapter_title: str = ""
    story_time: int = 0
    artifact_id: str = ""
    artifact_type: str = ""
    ref_path: str = ""


class EntityRef(BaseModel):
    id: str
    name: str
    type: str = ""


class DebugInfo(BaseModel):
    vector_search_time_ms: int = 0
    entity_search_time_ms: int = 0
    total_candidates: int = 0
    filtered_candidates: int = 0


class SearchOutput(BaseModel):
    segments: list[Segment] = Field(default_factory=list)
    entities: list[EntityRef] = Field(default_factory=list)
    disabled_reason: str = Field(default="", description="向量能力降级原因，为空表示正常")
    query_embedding: list[float] | None = None
    debug: DebugInfo | None = None
