"""检索层对外部能力的最小依赖（port）。

向量库与实体库由基础设施实现；Embedding 直接使用 langchain 的 Embeddings 接口。
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from lorekeeper.models.segment import (
    EntityRef,
    VectorSearchParams,
    VectorSearchResult,
    VectorStorySegment,
)


@runtime_checkable
class VectorRepository(Protocol):
    """向量存储与检索。"""

    def ensure_collection(self) -> None: ...

    def search_segments(self, params: VectorSearchParams) -> list[VectorSearchResult]: ...

    def delete_segments_by_doc_and_type(
        self, tenant_id: str, project_id: str, doc_id: str, segment_type: str
    ) -> None: ...

    def insert_segments(
        self, tenant_id: str, project_id: str, segments: list[VectorStorySegment]
    ) -> None: ...


@runtime_checkable
class EntityRepository(Protocol):
    """结构化实体名称检索。"""

    def search_by_name(self, project_id: str, query: str, limit: int) -> list[EntityRef]: ...
