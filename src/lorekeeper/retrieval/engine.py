"""检索引擎：向量召回 + 可选的实体名称定位。

向量能力任何环节失败都只记录 disabled_reason，返回空结果，不向调用方抛出。
"""

from __future__ import annotations

import logging
import time

from langchain_core.embeddings import Embeddings

from lorekeeper.config.settings import RetrievalConfig
from lorekeeper.errors import VectorDisabledError
from lorekeeper.models.segment import (
    DOC_TYPE_ARTIFACT,
    DOC_TYPE_CHAPTER,
    DebugInfo,
    SearchInput,
    SearchOutput,
    Segment,
    VectorSearchParams,
    VectorSearchResult,
)
from lorekeeper.retrieval.meta import decode_segment_text
from lorekeeper.retrieval.ports import EntityRepository, VectorRepository

logger = logging.getLogger(__name__)


class RetrievalEngine:
    def __init__(
        self,
        embedder: Embeddings | None,
        vector_repo: VectorRepository | None,
        entity_repo: EntityRepository | None = None,
        config: RetrievalConfig | None = None,
    ):
        self.embedder = embedder
        self.vector_repo = vector_repo
        self.entity_repo = entity_repo
        self.config = config or RetrievalConfig()

    @property
    def enabled(self) -> bool:
        return self.embedder is not None and self.vector_repo is not None

    def search(self, search_input: SearchInput) -> SearchOutput:
        """检索。

        Raises:
            ValueError: tenant/project/query 缺失。
        """
        return self._search(search_input, force_debug=False)

    def debug_search(self, search_input: SearchInput) -> SearchOutput:
        """与 search 相同，但总是记录耗时与候选数。"""
        return self._search(search_input, force_debug=True)

    def _search(self, search_input: SearchInput, force_debug: bool) -> SearchOutput:
        top_k = search_input.top_k
        if top_k <= 0:
            top_k = self.config.default_top_k
        top_k = min(top_k, self.config.max_top_k)

        tenant_id = search_input.tenant_id.strip()
        project_id = search_input.project_id.strip()
        query = search_input.query.strip()
        if not tenant_id or not project_id:
            raise ValueError("tenant_id and project_id are required")
        if not query:
            raise ValueError("query is required")

        out = SearchOutput()
        debug = DebugInfo() if force_debug else None

        # 1) 向量召回（可降级）
        if not self.enabled:
            out.disabled_reason = str(VectorDisabledError())
        else:
            start = time.perf_counter()
            try:
                self.vector_repo.ensure_collection()
                vector = self._embed_query(query)
                results = self.vector_repo.search_segments(
                    VectorSearchParams(
                        tenant_id=tenant_id,
                        project_id=project_id,
                        query_vector=vector,
                        current_story_time=search_input.current_story_time,
                        top_k=top_k,
                        segment_types=list(search_input.segment_types),
                    )
                )
            except Exception as e:
                logger.warning("向量检索降级: %s", e)
                out.disabled_reason = str(e) or type(e).__name__
            else:
                out.segments = [_to_segment(r) for r in results if r is not None]
                if search_input.include_embedding:
                    out.query_embedding = vector
                if debug is not None:
                    debug.vector_search_time_ms = int((time.perf_counter() - start) * 1000)
                    debug.total_candidates = len(out.segments)
                    debug.filtered_candidates = len(out.segments)

        # 2) 结构化定位：实体名称搜索（可选）
        if search_input.include_entities and self.entity_repo is not None:
            start = time.perf_counter()
            try:
                out.entities = list(self.entity_repo.search_by_name(project_id, query, top_k))
            except Exception as e:
                logger.warning("实体名称检索失败，已忽略: %s", e)
            if debug is not None:
                debug.entity_search_time_ms = int((time.perf_counter() - start) * 1000)

        out.debug = debug
        return out

    def _embed_query(self, query: str) -> list[float]:
        vector = self.embedder.embed_query(query)
        if not vector:
            raise ValueError("empty embedding result")
        return [float(x) for x in vector]


def _to_segment(result: VectorSearchResult) -> Segment:
    meta, text = decode_segment_text(result.text_content)
    segment = Segment(
        id=result.id.strip(),
        text=text.strip(),
        # 集合使用 cosine 距离：distance = 1 - cos
        score=1.0 - float(result.distance),
        source="vector",
        doc_type=meta.doc_type.strip(),
        chapter_id=meta.chapter_id.strip(),
        chapter_title=meta.chapter_title.strip(),
        story_time=result.story_time,
        artifact_id=meta.artifact_id.strip(),
        artifact_type=meta.artifact_type.strip(),
        ref_path=meta.ref_path.strip(),
    )

    # 历史数据可能没有元信息，回退使用存储字段
    doc_id = result.doc_id.strip()
    if not segment.doc_type and doc_id:
        if result.segment_type.startswith("artifact_"):
            segment.doc_type = DOC_TYPE_ARTIFACT
            segment.artifact_type = segment.artifact_type or result.segment_type[len("artifact_"):]
        else:
            segment.doc_type = DOC_TYPE_CHAPTER
    if segment.doc_type == DOC_TYPE_CHAPTER and not segment.chapter_id:
        segment.chapter_id = doc_id
    if segment.doc_type == DOC_TYPE_ARTIFACT and not segment.artifact_id:
        segment.artifact_id = doc_id
    return segment
