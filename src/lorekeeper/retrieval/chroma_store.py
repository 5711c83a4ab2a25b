"""ChromaDB 向量库实现。

集合以 cosine 空间创建，检索返回的距离满足 distance = 1 - cos，
引擎据此换算相似度。
"""

from __future__ import annotations

import logging
import os
from typing import Any

import chromadb

from lorekeeper.config.settings import VectorStoreConfig
from lorekeeper.models.segment import VectorSearchParams, VectorSearchResult, VectorStorySegment

logger = logging.getLogger(__name__)

COLLECTION_METADATA = {"hnsw:space": "cosine"}


def create_chroma_client(config: VectorStoreConfig):
    """persist_dir 非空时使用持久化客户端，否则使用内存客户端。"""
    if config.persist_dir:
        os.makedirs(config.persist_dir, exist_ok=True)
        client = chromadb.PersistentClient(path=config.persist_dir)
        logger.info("ChromaDB 客户端已初始化: %s", config.persist_dir)
        return client
    return chromadb.EphemeralClient()


def _and(clauses: list[dict[str, Any]]) -> dict[str, Any]:
    # Chroma 要求 $and 至少包含两个条件
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaVectorRepository:
    """基于 Chroma 集合的片段存储。"""

    def __init__(self, client: Any, collection_name: str = "story_segments"):
        self.client = client
        self.collection_name = collection_name
        self._collection = None

    @classmethod
    def from_config(cls, config: VectorStoreConfig) -> ChromaVectorRepository:
        return cls(create_chroma_client(config), config.collection_name)

    def ensure_collection(self) -> None:
        if self._collection is None:
            self._collection = self.client.get_or_create_collection(
                name=self.collection_name,
                metadata=COLLECTION_METADATA,
            )

    @property
    def collection(self):
        self.ensure_collection()
        return self._collection

    def search_segments(self, params: VectorSearchParams) -> list[VectorSearchResult]:
        clauses: list[dict[str, Any]] = [
            {"tenant_id": params.tenant_id},
            {"project_id": params.project_id},
        ]
        # 仅在给定故事时间时过滤，避免把未设置时间的片段全部排除
        if params.current_story_time > 0:
            clauses.append({"story_time": {"$lte": params.current_story_time}})
        segment_types = [s for s in params.segment_types if s.strip()]
        if len(segment_types) == 1:
            clauses.append({"segment_type": segment_types[0]})
        elif segment_types:
            clauses.append({"segment_type": {"$in": segment_types}})

        result = self.collection.query(
            query_embeddings=[params.query_vector],
            n_results=max(params.top_k, 1),
            where=_and(clauses),
            include=["documents", "metadatas", "distances"],
        )

        ids = (result.get("ids") or [[]])[0]
        documents = (result.get("documents") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]

        hits: list[VectorSearchResult] = []
        for seg_id, doc, meta, distance in zip(ids, documents, metadatas, distances):
            meta = meta or {}
            hits.append(
                VectorSearchResult(
                    id=str(seg_id),
                    distance=float(distance),
                    text_content=doc or "",
                    doc_id=str(meta.get("doc_id", "")),
                    story_time=int(meta.get("story_time", 0) or 0),
                    segment_type=str(meta.get("segment_type", "")),
                )
            )
        return hits

    def delete_segments_by_doc_and_type(
        self, tenant_id: str, project_id: str, doc_id: str, segment_type: str
    ) -> None:
        self.collection.delete(
            where=_and(
                [
                    {"tenant_id": tenant_id},
                    {"project_id": project_id},
                    {"doc_id": doc_id},
                    {"segment_type": segment_type},
                ]
            )
        )

    def insert_segments(
        self, tenant_id: str, project_id: str, segments: list[VectorStorySegment]
    ) -> None:
        if not segments:
            return
        self.collection.add(
            ids=[s.id for s in segments],
            embeddings=[s.vector for s in segments],
            documents=[s.text_content for s in segments],
            metadatas=[
                {
                    "tenant_id": tenant_id,
                    "project_id": project_id,
                    "doc_id": s.doc_id,
                    "story_time": int(s.story_time),
                    "segment_type": s.segment_type,
                }
                for s in segments
            ],
        )
        logger.debug("已写入 %d 个片段到集合 %s", len(segments), self.collection_name)
