"""索引器：把章节正文与构件 JSON 转为带元信息的向量片段。

写入策略为"先删后写"：同一 (tenant, project, doc, segment_type) 的旧片段
先被整体删除，再插入新片段。两步之间崩溃会使文档暂时无索引，重新索引即可恢复。
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from langchain_core.embeddings import Embeddings

from lorekeeper.config.settings import EmbeddingConfig, RetrievalConfig
from lorekeeper.errors import VectorDisabledError
from lorekeeper.models.artifact import parse_artifact_type
from lorekeeper.models.segment import (
    CHAPTER_SEGMENT_TYPE,
    DOC_TYPE_ARTIFACT,
    DOC_TYPE_CHAPTER,
    ChapterDocument,
    SegmentMeta,
    VectorStorySegment,
    artifact_segment_type,
)
from lorekeeper.retrieval.meta import encode_segment_text
from lorekeeper.retrieval.ports import VectorRepository
from lorekeeper.retrieval.splitter import split_text

logger = logging.getLogger(__name__)

CHAPTER_REF_PATH = "/content_text"


# ────────────────────────────────────────────
# JSON 叶子提取
# ────────────────────────────────────────────


def escape_pointer_token(token: str) -> str:
    """JSON Pointer 转义：~ -> ~0，/ -> ~1（顺序不可颠倒）。"""
    return token.replace("~", "~0").replace("/", "~1")


def _join_pointer(base: str, token: str) -> str:
    return f"{base}/{escape_pointer_token(token)}"


def _normalize_pointer(path: str) -> str:
    if not path.strip():
        return "/"
    return path if path.startswith("/") else "/" + path


def collect_json_leaves(value: Any, limit: int = 800) -> list[tuple[str, str]]:
    """递归收集 JSON 叶子，返回 [(路径, 文本)]。

    - 对象按 key 排序遍历，数组按下标遍历，保证顺序确定。
    - 字符串去空白后非空即收集；其余标量仅在路径非空时收集。
    - 达到 limit 后停止（limit <= 0 表示不限）。
    """
    leaves: list[tuple[str, str]] = []

    def full() -> bool:
        return 0 < limit <= len(leaves)

    def walk(node: Any, path: str) -> None:
        if full():
            return
        if isinstance(node, dict):
            for key in sorted(node):
                walk(node[key], _join_pointer(path, str(key)))
                if full():
                    return
        elif isinstance(node, list):
            for idx, item in enumerate(node):
                walk(item, _join_pointer(path, str(idx)))
                if full():
                    return
        elif isinstance(node, str):
            text = node.strip()
            if text:
                leaves.append((_normalize_pointer(path), text))
        elif node is not None:
            # 孤立的根标量没有定位价值
            if not path.strip():
                return
            leaves.append((_normalize_pointer(path), json.dumps(node)))

    walk(value, "")
    return leaves


# ────────────────────────────────────────────
# 索引器
# ────────────────────────────────────────────


class Indexer:
    """章节与构件的向量索引器。embedder 或 vector_repo 缺失时能力关闭。"""

    def __init__(
        self,
        embedder: Embeddings | None,
        vector_repo: VectorRepository | None,
        retrieval_config: RetrievalConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
    ):
        self.embedder = embedder
        self.vector_repo = vector_repo
        self.config = retrieval_config or RetrievalConfig()
        batch_size = (embedding_config or EmbeddingConfig()).batch_size
        self.batch_size = batch_size if batch_size > 0 else 32

    @property
    def enabled(self) -> bool:
        return self.embedder is not None and self.vector_repo is not None

    def _ensure_ready(self) -> VectorRepository:
        if not self.enabled:
            raise VectorDisabledError()
        self.vector_repo.ensure_collection()
        return self.vector_repo

    def index_chapter(self, tenant_id: str, project_id: str, chapter: ChapterDocument | None) -> int:
        """重建单章索引，返回写入的片段数。

        Raises:
            ValueError: 缺少 tenant/project/chapter id。
            VectorDisabledError: 向量能力未配置。
        """
        tenant_id, project_id = _require_scope(tenant_id, project_id)
        if chapter is None:
            raise ValueError("chapter is required")
        chapter_id = chapter.id.strip()
        if not chapter_id:
            raise ValueError("chapter.id is required")

        repo = self._ensure_ready()
        repo.delete_segments_by_doc_and_type(tenant_id, project_id, chapter_id, CHAPTER_SEGMENT_TYPE)

        content = chapter.content_text.strip()
        if not content:
            logger.debug("章节 %s 正文为空，仅清理旧索引", chapter_id)
            return 0

        chunks = split_text(content, self.config.chunk_size, self.config.chunk_overlap)
        if not chunks:
            return 0

        # 有结束时间时以结束时间作为"事件已发生"的上界
        story_time = chapter.story_time_end if chapter.story_time_end > 0 else chapter.story_time_start
        title = chapter.title.strip()
        meta = SegmentMeta(
            doc_type=DOC_TYPE_CHAPTER,
            chapter_id=chapter_id,
            chapter_title=title,
            ref_path=CHAPTER_REF_PATH,
        )

        embed_inputs: list[str] = []
        segments: list[VectorStorySegment] = []
        for chunk in chunks:
            embed_inputs.append(f"章节标题：{title}\n{chunk}" if title else chunk)
            segments.append(
                VectorStorySegment(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    project_id=project_id,
                    doc_id=chapter_id,
                    story_time=story_time,
                    segment_type=CHAPTER_SEGMENT_TYPE,
                    text_content=encode_segment_text(meta, chunk),
                )
            )

        self._attach_vectors(segments, embed_inputs)
        repo.insert_segments(tenant_id, project_id, segments)
        logger.info("章节 %s 已索引 %d 个片段", chapter_id, len(segments))
        return len(segments)

    def index_artifact_json(
        self,
        tenant_id: str,
        project_id: str,
        artifact_type: str,
        artifact_id: str,
        content: str | bytes | None,
    ) -> int:
        """重建单个构件的叶子索引，返回写入的片段数。

        Raises:
            ValueError: 缺少 id、构件类型非法或 JSON 无法解析。
            VectorDisabledError: 向量能力未配置。
        """
        tenant_id, project_id = _require_scope(tenant_id, project_id)
        artifact_id = (artifact_id or "").strip()
        if not artifact_id:
            raise ValueError("artifact_id is required")
        if not str(artifact_type or "").strip():
            raise ValueError("artifact_type is required")
        atype = parse_artifact_type(artifact_type).value

        repo = self._ensure_ready()
        segment_type = artifact_segment_type(atype)
        repo.delete_segments_by_doc_and_type(tenant_id, project_id, artifact_id, segment_type)

        if isinstance(content, bytes):
            content = content.decode("utf-8")
        if not content or not content.strip():
            return 0
        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid artifact json: {e}") from e

        leaves = collect_json_leaves(document, self.config.max_json_leaves)
        embed_inputs: list[str] = []
        segments: list[VectorStorySegment] = []
        for path, text in leaves:
            meta = SegmentMeta(
                doc_type=DOC_TYPE_ARTIFACT,
                artifact_id=artifact_id,
                artifact_type=atype,
                ref_path=path,
            )
            for chunk in split_text(text, self.config.chunk_size, self.config.chunk_overlap):
                embed_inputs.append(f"构件类型：{atype}\n路径：{path}\n内容：{chunk}")
                segments.append(
                    VectorStorySegment(
                        id=str(uuid.uuid4()),
                        tenant_id=tenant_id,
                        project_id=project_id,
                        doc_id=artifact_id,
                        story_time=0,
                        segment_type=segment_type,
                        text_content=encode_segment_text(meta, chunk),
                    )
                )

        if not segments:
            return 0
        self._attach_vectors(segments, embed_inputs)
        repo.insert_segments(tenant_id, project_id, segments)
        logger.info(
            "构件 %s (%s) 已索引 %d 个片段（%d 个叶子）",
            artifact_id, atype, len(segments), len(leaves),
        )
        return len(segments)

    def _attach_vectors(self, segments: list[VectorStorySegment], texts: list[str]) -> None:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            vectors.extend(self.embedder.embed_documents(batch))
        if len(vectors) != len(segments):
            raise ValueError(
                f"embedding count mismatch: expected {len(segments)}, got {len(vectors)}"
            )
        for segment, vector in zip(segments, vectors):
            segment.vector = [float(x) for x in vector]


def _require_scope(tenant_id: str, project_id: str) -> tuple[str, str]:
    tenant_id = (tenant_id or "").strip()
    project_id = (project_id or "").strip()
    if not tenant_id or not project_id:
        raise ValueError("tenant_id and project_id are required")
    return tenant_id, project_id
