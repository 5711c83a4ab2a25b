"""检索与索引子系统。"""

from lorekeeper.retrieval.chroma_store import ChromaVectorRepository, create_chroma_client
from lorekeeper.retrieval.engine import RetrievalEngine
from lorekeeper.retrieval.indexer import Indexer, collect_json_leaves
from lorekeeper.retrieval.meta import (
    SEGMENT_META_PREFIX,
    decode_segment_text,
    encode_segment_text,
)
from lorekeeper.retrieval.ports import EntityRepository, VectorRepository
from lorekeeper.retrieval.prompt_context import build_prompt_context
from lorekeeper.retrieval.splitter import split_text

__all__ = [
    "SEGMENT_META_PREFIX",
    "ChromaVectorRepository",
    "EntityRepository",
    "Indexer",
    "RetrievalEngine",
    "VectorRepository",
    "build_prompt_context",
    "collect_json_leaves",
    "create_chroma_client",
    "decode_segment_text",
    "encode_segment_text",
    "split_text",
]
