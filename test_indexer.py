"""索引器：先删后写、片段元信息、能力关闭与参数校验。"""

import json

import pytest

from conftest import EMBEDDING_SIZE
from lorekeeper.config.settings import EmbeddingConfig, RetrievalConfig
from lorekeeper.errors import VectorDisabledError
from lorekeeper.models.segment import ChapterDocument
from lorekeeper.retrieval.indexer import Indexer
from lorekeeper.retrieval.meta import decode_segment_text


def _small_indexer(embedder, vector_repo, batch_size=32):
    return Indexer(
        embedder,
        vector_repo,
        RetrievalConfig(chunk_size=40, chunk_overlap=5),
        EmbeddingConfig(batch_size=batch_size),
    )


def test_index_chapter_deletes_then_inserts(embedder, vector_repo):
    """章节索引：先按 chapter 类型删除旧片段，再写入多个带元信息的新片段。"""
    indexer = _small_indexer(embedder, vector_repo)
    chapter = ChapterDocument(
        id="ch-1",
        title="初入宗门",
        content_text="少年踏上青石台阶，" * 20,
        story_time_start=3,
        story_time_end=5,
    )

    count = indexer.index_chapter("t1", "p1", chapter)

    assert vector_repo.ensure_calls == 1
    assert vector_repo.deleted == [("t1", "p1", "ch-1", "chapter")]
    assert count == len(vector_repo.segments) > 1
    for segment in vector_repo.segments:
        assert segment.segment_type == "chapter"
        assert segment.doc_id == "ch-1"
        assert segment.story_time == 5
        assert len(segment.vector) == EMBEDDING_SIZE
        meta, text = decode_segment_text(segment.text_content)
        assert meta.doc_type == "chapter"
        assert meta.chapter_id == "ch-1"
        assert meta.chapter_title == "初入宗门"
        assert meta.ref_path == "/content_text"
        assert 0 < len(text) <= 40


def test_reindex_chapter_replaces_old_segments(embedder, vector_repo):
    indexer = _small_indexer(embedder, vector_repo)
    indexer.index_chapter("t1", "p1", ChapterDocument(id="ch-1", content_text="旧内容" * 30))
    indexer.index_chapter("t1", "p1", ChapterDocument(id="ch-1", content_text="新内容"))

    assert len(vector_repo.segments) == 1
    _, text = decode_segment_text(vector_repo.segments[0].text_content)
    assert text == "新内容"


def test_index_empty_chapter_only_clears(embedder, vector_repo):
    indexer = _small_indexer(embedder, vector_repo)
    assert indexer.index_chapter("t1", "p1", ChapterDocument(id="ch-2", content_text="   ")) == 0
    assert vector_repo.deleted == [("t1", "p1", "ch-2", "chapter")]
    assert vector_repo.segments == []


def test_index_artifact_json_leaves(embedder, vector_repo):
    """构件索引：每个 JSON 叶子一条片段，ref_path 指向叶子路径。"""
    indexer = _small_indexer(embedder, vector_repo, batch_size=2)
    content = json.dumps(
        {
            "genre": "玄幻",
            "target_word_count": 300000,
            "world_settings": {"locations": ["青云山", "落霞镇"]},
        },
        ensure_ascii=False,
    )

    count = indexer.index_artifact_json("t1", "p1", "worldview", "wv-1", content)

    assert count == 4
    assert vector_repo.deleted == [("t1", "p1", "wv-1", "artifact_worldview")]
    paths = []
    for segment in vector_repo.segments:
        assert segment.segment_type == "artifact_worldview"
        assert segment.story_time == 0
        assert len(segment.vector) == EMBEDDING_SIZE
        meta, _ = decode_segment_text(segment.text_content)
        assert meta.doc_type == "artifact"
        assert meta.artifact_id == "wv-1"
        assert meta.artifact_type == "worldview"
        paths.append(meta.ref_path)
    assert paths == [
        "/genre",
        "/target_word_count",
        "/world_settings/locations/0",
        "/world_settings/locations/1",
    ]


def test_index_artifact_accepts_bytes_and_empty(embedder, vector_repo):
    indexer = _small_indexer(embedder, vector_repo)
    assert indexer.index_artifact_json("t1", "p1", "novel_foundation", "nf", b'{"title": "x"}') == 1
    assert indexer.index_artifact_json("t1", "p1", "novel_foundation", "nf", "") == 0
    assert vector_repo.segments == []


def test_disabled_indexer_raises(vector_repo, embedder):
    with pytest.raises(VectorDisabledError):
        Indexer(None, vector_repo).index_chapter("t1", "p1", ChapterDocument(id="c", content_text="x"))
    with pytest.raises(VectorDisabledError):
        Indexer(embedder, None).index_artifact_json("t1", "p1", "outline", "o1", "{}")
    assert vector_repo.deleted == []


@pytest.mark.parametrize(
    "call",
    [
        lambda ix: ix.index_chapter("", "p1", ChapterDocument(id="c")),
        lambda ix: ix.index_chapter("t1", "p1", None),
        lambda ix: ix.index_chapter("t1", "p1", ChapterDocument(id="  ")),
        lambda ix: ix.index_artifact_json("t1", "p1", "worldview", "", "{}"),
        lambda ix: ix.index_artifact_json("t1", "p1", "", "a1", "{}"),
        lambda ix: ix.index_artifact_json("t1", "p1", "timeline", "a1", "{}"),
        lambda ix: ix.index_artifact_json("t1", "p1", "worldview", "a1", "{not json"),
    ],
)
def test_index_validation_errors(embedder, vector_repo, call):
    with pytest.raises(ValueError):
        call(_small_indexer(embedder, vector_repo))
