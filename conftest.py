"""测试公共夹具：脚本化聊天模型、固定模型工厂、内存向量库。"""

from __future__ import annotations

import math
from typing import Any

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage
from langchain_core.outputs import ChatGeneration, ChatResult
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import Field

from lorekeeper.config.settings import ModelConfig
from lorekeeper.llm.factory import ChatModelFactory
from lorekeeper.models.segment import VectorSearchParams, VectorSearchResult, VectorStorySegment


class ScriptedChatModel(BaseChatModel):
    """按顺序返回预置响应的聊天模型，记录每次调用的消息与参数。

    responses 中的元素可以是 str、AIMessage、异常或 (messages, kwargs) -> 响应 的函数。
    tools_error / schema_error 非空时，带对应参数的调用直接抛出该错误（不消耗响应）。
    """

    responses: list[Any] = Field(default_factory=list)
    calls: list[dict[str, Any]] = Field(default_factory=list)
    tools_error: str = ""
    schema_error: str = ""
    supports_tools: bool = True

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def _generate(self, messages, stop=None, run_manager=None, **kwargs: Any) -> ChatResult:
        self.calls.append({"messages": list(messages), "kwargs": dict(kwargs)})
        if self.tools_error and kwargs.get("tools"):
            raise ValueError(self.tools_error)
        if self.schema_error and "response_format" in kwargs:
            raise ValueError(self.schema_error)
        if not self.responses:
            raise AssertionError("no scripted response left")
        item = self.responses.pop(0)
        if callable(item):
            item = item(messages, kwargs)
        if isinstance(item, Exception):
            raise item
        message = item if isinstance(item, AIMessage) else AIMessage(content=item)
        return ChatResult(generations=[ChatGeneration(message=message)])

    def bind_tools(self, tools, **kwargs: Any):
        if not self.supports_tools:
            raise NotImplementedError
        return self.bind(tools=[convert_to_openai_tool(t) for t in tools], **kwargs)


class StaticModelFactory(ChatModelFactory):
    """总是返回同一个模型实例的工厂。"""

    def __init__(self, model: BaseChatModel):
        super().__init__(ModelConfig(provider="scripted", model_name="scripted"))
        self.model = model
        self.requests: list[tuple] = []

    def get(self, provider="", model="", temperature=None, max_tokens=None):
        self.requests.append((provider, model, temperature, max_tokens))
        return self.model


def _cosine_distance(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 1.0
    return 1.0 - dot / (na * nb)


class InMemoryVectorRepository:
    """实现 VectorRepository 协议的内存向量库，记录删除调用。"""

    def __init__(self) -> None:
        self.segments: list[VectorStorySegment] = []
        self.deleted: list[tuple[str, str, str, str]] = []
        self.ensure_calls = 0
        self.fail_search: Exception | None = None

    def ensure_collection(self) -> None:
        self.ensure_calls += 1

    def search_segments(self, params: VectorSearchParams) -> list[VectorSearchResult]:
        if self.fail_search is not None:
            raise self.fail_search
        hits = []
        for s in self.segments:
            if s.tenant_id != params.tenant_id or s.project_id != params.project_id:
                continue
            if params.current_story_time > 0 and s.story_time > params.current_story_time:
                continue
            if params.segment_types and s.segment_type not in params.segment_types:
                continue
            hits.append(
                VectorSearchResult(
                    id=s.id,
                    distance=_cosine_distance(params.query_vector, s.vector),
                    text_content=s.text_content,
                    doc_id=s.doc_id,
                    story_time=s.story_time,
                    segment_type=s.segment_type,
                )
            )
        hits.sort(key=lambda h: h.distance)
        return hits[: params.top_k]

    def delete_segments_by_doc_and_type(
        self, tenant_id: str, project_id: str, doc_id: str, segment_type: str
    ) -> None:
        self.deleted.append((tenant_id, project_id, doc_id, segment_type))
        self.segments = [
            s
            for s in self.segments
            if not (
                s.tenant_id == tenant_id
                and s.project_id == project_id
                and s.doc_id == doc_id
                and s.segment_type == segment_type
            )
        ]

    def insert_segments(
        self, tenant_id: str, project_id: str, segments: list[VectorStorySegment]
    ) -> None:
        self.segments.extend(segments)


EMBEDDING_SIZE = 16


@pytest.fixture
def embedder():
    return DeterministicFakeEmbedding(size=EMBEDDING_SIZE)


@pytest.fixture
def vector_repo():
    return InMemoryVectorRepository()
