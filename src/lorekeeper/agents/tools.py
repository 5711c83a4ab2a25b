"""构件生成时模型可调用的工具。

工具只读取本次请求已加载的上下文或检索引擎，不产生副作用。
任何失败都以 {"error": ...} 的 JSON 结果返回给模型，便于其自行修正。
"""

from __future__ import annotations

import json
import logging
from typing import Any

from langchain_core.messages import ToolMessage
from langchain_core.tools import StructuredTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, Field

from lorekeeper.config.settings import ToolConfig
from lorekeeper.models.artifact import ARTIFACT_TYPES, ArtifactType, parse_artifact_type
from lorekeeper.models.generation import ArtifactGenerateInput
from lorekeeper.models.segment import SearchInput, Segment, artifact_segment_type
from lorekeeper.retrieval.engine import RetrievalEngine

logger = logging.getLogger(__name__)

TOOL_GET_ACTIVE_ARTIFACT = "get_active_artifact"
TOOL_SEMANTIC_SEARCH = "semantic_search"
TOOL_GET_PROJECT_BRIEF = "get_project_brief"


class GetActiveArtifactArgs(BaseModel):
    type: str = Field(
        description="构件类型：novel_foundation/worldview/characters/outline",
        json_schema_extra={"enum": list(ARTIFACT_TYPES)},
    )


class SemanticSearchArgs(BaseModel):
    query: str = Field(description="检索关键词或自然语言描述")
    type: str = Field(
        default="",
        description="可选：限定构件类型（novel_foundation/worldview/characters/outline）",
    )
    top_k: int = Field(default=0, description="可选：返回命中条数，默认 5，最多 20")


class GetProjectBriefArgs(BaseModel):
    pass


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


def _error(message: str) -> str:
    return _dumps({"error": message})


def slice_around(text: str, idx: int, match_len: int, max_len: int) -> str:
    """以命中位置为中心截取片段（按码点计），换行折叠为空格。"""
    if idx < 0 or idx > len(text) or max_len <= 0:
        return ""
    start = max(idx - max_len // 2, 0)
    end = min(start + max_len, len(text))
    # 窗口不足以容纳关键词时向后补齐
    if end - start < match_len and end < len(text):
        end = min(end + match_len - (end - start), len(text))
    snippet = text[start:end].replace("\r", " ").replace("\n", " ")
    return snippet.strip()


class ArtifactToolSet:
    """单次生成请求的工具集合。"""

    def __init__(
        self,
        request: ArtifactGenerateInput,
        retrieval_engine: RetrievalEngine | None = None,
        config: ToolConfig | None = None,
    ):
        self.request = request
        self.retrieval_engine = retrieval_engine
        self.config = config or ToolConfig()
        self.tools: list[StructuredTool] = [
            StructuredTool.from_function(
                func=self.get_active_artifact,
                name=TOOL_GET_ACTIVE_ARTIFACT,
                description="读取指定类型的当前设定 JSON（世界观/角色/大纲/小说基底）。用于在需要时按需加载上下文。",
                args_schema=GetActiveArtifactArgs,
            ),
            StructuredTool.from_function(
                func=self.semantic_search,
                name=TOOL_SEMANTIC_SEARCH,
                description="在已有设定中检索与查询相关的片段，返回命中片段及其来源路径，便于定位 key/name/章节等信息。",
                args_schema=SemanticSearchArgs,
            ),
            StructuredTool.from_function(
                func=self.get_project_brief,
                name=TOOL_GET_PROJECT_BRIEF,
                description="返回项目标题/简介与当前任务类型的简要信息。",
                args_schema=GetProjectBriefArgs,
            ),
        ]
        self._by_name = {t.name: t for t in self.tools}

    def tool_schemas(self) -> list[dict[str, Any]]:
        """OpenAI 风格的函数定义，用于 bind_tools。"""
        return [convert_to_openai_tool(t) for t in self.tools]

    # ────────────────────────────────────────────
    # 执行
    # ────────────────────────────────────────────

    def execute(self, tool_call: dict[str, Any]) -> ToolMessage:
        """执行一次工具调用。未知工具与工具内部异常都转为错误结果，不抛出。"""
        name = str(tool_call.get("name", "")).strip()
        call_id = tool_call.get("id") or ""
        tool = self._by_name.get(name)
        if tool is None:
            logger.warning("模型调用了未知工具: %s", name)
            content = _error(f"unknown tool: {name}")
        else:
            try:
                content = tool.invoke(tool_call.get("args") or {})
            except Exception as e:
                logger.warning("工具 %s 执行失败: %s", name, e)
                content = _error(f"{name} failed: {e}")
        return ToolMessage(content=str(content), tool_call_id=call_id, name=name)

    def reject_invalid(self, invalid_call: dict[str, Any]) -> ToolMessage:
        """参数无法解析的调用：不执行，直接回复错误结果。"""
        name = str(invalid_call.get("name") or "").strip()
        reason = invalid_call.get("error") or "malformed arguments"
        logger.warning("工具调用参数无法解析: %s (%s)", name, reason)
        return ToolMessage(
            content=_error(f"invalid tool call arguments for {name}: {reason}"),
            tool_call_id=invalid_call.get("id") or "",
            name=name,
        )

    # ────────────────────────────────────────────
    # 工具实现
    # ────────────────────────────────────────────

    def _local_artifacts(self) -> list[tuple[str, str]]:
        """请求上下文中已加载的构件 JSON：[(type, raw)]。"""
        req = self.request
        items = [
            (ArtifactType.WORLDVIEW.value, req.current_worldview),
            (ArtifactType.CHARACTERS.value, req.current_characters),
            (ArtifactType.OUTLINE.value, req.current_outline),
        ]
        own = req.type.value
        if own not in {t for t, _ in items}:
            items.append((own, req.current_artifact_raw))
        return [(t, raw) for t, raw in items if raw and raw.strip()]

    def _active_raw(self, artifact_type: ArtifactType) -> str:
        req = self.request
        if artifact_type == ArtifactType.WORLDVIEW:
            return req.current_worldview
        if artifact_type == ArtifactType.CHARACTERS:
            return req.current_characters
        if artifact_type == ArtifactType.OUTLINE:
            return req.current_outline
        if artifact_type == req.type:
            return req.current_artifact_raw
        return ""

    def get_active_artifact(self, type: str) -> str:
        try:
            atype = parse_artifact_type(type)
        except ValueError as e:
            return _error(str(e))
        raw = (self._active_raw(atype) or "").strip()
        try:
            doc: Any = json.loads(raw) if raw else None
        except json.JSONDecodeError:
            doc = raw
        return _dumps({"type": atype.value, "exists": bool(raw), "json": doc})

    def semantic_search(self, query: str, type: str = "", top_k: int = 0) -> str:
        query = (query or "").strip()
        if not query:
            return _error("query is required")
        filter_type = (type or "").strip()
        if filter_type:
            try:
                filter_type = parse_artifact_type(filter_type).value
            except ValueError as e:
                return _error(str(e))
        if top_k <= 0:
            top_k = self.config.search_default_top_k
        top_k = min(top_k, self.config.search_max_top_k)

        hits = self._vector_search(query, filter_type, top_k)
        if hits is None:
            hits = self._substring_search(query, filter_type, top_k)
        return _dumps({"query": query, "hits": hits})

    def _vector_search(self, query: str, filter_type: str, top_k: int) -> list[dict] | None:
        """向量检索；引擎缺失、关闭或失败时返回 None，由调用方降级。"""
        engine = self.retrieval_engine
        if engine is None or not engine.enabled:
            return None
        types = [filter_type] if filter_type else list(ARTIFACT_TYPES)
        try:
            out = engine.search(
                SearchInput(
                    tenant_id=self.request.tenant_id,
                    project_id=self.request.project_id,
                    query=query,
                    top_k=top_k,
                    segment_types=[artifact_segment_type(t) for t in types],
                )
            )
        except Exception as e:
            logger.warning("semantic_search 向量检索失败，降级为子串匹配: %s", e)
            return None
        if out.disabled_reason:
            logger.info("semantic_search 向量能力关闭 (%s)，降级为子串匹配", out.disabled_reason)
            return None
        return [self._vector_hit(query, seg) for seg in out.segments[:top_k]]

    def _vector_hit(self, query: str, segment: Segment) -> dict[str, Any]:
        max_chars = self.config.snippet_max_chars
        idx = segment.text.find(query)
        if idx >= 0:
            snippet = slice_around(segment.text, idx, len(query), max_chars)
        else:
            snippet = slice_around(segment.text, 0, 0, max_chars)
        return {
            "source": "vector",
            "score": segment.score,
            "artifact_type": segment.artifact_type,
            "artifact_id": segment.artifact_id,
            "ref_path": segment.ref_path,
            "snippet": snippet,
        }

    def _substring_search(self, query: str, filter_type: str, top_k: int) -> list[dict]:
        hits: list[dict] = []
        for atype, raw in self._local_artifacts():
            if len(hits) >= top_k:
                break
            if filter_type and atype != filter_type:
                continue
            idx = raw.find(query)
            if idx < 0:
                continue
            hits.append(
                {
                    "source": "substring",
                    "score": 0.0,
                    "artifact_type": atype,
                    "snippet": slice_around(
                        raw, idx, len(query), self.config.substring_snippet_chars
                    ),
                }
            )
        return hits

    def get_project_brief(self) -> str:
        req = self.request
        return _dumps(
            {
                "project_title": req.project_title.strip(),
                "project_description": req.project_description.strip(),
                "task_type": req.type.value,
            }
        )
