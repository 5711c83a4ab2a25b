"""构件生成状态机的节点。

每个 create_*_node 返回一个节点函数：读取 GenerationState，返回部分更新
（含 next_action）。计数器只在本次请求的状态里累加。
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from lorekeeper.agents.tools import ArtifactToolSet
from lorekeeper.agents.utils import (
    build_attachments_block,
    extract_json_text,
    extract_response_text,
    invoke_with_retry,
    truncate_chars,
)
from lorekeeper.artifacts.patch import apply_artifact_patch, is_patch_mode
from lorekeeper.artifacts.schemas import (
    ALLOWED_PATCH_OPS,
    ALLOWED_PATCH_PATHS,
    artifact_json_schema,
    artifact_patch_json_schema,
    response_format,
)
from lorekeeper.artifacts.validate import normalize_and_validate
from lorekeeper.config.settings import PipelineConfig, ToolConfig
from lorekeeper.errors import (
    ArtifactGenerationError,
    ArtifactPatchError,
    GenerationCancelledError,
    ToolRoundsExceededError,
)
from lorekeeper.graph.routing import (
    GENERATION_FAILED,
    TOOL_ROUNDS_EXCEEDED,
    decide_after_model,
    decide_after_validation,
)
from lorekeeper.llm.errors import LLMErrorKind, classify_llm_error
from lorekeeper.llm.factory import ChatModelFactory
from lorekeeper.models.generation import ArtifactGenerateInput, ArtifactGenerateOutput, LLMUsageMeta
from lorekeeper.models.segment import SearchInput
from lorekeeper.prompts import (
    PROMPT_ARTIFACT_PATCH_SYSTEM,
    PROMPT_ARTIFACT_PATCH_USER,
    PROMPT_ARTIFACT_SYSTEM,
    PROMPT_ARTIFACT_USER,
    PROMPT_REPAIR_FULL,
    PROMPT_REPAIR_PATCH,
    PromptRegistry,
)
from lorekeeper.retrieval.engine import RetrievalEngine
from lorekeeper.retrieval.prompt_context import build_prompt_context
from lorekeeper.state.generation_state import GenerationState
from lorekeeper.utils.token_tracker import TokenTracker, usage_from_message

logger = logging.getLogger(__name__)

OPERATION_NAME = "artifact_generate"

MODE_FULL = "full"
MODE_PATCH = "patch"

CURRENT_ARTIFACT_HINT = (
    "当前任务对应构件已存在；更新时请先调用 `get_active_artifact` 获取当前 JSON，"
    "并保持已有 key 不变（仅新增对象创建新 key）。"
)

_BLANK_LINES = re.compile(r"\n{3,}")


def _check_cancel(state: GenerationState, where: str) -> None:
    token = state.get("cancel_token")
    if token is not None:
        token.raise_if_cancelled(where)


def _squeeze(text: str) -> str:
    """去掉空占位符留下的多余空行。"""
    return _BLANK_LINES.sub("\n\n", text).strip()


# ────────────────────────────────────────────
# 提示词构造
# ────────────────────────────────────────────


def _conversation_block(req: ArtifactGenerateInput) -> str:
    parts = []
    if req.conversation_summary.strip():
        parts.append(f"对话摘要：\n{req.conversation_summary.strip()}")
    if req.recent_user_turns.strip():
        parts.append(f"最近的用户发言：\n{req.recent_user_turns.strip()}")
    return "\n\n".join(parts)


def _recall_context(engine: RetrievalEngine | None, req: ArtifactGenerateInput) -> str:
    """以用户要求为查询预取召回上下文；向量能力不可用时为空。"""
    if engine is None or not engine.enabled:
        return ""
    if not (req.tenant_id.strip() and req.project_id.strip() and req.prompt.strip()):
        return ""
    try:
        out = engine.search(
            SearchInput(tenant_id=req.tenant_id, project_id=req.project_id, query=req.prompt)
        )
    except ValueError as e:
        logger.debug("跳过召回上下文: %s", e)
        return ""
    return build_prompt_context(out.segments)


def build_full_messages(
    prompts: PromptRegistry, req: ArtifactGenerateInput, context_block: str = ""
) -> list[BaseMessage]:
    atype = req.type.value
    system = prompts.format(PROMPT_ARTIFACT_SYSTEM, artifact_type=atype)
    user = prompts.format(
        PROMPT_ARTIFACT_USER,
        project_title=req.project_title.strip(),
        project_description=req.project_description.strip(),
        artifact_type=atype,
        conversation_block=_conversation_block(req),
        prompt=req.prompt.strip(),
        attachments_block=build_attachments_block(req.attachments),
        context_block=context_block,
        current_hint=CURRENT_ARTIFACT_HINT if is_patch_mode(req.current_artifact_raw) else "",
    )
    return [SystemMessage(content=system), HumanMessage(content=_squeeze(user))]


def build_patch_messages(
    prompts: PromptRegistry, req: ArtifactGenerateInput, context_block: str = ""
) -> list[BaseMessage]:
    paths = ALLOWED_PATCH_PATHS[req.type]
    system = prompts.format(
        PROMPT_ARTIFACT_PATCH_SYSTEM,
        artifact_type=req.type.value,
        allowed_ops=", ".join(ALLOWED_PATCH_OPS),
        allowed_paths=", ".join(paths),
        example_path=paths[0],
    )
    user = prompts.format(
        PROMPT_ARTIFACT_PATCH_USER,
        project_title=req.project_title.strip(),
        project_description=req.project_description.strip(),
        artifact_type=req.type.value,
        current_artifact_json=req.current_artifact_raw.strip(),
        conversation_block=_conversation_block(req),
        prompt=req.prompt.strip(),
        attachments_block=build_attachments_block(req.attachments),
        context_block=context_block,
    )
    return [SystemMessage(content=system), HumanMessage(content=_squeeze(user))]


def build_model_kwargs(req: ArtifactGenerateInput) -> dict[str, Any]:
    """请求级覆盖参数，原样透传给模型调用。"""
    kwargs: dict[str, Any] = {}
    if req.temperature is not None:
        kwargs["temperature"] = req.temperature
    if req.max_tokens is not None:
        kwargs["max_tokens"] = req.max_tokens
    if req.model.strip():
        kwargs["model"] = req.model.strip()
    return kwargs


# ────────────────────────────────────────────
# 节点
# ────────────────────────────────────────────


def create_init_node(
    model_factory: ChatModelFactory,
    prompts: PromptRegistry,
    retrieval_engine: RetrievalEngine | None = None,
    tool_config: ToolConfig | None = None,
):
    """渲染提示词、选择输出模式、解析模型并绑定工具。"""

    def init_node(state: GenerationState) -> dict[str, Any]:
        _check_cancel(state, "init")
        req = state["request"]

        context_block = _recall_context(retrieval_engine, req)
        full_messages = build_full_messages(prompts, req, context_block)
        if is_patch_mode(req.current_artifact_raw):
            mode = MODE_PATCH
            messages = build_patch_messages(prompts, req, context_block)
        else:
            mode = MODE_FULL
            messages = list(full_messages)

        base_model = model_factory.get(req.provider, req.model, req.temperature, req.max_tokens)
        tool_set = ArtifactToolSet(req, retrieval_engine, tool_config)
        try:
            chat_model = base_model.bind_tools(tool_set.tools)
        except NotImplementedError:
            logger.info("模型未实现工具绑定，不使用工具: provider=%s", req.provider)
            chat_model = base_model
        except Exception as e:
            logger.warning("工具绑定失败，不使用工具: provider=%s error=%s", req.provider, e)
            chat_model = base_model

        logger.info("开始生成构件: type=%s mode=%s", req.type.value, mode)
        return {
            "mode": mode,
            "full_messages": full_messages,
            "messages": messages,
            "base_model": base_model,
            "chat_model": chat_model,
            "tool_set": tool_set,
            "last_response": None,
            "last_raw": "",
            "tool_rounds": 0,
            "repair_rounds": 0,
            "fallback_used": False,
            "candidate_raw": "",
            "content": None,
            "validation_error": "",
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "output": None,
            "next_action": "model",
        }

    return init_node


def create_model_node(
    config: PipelineConfig,
    tracker: TokenTracker,
):
    """调用模型。

    降级策略：
    1. 工具不受支持：改用未绑定工具的基础模型重试，本次请求内保持。
    2. 结构化输出不受支持：去掉 response_format 重试一次。
    """

    def _invoke(model, messages, state, **kwargs):
        return invoke_with_retry(
            model,
            messages,
            max_retries=config.model_max_retries,
            base_delay=config.retry_base_delay,
            operation_name=OPERATION_NAME,
            cancel_token=state.get("cancel_token"),
            **kwargs,
        )

    def model_node(state: GenerationState) -> dict[str, Any]:
        _check_cancel(state, "model")
        req = state["request"]
        atype = req.type
        mode = state.get("mode", MODE_FULL)
        messages = state["messages"]
        chat_model = state["chat_model"]
        base_model = state["base_model"]

        if mode == MODE_PATCH:
            schema = artifact_patch_json_schema(atype)
            schema_name = f"artifact_{atype.value}_patch"
        else:
            schema = artifact_json_schema(atype)
            schema_name = f"artifact_{atype.value}"
        kwargs = build_model_kwargs(req)
        fmt = response_format(schema_name, schema)

        start = time.perf_counter()
        try:
            try:
                response = _invoke(chat_model, messages, state, response_format=fmt, **kwargs)
            except GenerationCancelledError:
                raise
            except Exception as e:
                if (
                    classify_llm_error(e, req.provider) != LLMErrorKind.TOOLS_UNSUPPORTED
                    or chat_model is base_model
                ):
                    raise
                logger.warning(
                    "模型不支持工具调用，改用无工具模式: provider=%s model=%s type=%s error=%s",
                    req.provider,
                    req.model,
                    atype.value,
                    e,
                )
                chat_model = base_model
                response = _invoke(chat_model, messages, state, response_format=fmt, **kwargs)
        except GenerationCancelledError:
            raise
        except Exception as e:
            if classify_llm_error(e, req.provider) != LLMErrorKind.SCHEMA_UNSUPPORTED:
                raise
            logger.warning(
                "模型不支持 json_schema，改为纯提示词模式: provider=%s model=%s type=%s error=%s",
                req.provider,
                req.model,
                atype.value,
                e,
            )
            response = _invoke(chat_model, messages, state, **kwargs)

        input_tokens, output_tokens = usage_from_message(response)
        tracker.record_usage(
            operation=OPERATION_NAME,
            model_name=req.model or getattr(base_model, "model_name", "") or "unknown",
            artifact_type=atype.value,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=(time.perf_counter() - start) * 1000,
            mode=mode,
        )

        raw = extract_response_text(response)
        tool_calls = (getattr(response, "tool_calls", None) or []) + (
            getattr(response, "invalid_tool_calls", None) or []
        )
        tool_rounds = state.get("tool_rounds", 0)
        action = decide_after_model(bool(tool_calls), tool_rounds, config.max_tool_rounds)
        if action == TOOL_ROUNDS_EXCEEDED:
            logger.warning("工具调用轮数超过上限: type=%s rounds=%d", atype.value, tool_rounds)
            raise ToolRoundsExceededError(atype.value, raw)

        return {
            "chat_model": chat_model,
            "messages": messages + [response],
            "last_response": response,
            "last_raw": raw,
            "prompt_tokens": state.get("prompt_tokens", 0) + input_tokens,
            "completion_tokens": state.get("completion_tokens", 0) + output_tokens,
            "next_action": action,
        }

    return model_node


def create_tools_node():
    """顺序执行模型请求的工具调用，结果作为 ToolMessage 追加到对话。

    参数无法解析的调用也要逐个回复错误结果，否则下一轮请求会被拒绝。
    """

    def tools_node(state: GenerationState) -> dict[str, Any]:
        _check_cancel(state, "tools")
        tool_set: ArtifactToolSet = state["tool_set"]
        response = state["last_response"]
        results = []
        for call in response.tool_calls:
            _check_cancel(state, f"tool:{call.get('name', '')}")
            logger.debug("执行工具: %s", call.get("name"))
            results.append(tool_set.execute(call))
        for call in getattr(response, "invalid_tool_calls", None) or []:
            results.append(tool_set.reject_invalid(call))
        return {
            "messages": state["messages"] + results,
            "tool_rounds": state.get("tool_rounds", 0) + 1,
            "next_action": "model",
        }

    return tools_node


def create_validate_node(config: PipelineConfig):
    """提取 JSON；补丁模式先校验并应用补丁，再做结构校验。"""

    def validate_node(state: GenerationState) -> dict[str, Any]:
        _check_cancel(state, "validate")
        req = state["request"]
        mode = state.get("mode", MODE_FULL)
        candidate = extract_json_text(state.get("last_raw", ""))

        content: dict[str, Any] | None = None
        error = ""
        if not candidate:
            error = "empty artifact output"
        else:
            try:
                if mode == MODE_PATCH:
                    doc = apply_artifact_patch(req.type, req.current_artifact_raw, candidate)
                    content = normalize_and_validate(req.type, doc)
                else:
                    content = normalize_and_validate(req.type, candidate)
            except (ArtifactPatchError, ValueError) as e:
                # ArtifactValidationError 同时是 ValueError
                error = str(e)

        repair_rounds = state.get("repair_rounds", 0)
        fallback_used = state.get("fallback_used", False)
        action = decide_after_validation(
            content is not None, mode, repair_rounds, config.max_repair_rounds, fallback_used
        )
        if error:
            logger.warning(
                "构件校验未通过: type=%s mode=%s repair=%d/%d next=%s error=%s",
                req.type.value,
                mode,
                repair_rounds,
                config.max_repair_rounds,
                action,
                error,
            )
        if action == GENERATION_FAILED:
            raise ArtifactGenerationError(req.type.value, error, state.get("last_raw", ""))

        return {
            "candidate_raw": candidate,
            "content": content,
            "validation_error": error,
            "next_action": action,
        }

    return validate_node


def create_repair_node(config: PipelineConfig, prompts: PromptRegistry):
    """追加纠错指令：错误信息 + 截断后的原始输出。"""

    def repair_node(state: GenerationState) -> dict[str, Any]:
        _check_cancel(state, "repair")
        req = state["request"]
        raw = truncate_chars(state.get("last_raw", ""), config.repair_raw_max_chars)
        error = state.get("validation_error", "")
        if state.get("mode") == MODE_PATCH:
            text = prompts.format(
                PROMPT_REPAIR_PATCH,
                error=error,
                raw=raw,
                allowed_ops=", ".join(ALLOWED_PATCH_OPS),
                allowed_paths=", ".join(ALLOWED_PATCH_PATHS[req.type]),
            )
        else:
            text = prompts.format(PROMPT_REPAIR_FULL, error=error, raw=raw)
        return {
            "messages": state["messages"] + [HumanMessage(content=text)],
            "repair_rounds": state.get("repair_rounds", 0) + 1,
            "next_action": "model",
        }

    return repair_node


def create_fallback_node():
    """补丁模式修复用尽后回退为全量模式（每个请求最多一次）。"""

    def fallback_node(state: GenerationState) -> dict[str, Any]:
        _check_cancel(state, "fallback")
        logger.warning(
            "补丁模式失败，回退为全量生成: type=%s error=%s",
            state["request"].type.value,
            state.get("validation_error", ""),
        )
        return {
            "mode": MODE_FULL,
            "messages": list(state["full_messages"]),
            "repair_rounds": 0,
            "fallback_used": True,
            "candidate_raw": "",
            "content": None,
            "validation_error": "",
            "next_action": "model",
        }

    return fallback_node


def create_finalize_node():
    def finalize_node(state: GenerationState) -> dict[str, Any]:
        _check_cancel(state, "finalize")
        req = state["request"]
        meta = LLMUsageMeta(
            provider=req.provider,
            model=req.model.strip(),
            prompt_tokens=state.get("prompt_tokens", 0),
            completion_tokens=state.get("completion_tokens", 0),
        )
        if req.temperature is not None:
            meta.temperature = req.temperature
        output = ArtifactGenerateOutput(
            type=req.type,
            content=state["content"],
            raw=state.get("candidate_raw", ""),
            model_raw=state.get("last_raw", ""),
            mode=state.get("mode", MODE_FULL),
            meta=meta,
        )
        logger.info(
            "构件生成完成: type=%s mode=%s tool_rounds=%d repair_rounds=%d fallback=%s",
            req.type.value,
            output.mode,
            state.get("tool_rounds", 0),
            state.get("repair_rounds", 0),
            state.get("fallback_used", False),
        )
        return {"output": output, "next_action": "end"}

    return finalize_node
