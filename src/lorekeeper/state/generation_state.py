"""构件生成状态定义（LangGraph StateGraph 状态）。"""

from __future__ import annotations

from typing import Any

from langchain_core.messages import AIMessage, BaseMessage
from typing_extensions import TypedDict

from lorekeeper.models.generation import ArtifactGenerateInput, ArtifactGenerateOutput


class GenerationState(TypedDict, total=False):
    """单次生成请求的状态。

    使用 total=False 使所有字段可选，便于在节点中做部分更新。
    每次 generate() 都从新的状态开始，请求之间不共享任何可变数据。
    """

    # ── 请求（初始化后不变）──
    request: ArtifactGenerateInput
    cancel_token: Any  # CancellationToken

    # ── 模型与工具 ──
    base_model: Any
    chat_model: Any  # 绑定工具后的模型；工具不受支持时退回 base_model
    tool_set: Any  # ArtifactToolSet

    # ── 对话 ──
    mode: str  # "full" | "patch"
    full_messages: list[BaseMessage]  # 全量模式的初始提示，回退时使用
    messages: list[BaseMessage]
    last_response: AIMessage | None
    last_raw: str

    # ── 计数器 ──
    tool_rounds: int
    repair_rounds: int
    fallback_used: bool

    # ── 校验 ──
    candidate_raw: str
    content: dict[str, Any] | None
    validation_error: str

    # ── 用量 ──
    prompt_tokens: int
    completion_tokens: int

    # ── 结果 ──
    output: ArtifactGenerateOutput | None

    # ── 控制流 ──
    next_action: str
