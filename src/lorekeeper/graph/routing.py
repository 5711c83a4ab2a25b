"""条件路由逻辑。

decide_* 是不依赖状态对象的纯函数，节点用它们计算 next_action，
图通过 route_by_next_action 分发。
"""

from __future__ import annotations

from langgraph.graph import END

from lorekeeper.state.generation_state import GenerationState

# 所有合法的节点名称
VALID_ACTIONS = {
    "model",
    "tools",
    "validate",
    "repair",
    "fallback",
    "finalize",
    "end",
}

# 不对应节点的终止判定，由节点自行抛出异常
TOOL_ROUNDS_EXCEEDED = "tool_rounds_exceeded"
GENERATION_FAILED = "failed"


def decide_after_model(has_tool_calls: bool, tool_rounds: int, max_tool_rounds: int) -> str:
    """模型返回后：有工具调用则执行工具（超过轮数上限即失败），否则进入校验。"""
    if has_tool_calls:
        if tool_rounds >= max_tool_rounds:
            return TOOL_ROUNDS_EXCEEDED
        return "tools"
    return "validate"


def decide_after_validation(
    ok: bool,
    mode: str,
    repair_rounds: int,
    max_repair_rounds: int,
    fallback_used: bool,
) -> str:
    """校验后：通过则收尾；还有修复次数则修复；补丁模式修复用尽则回退全量一次；否则失败。"""
    if ok:
        return "finalize"
    if repair_rounds < max_repair_rounds:
        return "repair"
    if mode == "patch" and not fallback_used:
        return "fallback"
    return GENERATION_FAILED


def route_by_next_action(state: GenerationState) -> str:
    """通用路由：根据 state['next_action'] 决定下一个节点。"""
    action = state.get("next_action", "end")

    if action == "end":
        return END
    if action in VALID_ACTIONS:
        return action
    return END
