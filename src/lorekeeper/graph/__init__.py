"""LangGraph 构件生成图。

图的构建与 ArtifactPipeline 位于 lorekeeper.graph.artifact_graph；
这里只导出路由判定，节点模块依赖它们。
"""

from lorekeeper.graph.routing import (
    GENERATION_FAILED,
    TOOL_ROUNDS_EXCEEDED,
    decide_after_model,
    decide_after_validation,
    route_by_next_action,
)

__all__ = [
    "GENERATION_FAILED",
    "TOOL_ROUNDS_EXCEEDED",
    "decide_after_model",
    "decide_after_validation",
    "route_by_next_action",
]
