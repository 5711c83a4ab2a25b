"""构件生成图。

init -> model -> (tools -> model)* -> validate -> (repair -> model | fallback -> model)* -> finalize
节点通过 next_action 决定去向，步数上限由 recursion_limit 控制。
"""

from __future__ import annotations

import logging

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, START, StateGraph

from lorekeeper.agents.artifact_nodes import (
    create_fallback_node,
    create_finalize_node,
    create_init_node,
    create_model_node,
    create_repair_node,
    create_tools_node,
    create_validate_node,
)
from lorekeeper.agents.conflict_scanner import ConflictScanner
from lorekeeper.config.settings import AppConfig
from lorekeeper.errors import ArtifactGenerationError
from lorekeeper.graph.routing import route_by_next_action
from lorekeeper.llm.factory import ChatModelFactory
from lorekeeper.models.generation import (
    ArtifactConflictScanInput,
    ArtifactConflictScanOutput,
    ArtifactGenerateInput,
    ArtifactGenerateOutput,
)
from lorekeeper.prompts import PromptRegistry
from lorekeeper.retrieval.engine import RetrievalEngine
from lorekeeper.state.generation_state import GenerationState
from lorekeeper.utils.cancellation import CancellationToken
from lorekeeper.utils.token_tracker import TokenTracker

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────
# 图构建
# ────────────────────────────────────────────


def build_artifact_graph(
    model_factory: ChatModelFactory,
    config: AppConfig | None = None,
    prompts: PromptRegistry | None = None,
    retrieval_engine: RetrievalEngine | None = None,
    tracker: TokenTracker | None = None,
) -> StateGraph:
    """构建构件生成图。"""
    if config is None:
        config = AppConfig()
    prompts = prompts or PromptRegistry()
    tracker = tracker or TokenTracker()

    workflow = StateGraph(GenerationState)
    workflow.add_node(
        "init", create_init_node(model_factory, prompts, retrieval_engine, config.tools)
    )
    workflow.add_node("model", create_model_node(config.pipeline, tracker))
    workflow.add_node("tools", create_tools_node())
    workflow.add_node("validate", create_validate_node(config.pipeline))
    workflow.add_node("repair", create_repair_node(config.pipeline, prompts))
    workflow.add_node("fallback", create_fallback_node())
    workflow.add_node("finalize", create_finalize_node())

    workflow.add_edge(START, "init")
    workflow.add_conditional_edges("init", route_by_next_action)
    workflow.add_conditional_edges("model", route_by_next_action)
    workflow.add_conditional_edges("tools", route_by_next_action)
    workflow.add_conditional_edges("validate", route_by_next_action)
    workflow.add_conditional_edges("repair", route_by_next_action)
    workflow.add_conditional_edges("fallback", route_by_next_action)
    workflow.add_edge("finalize", END)

    return workflow


def compile_artifact_graph(
    model_factory: ChatModelFactory,
    config: AppConfig | None = None,
    prompts: PromptRegistry | None = None,
    retrieval_engine: RetrievalEngine | None = None,
    tracker: TokenTracker | None = None,
):
    """构建并编译图。状态里持有模型与工具对象，不挂 checkpointer。"""
    workflow = build_artifact_graph(
        model_factory=model_factory,
        config=config,
        prompts=prompts,
        retrieval_engine=retrieval_engine,
        tracker=tracker,
    )
    return workflow.compile()


class ArtifactPipeline:
    """构件生成与冲突扫描的入口。

    图在构造时编译一次；每次 generate() 使用全新的状态，可被多个请求并发复用。
    """

    def __init__(
        self,
        model_factory: ChatModelFactory,
        retrieval_engine: RetrievalEngine | None = None,
        config: AppConfig | None = None,
        prompts: PromptRegistry | None = None,
        tracker: TokenTracker | None = None,
    ):
        self.config = config or AppConfig()
        self.prompts = prompts or PromptRegistry()
        self.tracker = tracker or TokenTracker()
        self.model_factory = model_factory
        self.retrieval_engine = retrieval_engine
        self.graph = compile_artifact_graph(
            model_factory=model_factory,
            config=self.config,
            prompts=self.prompts,
            retrieval_engine=retrieval_engine,
            tracker=self.tracker,
        )
        conflict_factory = model_factory
        if self.config.conflict_model is not None:
            conflict_factory = ChatModelFactory(self.config.conflict_model)
        self.conflict_scanner = ConflictScanner(
            conflict_factory, self.prompts, self.config.pipeline, self.tracker
        )

    def generate(
        self,
        request: ArtifactGenerateInput,
        cancel_token: CancellationToken | None = None,
    ) -> ArtifactGenerateOutput:
        """生成（或增量更新）一个构件。

        Raises:
            ArtifactGenerationError: 修复与回退用尽、工具轮数超限或超过步数上限。
            GenerationCancelledError: 调用方取消或超时。
        """
        max_steps = self.config.pipeline.max_steps
        state: GenerationState = {
            "request": request,
            "cancel_token": cancel_token or CancellationToken(),
        }
        try:
            final = self.graph.invoke(state, config={"recursion_limit": max_steps})
        except GraphRecursionError as e:
            logger.error("构件生成超过步数上限: type=%s steps=%d", request.type.value, max_steps)
            raise ArtifactGenerationError(
                request.type.value, f"step limit exceeded ({max_steps})"
            ) from e

        output = final.get("output")
        if output is None:
            raise ArtifactGenerationError(
                request.type.value, "pipeline ended without output", final.get("last_raw", "")
            )
        return output

    def scan_conflicts(
        self,
        scan_input: ArtifactConflictScanInput,
        cancel_token: CancellationToken | None = None,
    ) -> ArtifactConflictScanOutput:
        return self.conflict_scanner.scan(scan_input, cancel_token)
