"""自定义异常。

在检索、校验、生成各层之间传递语义明确的错误。
"""

from __future__ import annotations


class LorekeeperError(Exception):
    """lorekeeper 所有异常的基类。"""


class VectorDisabledError(LorekeeperError):
    """向量能力不可用（未配置 embedding 或向量库）。调用方应降级处理，而非失败。"""

    def __init__(self, reason: str = "vector capability disabled"):
        super().__init__(reason)
        self.reason = reason


class ArtifactValidationError(LorekeeperError, ValueError):
    """构件结构校验失败，汇总全部问题。"""

    def __init__(self, artifact_type: str, issues: list[str]):
        self.artifact_type = artifact_type
        self.issues = list(issues)
        super().__init__(
            f"artifact validation failed: {artifact_type}: {'; '.join(self.issues)}"
        )


class ArtifactPatchError(LorekeeperError, ValueError):
    """补丁文档非法（op/path 越界）或无法应用。"""


class ArtifactGenerationError(LorekeeperError):
    """生成流水线无法恢复的终止错误。

    附带构件类型、最后一次错误与最后一次模型原始输出，便于排查。
    """

    def __init__(self, artifact_type: str, last_error: str, last_raw: str = ""):
        self.artifact_type = artifact_type
        self.last_error = last_error
        self.last_raw = last_raw
        super().__init__(f"artifact generation failed ({artifact_type}): {last_error}")


class ToolRoundsExceededError(ArtifactGenerationError):
    """工具调用轮数超过上限。"""

    def __init__(self, artifact_type: str, last_raw: str = ""):
        super().__init__(artifact_type, "too many tool rounds", last_raw)


class GenerationCancelledError(LorekeeperError):
    """调用方取消或超时。不重试，立即终止。"""
