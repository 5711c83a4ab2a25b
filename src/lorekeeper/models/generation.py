"""构件生成与冲突扫描的输入输出模型。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from lorekeeper.models.artifact import ArtifactType


class TextAttachment(BaseModel):
    """随请求附带的文本材料。"""

    name: str = Field(default="", description="附件名称")
    content: str = Field(default="", description="附件正文")


class LLMUsageMeta(BaseModel):
    """一次生成请求的模型用量元数据。"""

    provider: str = ""
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    temperature: float = 0.0
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ArtifactGenerateInput(BaseModel):
    """构件生成请求。

    current_* 字段为已加载的当前构件 JSON 文本（可为空），
    current_artifact_raw 非空时进入增量补丁模式。
    """

    tenant_id: str = ""
    project_id: str = ""

    project_title: str = ""
    project_description: str = ""

    type: ArtifactType

    prompt: str = Field(default="", description="用户本次的生成/修改要求")
    attachments: list[TextAttachment] = Field(default_factory=list)

    conversation_summary: str = Field(default="", description="对话摘要")
    recent_user_turns: str = Field(default="", description="最近的用户发言")

    current_worldview: str = ""
    current_characters: str = ""
    current_outline: str = ""
    current_artifact_raw: str = ""

    provider: str = ""
    model: str = ""
    temperature: float | None = None
    max_tokens: int | None = None


class ArtifactGenerateOutput(BaseModel):
    """构件生成结果。content 已通过结构校验。"""

    type: ArtifactType
    content: dict[str, Any]
    raw: str = Field(default="", description="通过校验的 JSON 文本（补丁模式下为补丁）")
    model_raw: str = Field(default="", description="模型最后一次的原始输出")
    mode: str = Field(default="full", description="full | patch")
    meta: LLMUsageMeta = Field(default_factory=LLMUsageMeta)


# ────────────────────────────────────────────
# 冲突扫描
# ────────────────────────────────────────────


CONFLICT_SEVERITIES = ("high", "medium", "low")


class ArtifactConflict(BaseModel):
    severity: str = Field(default="low", description="high | medium | low")
    message: str = ""
    existing_ref: str = ""
    new_ref: str = ""
    suggestion: str = ""


class ArtifactConflictScanInput(BaseModel):
    project_title: str = ""
    project_description: str = ""
    project_genre: str = ""

    type: ArtifactType

    current_worldview: str = ""
    current_characters: str = ""
    current_outline: str = ""
    current_artifact: str = ""
    new_artifact: str = ""

    provider: str = ""
    model: str = ""
    temperature: float | None = None
    max_tokens: int | None = None


class ArtifactConflictScanOutput(BaseModel):
    conflicts: list[ArtifactConflict] = Field(default_factory=list)
    raw: str = ""
    meta: LLMUsageMeta = Field(default_factory=LLMUsageMeta)
