"""构件冲突扫描：对比新版本构件与已有设定，列出矛盾点。"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage

from lorekeeper.agents.utils import (
    extract_json_text,
    extract_response_text,
    invoke_with_retry,
    truncate_chars,
)
from lorekeeper.artifacts.schemas import conflict_scan_json_schema, response_format
from lorekeeper.config.settings import PipelineConfig
from lorekeeper.errors import GenerationCancelledError
from lorekeeper.llm.errors import LLMErrorKind, classify_llm_error
from lorekeeper.llm.factory import ChatModelFactory
from lorekeeper.models.generation import (
    CONFLICT_SEVERITIES,
    ArtifactConflict,
    ArtifactConflictScanInput,
    ArtifactConflictScanOutput,
    LLMUsageMeta,
)
from lorekeeper.prompts import (
    PROMPT_CONFLICT_SCAN_SYSTEM,
    PROMPT_CONFLICT_SCAN_USER,
    PromptRegistry,
)
from lorekeeper.utils.cancellation import CancellationToken
from lorekeeper.utils.token_tracker import TokenTracker, usage_from_message

logger = logging.getLogger(__name__)

OPERATION_NAME = "artifact_conflict_scan"

BRIEF_MAX_CHARS = 4000
EXISTING_MAX_CHARS = 20000
NEW_ARTIFACT_MAX_CHARS = 40000


def _format_json(raw: str, max_chars: int) -> str:
    text = (raw or "").strip()
    if not text:
        return "null"
    return truncate_chars(text, max_chars)


def normalize_conflicts(items: list[Any]) -> list[ArtifactConflict]:
    """去除空白、归一化严重程度（未知值按 low 处理），丢弃空消息。"""
    out: list[ArtifactConflict] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        message = str(item.get("message") or "").strip()
        if not message:
            continue
        severity = str(item.get("severity") or "").strip().lower()
        if severity not in CONFLICT_SEVERITIES:
            severity = "low"
        out.append(
            ArtifactConflict(
                severity=severity,
                message=message,
                existing_ref=str(item.get("existing_ref") or "").strip(),
                new_ref=str(item.get("new_ref") or "").strip(),
                suggestion=str(item.get("suggestion") or "").strip(),
            )
        )
    return out


class ConflictScanner:
    def __init__(
        self,
        model_factory: ChatModelFactory,
        prompts: PromptRegistry | None = None,
        config: PipelineConfig | None = None,
        tracker: TokenTracker | None = None,
    ):
        self.model_factory = model_factory
        self.prompts = prompts or PromptRegistry()
        self.config = config or PipelineConfig()
        self.tracker = tracker or TokenTracker()

    def build_messages(self, scan_input: ArtifactConflictScanInput) -> list:
        brief = json.dumps(
            {
                "title": scan_input.project_title.strip(),
                "description": scan_input.project_description.strip(),
                "genre": scan_input.project_genre.strip(),
            },
            ensure_ascii=False,
        )
        user = self.prompts.format(
            PROMPT_CONFLICT_SCAN_USER,
            project_brief_json=truncate_chars(brief, BRIEF_MAX_CHARS),
            artifact_type=scan_input.type.value,
            current_worldview_json=_format_json(scan_input.current_worldview, EXISTING_MAX_CHARS),
            current_characters_json=_format_json(scan_input.current_characters, EXISTING_MAX_CHARS),
            current_outline_json=_format_json(scan_input.current_outline, EXISTING_MAX_CHARS),
            current_artifact_json=_format_json(scan_input.current_artifact, EXISTING_MAX_CHARS),
            new_artifact_json=_format_json(scan_input.new_artifact, NEW_ARTIFACT_MAX_CHARS),
        )
        return [
            SystemMessage(content=self.prompts.format(PROMPT_CONFLICT_SCAN_SYSTEM)),
            HumanMessage(content=user),
        ]

    def scan(
        self,
        scan_input: ArtifactConflictScanInput,
        cancel_token: CancellationToken | None = None,
    ) -> ArtifactConflictScanOutput:
        """执行一次冲突扫描。

        Raises:
            ValueError: 新构件为空，或模型输出无法解析。
            GenerationCancelledError: 调用方取消。
        """
        if not scan_input.new_artifact.strip():
            raise ValueError("new artifact json is empty")

        messages = self.build_messages(scan_input)
        model = self.model_factory.get(
            scan_input.provider, scan_input.model, scan_input.temperature, scan_input.max_tokens
        )
        kwargs: dict[str, Any] = {}
        if scan_input.temperature is not None:
            kwargs["temperature"] = scan_input.temperature
        if scan_input.max_tokens is not None:
            kwargs["max_tokens"] = scan_input.max_tokens
        if scan_input.model.strip():
            kwargs["model"] = scan_input.model.strip()

        start = time.perf_counter()
        try:
            response = self._invoke(
                model,
                messages,
                cancel_token,
                response_format=response_format(OPERATION_NAME, conflict_scan_json_schema()),
                **kwargs,
            )
        except GenerationCancelledError:
            raise
        except Exception as e:
            if classify_llm_error(e, scan_input.provider) != LLMErrorKind.SCHEMA_UNSUPPORTED:
                raise
            logger.warning(
                "模型不支持 json_schema，改为纯提示词模式: provider=%s model=%s error=%s",
                scan_input.provider,
                scan_input.model,
                e,
            )
            response = self._invoke(model, messages, cancel_token, **kwargs)

        input_tokens, output_tokens = usage_from_message(response)
        self.tracker.record_usage(
            operation=OPERATION_NAME,
            model_name=scan_input.model or getattr(model, "model_name", "") or "unknown",
            artifact_type=scan_input.type.value,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

        raw = extract_json_text(extract_response_text(response))
        if not raw:
            raise ValueError("empty conflict scan output")
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            items = parsed.get("conflicts") or []
        else:
            items = parsed
        if not isinstance(items, list):
            raise ValueError("failed to parse conflict scan json: conflicts must be an array")

        conflicts = normalize_conflicts(items)
        logger.info("冲突扫描完成: type=%s conflicts=%d", scan_input.type.value, len(conflicts))

        meta = LLMUsageMeta(
            provider=scan_input.provider,
            model=scan_input.model.strip(),
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
        )
        if scan_input.temperature is not None:
            meta.temperature = scan_input.temperature
        return ArtifactConflictScanOutput(conflicts=conflicts, raw=raw, meta=meta)

    def _invoke(self, model, messages, cancel_token, **kwargs):
        return invoke_with_retry(
            model,
            messages,
            max_retries=self.config.model_max_retries,
            base_delay=self.config.retry_base_delay,
            operation_name=OPERATION_NAME,
            cancel_token=cancel_token,
            **kwargs,
        )
