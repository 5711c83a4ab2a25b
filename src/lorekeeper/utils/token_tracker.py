"""Token 消耗统计。

每个 TokenTracker 实例独立计数（线程安全），由持有它的流水线或 CLI 显式创建：
- 按 operation 分类统计
- 按 model 分类统计
- 按构件类型分类统计
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any

from langchain_core.messages import BaseMessage


@dataclass
class TokenUsage:
    """单次 LLM 调用的 token 使用情况。"""

    operation: str
    model_name: str
    artifact_type: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    timestamp: float = field(default_factory=time.time)
    duration_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenStats:
    """Token 统计汇总。"""

    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_duration_ms: float = 0.0

    by_operation: dict[str, TokenStats] = field(default_factory=dict)
    by_model: dict[str, TokenStats] = field(default_factory=dict)
    by_artifact_type: dict[str, TokenStats] = field(default_factory=dict)

    def add(self, usage: TokenUsage) -> None:
        self.total_calls += 1
        self.total_input_tokens += usage.input_tokens
        self.total_output_tokens += usage.output_tokens
        self.total_tokens += usage.total_tokens
        self.total_duration_ms += usage.duration_ms

    def as_dict(self) -> dict[str, Any]:
        return {
            "calls": self.total_calls,
            "input_tokens": self.total_input_tokens,
            "output_tokens": self.total_output_tokens,
            "total_tokens": self.total_tokens,
            "duration_ms": self.total_duration_ms,
        }


def usage_from_message(message: BaseMessage) -> tuple[int, int]:
    """从模型返回消息中读取 (输入, 输出) token 数；提供商未返回时为 (0, 0)。"""
    meta = getattr(message, "usage_metadata", None) or {}
    return int(meta.get("input_tokens", 0) or 0), int(meta.get("output_tokens", 0) or 0)


class TokenTracker:
    """Token 消耗跟踪器（线程安全）。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._usages: list[TokenUsage] = []
        self._stats = TokenStats()

    def reset(self) -> None:
        with self._lock:
            self._usages.clear()
            self._stats = TokenStats()

    def record_usage(
        self,
        operation: str,
        model_name: str,
        artifact_type: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
        duration_ms: float = 0.0,
        **metadata: Any,
    ) -> TokenUsage:
        """记录一次 LLM 调用的 token 消耗。"""
        usage = TokenUsage(
            operation=operation,
            model_name=model_name,
            artifact_type=artifact_type,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            duration_ms=duration_ms,
            metadata=metadata,
        )
        with self._lock:
            self._usages.append(usage)
            self._stats.add(usage)
            self._stats.by_operation.setdefault(operation, TokenStats()).add(usage)
            self._stats.by_model.setdefault(model_name, TokenStats()).add(usage)
            if artifact_type:
                self._stats.by_artifact_type.setdefault(artifact_type, TokenStats()).add(usage)
        return usage

    def get_stats(self) -> TokenStats:
        with self._lock:
            return self._stats

    def get_all_usages(self) -> list[TokenUsage]:
        with self._lock:
            return self._usages.copy()

    def to_dict(self) -> dict[str, Any]:
        """转换为字典格式（用于 JSON 序列化）。"""
        with self._lock:
            stats = self._stats
            usages = self._usages.copy()
            summary = stats.as_dict()
            summary["avg_duration_ms"] = stats.total_duration_ms / max(stats.total_calls, 1)
            return {
                "summary": summary,
                "by_operation": {op: s.as_dict() for op, s in stats.by_operation.items()},
                "by_model": {m: s.as_dict() for m, s in stats.by_model.items()},
                "by_artifact_type": {t: s.as_dict() for t, s in stats.by_artifact_type.items()},
                "detailed_usages": [
                    {
                        "operation": u.operation,
                        "model_name": u.model_name,
                        "artifact_type": u.artifact_type,
                        "input_tokens": u.input_tokens,
                        "output_tokens": u.output_tokens,
                        "total_tokens": u.total_tokens,
                        "timestamp": u.timestamp,
                        "duration_ms": u.duration_ms,
                        "metadata": u.metadata,
                    }
                    for u in usages
                ],
            }
