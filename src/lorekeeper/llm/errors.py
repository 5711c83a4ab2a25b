"""模型调用错误分类。

不同提供商对"不支持工具调用"和"不支持结构化输出"的报错措辞各不相同，
这里集中维护一张匹配表，流水线只依赖分类结果。
"""

from __future__ import annotations

from enum import Enum


class LLMErrorKind(str, Enum):
    TOOLS_UNSUPPORTED = "tools_unsupported"
    SCHEMA_UNSUPPORTED = "schema_unsupported"
    OTHER = "other"


# 每条规则是一组必须同时出现的小写片段；任一规则命中即归类
_COMMON_PATTERNS: dict[LLMErrorKind, list[tuple[str, ...]]] = {
    LLMErrorKind.TOOLS_UNSUPPORTED: [
        ("unknown parameter", "tool"),
        ("tool", "not supported"),
        ("does not support tools",),
        ("function calling is not enabled",),
    ],
    LLMErrorKind.SCHEMA_UNSUPPORTED: [
        ("response_format",),
        ("json_schema",),
        ("response_schema",),
        ("unknown parameter", "response"),
        ("invalid", "response"),
        ("failed to parse",),
    ],
}

# 提供商特有措辞，与通用表合并使用
_PROVIDER_PATTERNS: dict[str, dict[LLMErrorKind, list[tuple[str, ...]]]] = {
    "google": {
        LLMErrorKind.TOOLS_UNSUPPORTED: [("function calling", "not enabled")],
        LLMErrorKind.SCHEMA_UNSUPPORTED: [("responsemimetype",)],
    },
    "anthropic": {
        LLMErrorKind.TOOLS_UNSUPPORTED: [("tool_use", "not available")],
    },
}

# 工具类规则优先：带工具且带 schema 的请求失败时先剥离工具
_ORDER = (LLMErrorKind.TOOLS_UNSUPPORTED, LLMErrorKind.SCHEMA_UNSUPPORTED)


def _matches(message: str, rules: list[tuple[str, ...]]) -> bool:
    return any(all(part in message for part in rule) for rule in rules)


def classify_llm_error(err: BaseException | str, provider: str = "") -> LLMErrorKind:
    """将模型调用异常归类为工具不支持 / 结构化输出不支持 / 其他。"""
    message = str(err).lower()
    if not message:
        return LLMErrorKind.OTHER
    extra = _PROVIDER_PATTERNS.get(provider.strip().lower(), {})
    for kind in _ORDER:
        if _matches(message, _COMMON_PATTERNS[kind]) or _matches(message, extra.get(kind, [])):
            return kind
    return LLMErrorKind.OTHER
