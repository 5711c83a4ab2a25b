"""将召回结果格式化为可直接注入提示词的上下文块。"""

from __future__ import annotations

import re

from lorekeeper.models.segment import DOC_TYPE_ARTIFACT, DOC_TYPE_CHAPTER, Segment

CONTEXT_HEADER = "【召回上下文（可能为空）】"

_WHITESPACE_RUN = re.compile(r"\s+")


def compact_one_line(text: str) -> str:
    return _WHITESPACE_RUN.sub(" ", text or "").strip()


def truncate_with_ellipsis(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].strip() + "…"


def _segment_ref(segment: Segment) -> str:
    doc_type = segment.doc_type.strip()
    if doc_type == DOC_TYPE_ARTIFACT:
        return f"Artifact:{segment.artifact_type.strip()} {segment.ref_path.strip()}"
    if doc_type == DOC_TYPE_CHAPTER:
        return f"Chapter:{segment.chapter_title.strip() or segment.chapter_id.strip()}"
    return "Context"


def build_prompt_context(
    segments: list[Segment],
    max_segments: int = 10,
    max_chars_per_segment: int = 400,
) -> str:
    """每条一行：``[序号] (来源) 文本``。不含分数等调试信息。"""
    if not segments:
        return ""
    if max_segments <= 0:
        max_segments = 10
    if max_chars_per_segment <= 0:
        max_chars_per_segment = 400

    lines = [CONTEXT_HEADER]
    for i, segment in enumerate(segments[:max_segments], start=1):
        text = truncate_with_ellipsis(compact_one_line(segment.text), max_chars_per_segment)
        if not text.strip():
            continue
        lines.append(f"[{i}] ({_segment_ref(segment)}) {text}")
    return "\n".join(lines).strip()
