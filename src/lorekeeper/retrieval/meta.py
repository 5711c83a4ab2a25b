"""片段文本头部的元信息编解码。

存储格式：``@@meta:`` + 单行 JSON + 换行 + 原始切片文本。
不带前缀的历史数据解码为"无元信息，文本即全文"。
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from lorekeeper.models.segment import SegmentMeta

logger = logging.getLogger(__name__)

SEGMENT_META_PREFIX = "@@meta:"


def encode_segment_text(meta: SegmentMeta, text: str) -> str:
    """将元信息编码进片段文本。空字段不写入。"""
    payload = json.dumps(
        meta.model_dump(exclude_defaults=True),
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return f"{SEGMENT_META_PREFIX}{payload}\n{text}"


def decode_segment_text(text_content: str) -> tuple[SegmentMeta, str]:
    """解码片段文本，返回 (元信息, 正文)。

    - 无前缀：返回空元信息与原文。
    - 有前缀但没有换行：同上，视为普通文本。
    - 元信息 JSON 损坏：返回空元信息与正文部分。
    """
    raw = text_content or ""
    stripped = raw.lstrip()
    if not stripped.startswith(SEGMENT_META_PREFIX):
        return SegmentMeta(), raw

    rest = stripped[len(SEGMENT_META_PREFIX):]
    line, sep, body = rest.partition("\n")
    if not sep:
        return SegmentMeta(), raw

    try:
        data = json.loads(line.strip())
        meta = SegmentMeta.model_validate(data)
    except (json.JSONDecodeError, ValidationError):
        logger.debug("片段元信息损坏，按无元信息处理")
        return SegmentMeta(), body
    return meta, body
