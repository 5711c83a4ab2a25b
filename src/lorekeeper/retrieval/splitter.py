"""文本切片。按 Unicode 码点计数，Python 字符串天然不会切断字符。"""

from __future__ import annotations


def split_text(text: str, max_chars: int, overlap: int = 0) -> list[str]:
    """固定步长滑动窗口切片。

    - 先整体去除首尾空白；可放入单片时直接返回。
    - 步长 = max_chars - overlap（不大于 0 时退化为 max_chars）。
    - 末片截断到文本末尾；纯空白切片丢弃。
    - max_chars <= 0 时不切片，返回整段文本。
    """
    raw = (text or "").strip()
    if not raw:
        return []
    if max_chars <= 0 or len(raw) <= max_chars:
        return [raw]

    overlap = max(overlap, 0)
    step = max_chars - overlap
    if step <= 0:
        step = max_chars

    chunks: list[str] = []
    for start in range(0, len(raw), step):
        end = min(start + max_chars, len(raw))
        chunk = raw[start:end]
        if chunk.strip():
            chunks.append(chunk)
        if end >= len(raw):
            break
    return chunks
