"""请求级取消令牌：显式取消 + 可选截止时间。"""

from __future__ import annotations

import threading
import time

from lorekeeper.errors import GenerationCancelledError


class CancellationToken:
    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self, where: str = "") -> None:
        if self.cancelled:
            reason = "deadline exceeded" if not self._event.is_set() else "cancelled"
            raise GenerationCancelledError(f"{reason}{f' at {where}' if where else ''}")

    def sleep(self, seconds: float) -> None:
        """可被取消打断的等待；被取消时抛出 GenerationCancelledError。"""
        if self._deadline is not None:
            seconds = min(seconds, max(self._deadline - time.monotonic(), 0.0))
        self._event.wait(seconds)
        self.raise_if_cancelled("backoff")
