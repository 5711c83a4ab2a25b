"""提示词管理模块：将提示词从代码中分离。

所有提示词以 .txt 文件存放在本目录下，由 PromptRegistry 加载并缓存，
支持 {variable} 占位符，通过 str.format 填充（字面量花括号需写作 {{ }}）。
"""

from __future__ import annotations

import threading
from pathlib import Path

_PROMPTS_DIR = Path(__file__).parent

PROMPT_ARTIFACT_SYSTEM = "artifact_system"
PROMPT_ARTIFACT_USER = "artifact_user"
PROMPT_ARTIFACT_PATCH_SYSTEM = "artifact_patch_system"
PROMPT_ARTIFACT_PATCH_USER = "artifact_patch_user"
PROMPT_REPAIR_FULL = "repair_full"
PROMPT_REPAIR_PATCH = "repair_patch"
PROMPT_CONFLICT_SCAN_SYSTEM = "conflict_scan_system"
PROMPT_CONFLICT_SCAN_USER = "conflict_scan_user"


class PromptRegistry:
    """提示词模板注册表，每个实例持有自己的模板缓存。"""

    def __init__(self, prompts_dir: str | Path | None = None):
        self.prompts_dir = Path(prompts_dir) if prompts_dir else _PROMPTS_DIR
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def load(self, name: str) -> str:
        """加载指定名称的提示词文件。

        Raises:
            FileNotFoundError: 提示词文件不存在时。
        """
        with self._lock:
            if name in self._cache:
                return self._cache[name]
            filename = name if name.endswith(".txt") else f"{name}.txt"
            filepath = self.prompts_dir / filename
            if not filepath.exists():
                raise FileNotFoundError(f"提示词文件不存在: {filepath}")
            text = filepath.read_text(encoding="utf-8").strip()
            self._cache[name] = text
            return text

    def format(self, name: str, **kwargs: object) -> str:
        """加载并格式化提示词模板。"""
        return self.load(name).format(**kwargs)


__all__ = [
    "PROMPT_ARTIFACT_PATCH_SYSTEM",
    "PROMPT_ARTIFACT_PATCH_USER",
    "PROMPT_ARTIFACT_SYSTEM",
    "PROMPT_ARTIFACT_USER",
    "PROMPT_CONFLICT_SCAN_SYSTEM",
    "PROMPT_CONFLICT_SCAN_USER",
    "PROMPT_REPAIR_FULL",
    "PROMPT_REPAIR_PATCH",
    "PromptRegistry",
]
