"""ArtifactOutputManager：负责生成结果的落盘。

目录结构：
output/<project>/
├── artifacts/                 # 通过校验的构件 JSON（<type>.json）
├── meta/                      # 生成元数据（<type>_meta.json）
├── conflicts/                 # 冲突扫描报告（<type>_conflicts.json）
└── metadata.json              # 生成日志与 token 统计
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from lorekeeper.models.generation import ArtifactConflictScanOutput, ArtifactGenerateOutput
from lorekeeper.utils.token_tracker import TokenTracker

logger = logging.getLogger(__name__)


class ArtifactOutputManager:
    def __init__(
        self,
        output_dir: str | Path,
        project_title: str = "untitled",
        tracker: TokenTracker | None = None,
    ):
        self.root = Path(output_dir)
        self.project_title = project_title
        self.tracker = tracker

        self.artifacts_dir = self.root / "artifacts"
        self.meta_dir = self.root / "meta"
        self.conflicts_dir = self.root / "conflicts"
        for d in [self.artifacts_dir, self.meta_dir, self.conflicts_dir]:
            d.mkdir(parents=True, exist_ok=True)

        self._metadata: dict[str, Any] = {
            "project_title": project_title,
            "created_at": datetime.now().isoformat(),
            "generation_log": [],
            "token_usage": {},
        }
        self._save_metadata()

    # ────────────────────────────────────────────
    # 构件输出
    # ────────────────────────────────────────────

    def save_artifact(self, output: ArtifactGenerateOutput) -> Path:
        """保存构件内容与生成元数据。

        Returns:
            构件文件路径。
        """
        atype = output.type.value
        filepath = self.artifacts_dir / f"{atype}.json"
        self._write_json(filepath, output.content)
        self._write_json(
            self.meta_dir / f"{atype}_meta.json",
            {
                "type": atype,
                "mode": output.mode,
                "raw": output.raw,
                "meta": output.meta.model_dump(mode="json"),
            },
        )
        self._metadata["generation_log"].append(
            {
                "kind": "artifact",
                "type": atype,
                "mode": output.mode,
                "prompt_tokens": output.meta.prompt_tokens,
                "completion_tokens": output.meta.completion_tokens,
                "timestamp": datetime.now().isoformat(),
            }
        )
        self._save_metadata()
        logger.info("构件已写入磁盘: %s", filepath)
        return filepath

    def load_artifact(self, artifact_type: str) -> str:
        """读取已保存的构件原文；不存在时返回空串。"""
        filepath = self.artifacts_dir / f"{artifact_type}.json"
        if not filepath.exists():
            return ""
        return filepath.read_text(encoding="utf-8")

    def save_conflict_report(self, artifact_type: str, report: ArtifactConflictScanOutput) -> Path:
        filepath = self.conflicts_dir / f"{artifact_type}_conflicts.json"
        self._write_json(filepath, report.model_dump(mode="json"))
        self._metadata["generation_log"].append(
            {
                "kind": "conflict_scan",
                "type": artifact_type,
                "conflicts": len(report.conflicts),
                "timestamp": datetime.now().isoformat(),
            }
        )
        self._save_metadata()
        logger.info("冲突报告已写入: %s (%d 条)", filepath.name, len(report.conflicts))
        return filepath

    # ────────────────────────────────────────────
    # 内部
    # ────────────────────────────────────────────

    def _write_json(self, filepath: Path, data: Any) -> None:
        """写入 JSON 文件。"""
        filepath.write_text(
            json.dumps(data, ensure_ascii=False, indent=2, default=str),
            encoding="utf-8",
        )

    def _save_metadata(self) -> None:
        """更新 metadata.json。"""
        if self.tracker is not None:
            self._metadata["token_usage"] = self.tracker.to_dict()
        self._metadata["updated_at"] = datetime.now().isoformat()
        self._write_json(self.root / "metadata.json", self._metadata)
