"""增量补丁：白名单校验后应用 JSON Patch。

所有 op/path 检查在任何修改发生之前完成；任一项不合法则整体拒绝。
"""

from __future__ import annotations

import copy
import json
from typing import Any

import jsonpatch

from lorekeeper.artifacts.schemas import ALLOWED_PATCH_OPS, ALLOWED_PATCH_PATHS
from lorekeeper.errors import ArtifactPatchError
from lorekeeper.models.artifact import parse_artifact_type


def is_patch_mode(current_artifact_raw: str) -> bool:
    """已有当前构件时进入补丁模式。"""
    return bool((current_artifact_raw or "").strip())


def _load_patch(patch: str | list | dict) -> list[Any]:
    """接受操作数组，或结构化输出使用的 {"ops": [...]} 包装。"""
    if isinstance(patch, (list, dict)):
        ops = patch
    else:
        text = (patch or "").strip()
        if not text:
            raise ArtifactPatchError("empty json patch")
        try:
            ops = json.loads(text)
        except json.JSONDecodeError as e:
            raise ArtifactPatchError(f"invalid json patch: {e}") from e
    if isinstance(ops, dict) and isinstance(ops.get("ops"), list):
        ops = ops["ops"]
    if not isinstance(ops, list):
        raise ArtifactPatchError("invalid json patch: expected an array of operations")
    return ops


def _load_base(base: str | dict | None) -> dict[str, Any]:
    if isinstance(base, dict):
        return copy.deepcopy(base)
    text = (base or "").strip()
    if not text:
        return {}
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise ArtifactPatchError(f"invalid base json: {e}") from e
    if not isinstance(doc, dict):
        raise ArtifactPatchError("invalid base json: expected an object")
    return doc


def check_patch_ops(artifact_type: str, ops: list[Any]) -> None:
    """校验每个操作的 op、path 与 value。

    Raises:
        ArtifactPatchError: 第一个不合法的操作。
    """
    allowed_paths = ALLOWED_PATCH_PATHS[parse_artifact_type(artifact_type)]
    for i, op in enumerate(ops):
        if not isinstance(op, dict):
            raise ArtifactPatchError(f"invalid json patch op at index {i}: not an object")
        name = str(op.get("op", "")).strip().lower()
        if name not in ALLOWED_PATCH_OPS:
            raise ArtifactPatchError(
                f"invalid json patch op at index {i}: op={str(op.get('op', '')).strip()}"
            )
        path = str(op.get("path", "")).strip()
        if path not in allowed_paths:
            raise ArtifactPatchError(f"invalid json patch path at index {i}: path={path}")
        if "value" not in op:
            raise ArtifactPatchError(f"invalid json patch op at index {i}: value is required")


def apply_artifact_patch(
    artifact_type: str, base: str | dict | None, patch: str | list | dict
) -> dict[str, Any]:
    """将补丁应用到当前构件，返回新文档（不修改入参）。

    空补丁表示"不变更"：返回当前文档（为空时返回 {}）。

    Raises:
        ArtifactPatchError: 补丁非法或无法应用（例如 replace 不存在的字段）。
    """
    ops = _load_patch(patch)
    doc = _load_base(base)
    if not ops:
        return doc

    check_patch_ops(artifact_type, ops)
    normalized = [
        {**op, "op": str(op["op"]).strip().lower(), "path": str(op["path"]).strip()}
        for op in ops
    ]
    try:
        return jsonpatch.JsonPatch(normalized).apply(doc)
    except jsonpatch.JsonPatchException as e:
        raise ArtifactPatchError(f"failed to apply json patch: {e}") from e
