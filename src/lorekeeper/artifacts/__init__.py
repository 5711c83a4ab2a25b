"""构件 Schema、结构校验、增量补丁与版本对比。"""

from lorekeeper.artifacts.compare import ArtifactCompareDiff, compare_artifact_content
from lorekeeper.artifacts.patch import apply_artifact_patch, check_patch_ops, is_patch_mode
from lorekeeper.artifacts.schemas import (
    ALLOWED_PATCH_OPS,
    ALLOWED_PATCH_PATHS,
    artifact_json_schema,
    artifact_patch_json_schema,
    conflict_scan_json_schema,
    response_format,
)
from lorekeeper.artifacts.validate import normalize_and_validate

__all__ = [
    "ALLOWED_PATCH_OPS",
    "ALLOWED_PATCH_PATHS",
    "ArtifactCompareDiff",
    "apply_artifact_patch",
    "artifact_json_schema",
    "artifact_patch_json_schema",
    "check_patch_ops",
    "compare_artifact_content",
    "conflict_scan_json_schema",
    "is_patch_mode",
    "normalize_and_validate",
    "response_format",
]
