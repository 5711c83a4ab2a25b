from lorekeeper.agents.conflict_scanner import ConflictScanner, normalize_conflicts
from lorekeeper.agents.tools import ArtifactToolSet
from lorekeeper.agents.utils import (
    extract_json_text,
    extract_response_text,
    extract_text,
    invoke_with_retry,
)

__all__ = [
    "ArtifactToolSet",
    "ConflictScanner",
    "extract_json_text",
    "extract_response_text",
    "extract_text",
    "invoke_with_retry",
    "normalize_conflicts",
]
