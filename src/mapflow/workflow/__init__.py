"""Client and version compatibility layer for the external workflow engine."""

from mapflow.workflow.client import WorkflowEngineClient
from mapflow.workflow.compat import (
    FEATURES,
    MINIMUM_SUPPORTED,
    Version,
    VersionCompatibility,
    compare_versions,
    parse_version,
)

__all__ = [
    "FEATURES",
    "MINIMUM_SUPPORTED",
    "Version",
    "VersionCompatibility",
    "WorkflowEngineClient",
    "compare_versions",
    "parse_version",
]
