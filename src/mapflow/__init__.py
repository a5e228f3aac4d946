"""
mapflow - declarative mapping execution engine.

Runs source-to-target mapping documents over single records or record
streams with pluggable executors, validation, retry, circuit breaking and
per-system connection pooling.

Packages:
- mapflow.core: errors, classifier, events, cache, cancellation, logging
- mapflow.mapping: mapping document models, paths, type conversion, formulas
- mapflow.pipeline / mapflow.execution: compiled pipelines and executors
- mapflow.adapters / mapflow.workflow: external system access
"""

__version__ = "0.1.0"

from mapflow.core.errors import (  # noqa: E402
    MapflowError,
    MappingExecutionError,
    MappingValidationError,
)
from mapflow.engine import BatchOutcome, ExecutionOptions, MappingEngine, MappingOutcome  # noqa: E402
from mapflow.mapping.models import Mapping, Rule, RuleType, Schema  # noqa: E402

__all__ = [
    "__version__",
    "BatchOutcome",
    "ExecutionOptions",
    "Mapping",
    "MappingEngine",
    "MappingExecutionError",
    "MappingOutcome",
    "MappingValidationError",
    "MapflowError",
    "Rule",
    "RuleType",
    "Schema",
]
