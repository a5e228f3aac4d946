"""
Run-time execution: context, executors and the dead letter queue.
"""

from mapflow.execution.context import (
    ContextConfig,
    ContextError,
    ExecutionContext,
    ExecutionState,
    StageProfile,
    tracked_execution,
)
from mapflow.execution.dlq import DeadLetter, DeadLetterQueue
from mapflow.execution.executors import (
    BaseExecutor,
    BatchExecutor,
    ExecutorRegistry,
    ExecutorType,
    FailedRecord,
    ParallelExecutor,
    SequentialExecutor,
    StreamExecutor,
)

__all__ = [
    "ContextConfig",
    "ContextError",
    "ExecutionContext",
    "ExecutionState",
    "StageProfile",
    "tracked_execution",
    "DeadLetter",
    "DeadLetterQueue",
    "BaseExecutor",
    "BatchExecutor",
    "ExecutorRegistry",
    "ExecutorType",
    "FailedRecord",
    "ParallelExecutor",
    "SequentialExecutor",
    "StreamExecutor",
]
