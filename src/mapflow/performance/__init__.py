"""
Performance tuning: resource sampling, payload shaping and strategy selection.
"""

from mapflow.performance.optimizer import (
    BatchOptimizer,
    CompressedPayload,
    CompressionManager,
    MemoryManager,
    OptimizedData,
    PerformanceOptimizer,
    ResourceMonitor,
    ResourceSnapshot,
    StrategyRecommendation,
)

__all__ = [
    "BatchOptimizer",
    "CompressedPayload",
    "CompressionManager",
    "MemoryManager",
    "OptimizedData",
    "PerformanceOptimizer",
    "ResourceMonitor",
    "ResourceSnapshot",
    "StrategyRecommendation",
]
