"""
Resource-aware tuning for mapping runs.

Manifesto:
    The engine should not guess how to run a mapping. The optimizer looks
    at the data size, the mapping's complexity and the host's memory and
    CPU, and recommends an executor, batch size and parallelism. It also
    shrinks large payloads (compression, chunking) and reacts to memory
    pressure by dropping caches and forcing a collection.

Architecture:
    ::

        PerformanceOptimizer
          ├── ResourceMonitor      psutil samples (rss, memory %, cpu)
          ├── CompressionManager   zlib over JSON ≥ threshold
          ├── MemoryManager        chunking of long arrays
          ├── BatchOptimizer       size tiers + learned best throughput
          └── CacheManager         optimized payloads by content key

        optimize_execution_strategy(size, complexity, env)
            size ≥ 100k        → stream   (memory: streaming)
            size ≥ 10k         → batch    (tiered batch size)
            complexity ≥ 0.7   → parallel (≤ cores, ≤ 8)
            otherwise          → sequential
            available memory < 0.3 → conservative, batch size halved
            cpu usage > 0.8        → parallelism ≤ 2

Example:
    >>> optimizer = PerformanceOptimizer()
    >>> rec = optimizer.optimize_execution_strategy(50_000, 0.2, {"availableMemory": 0.9, "cpuUsage": 0.1})
    >>> rec.executor_type, rec.batch_size
    ('batch', 1000)

Tags:
    performance, optimizer, compression, psutil, mapflow
"""

from __future__ import annotations

import gc
import json
import math
import os
import time
import zlib
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import psutil

from mapflow.config.settings import MapflowSettings, get_settings
from mapflow.core.cache import CacheManager
from mapflow.core.events import EventEmitter
from mapflow.core.hashing import fingerprint
from mapflow.core.logging import get_logger

logger = get_logger(__name__)

STREAM_THRESHOLD = 100_000
BATCH_THRESHOLD = 10_000
PARALLEL_COMPLEXITY = 0.7
MAX_PARALLELISM = 8
LOW_MEMORY = 0.3
HIGH_CPU = 0.8
HIGH_CPU_PARALLELISM = 2
HISTORY_SIZE = 100


# ── Resource sampling ────────────────────────────────────────────────


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time host/process sample. Fractions are in [0, 1]."""

    rss: int
    memory_percent: float
    available_memory: float
    cpu_usage: float
    cpu_count: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rss": self.rss,
            "memoryPercent": self.memory_percent,
            "availableMemory": self.available_memory,
            "cpuUsage": self.cpu_usage,
            "cpuCount": self.cpu_count,
            "timestamp": self.timestamp,
        }


class ResourceMonitor:
    """Samples the current process and host through psutil."""

    def __init__(self, history_size: int = 1000) -> None:
        self._process = psutil.Process(os.getpid())
        self.history: deque[ResourceSnapshot] = deque(maxlen=history_size)

    def sample(self) -> ResourceSnapshot:
        vm = psutil.virtual_memory()
        snapshot = ResourceSnapshot(
            rss=self._process.memory_info().rss,
            memory_percent=self._process.memory_percent(),
            available_memory=vm.available / vm.total if vm.total else 1.0,
            cpu_usage=psutil.cpu_percent(interval=None) / 100.0,
            cpu_count=psutil.cpu_count(logical=True) or 1,
        )
        self.history.append(snapshot)
        return snapshot

    @property
    def latest(self) -> ResourceSnapshot | None:
        return self.history[-1] if self.history else None


# ── Compression ──────────────────────────────────────────────────────


@dataclass
class CompressedPayload:
    data: bytes
    original_size: int
    compressed_size: int

    @property
    def ratio(self) -> float:
        return self.original_size / self.compressed_size if self.compressed_size else 1.0


def payload_size(data: Any) -> int:
    """UTF-8 byte size of a payload (JSON for structured data)."""
    if isinstance(data, bytes | bytearray):
        return len(data)
    if isinstance(data, CompressedPayload):
        return data.compressed_size
    if isinstance(data, str):
        return len(data.encode("utf-8"))
    return len(json.dumps(data, default=str).encode("utf-8"))


class CompressionManager:
    """zlib-compress JSON payloads at or above ``threshold`` bytes."""

    def __init__(self, threshold: int = 1024, *, level: int = 6, emitter: EventEmitter | None = None) -> None:
        self.threshold = threshold
        self.level = level
        self.emitter = emitter or EventEmitter(source="compression")
        self.count = 0
        self.ratios: deque[float] = deque(maxlen=HISTORY_SIZE)

    def should_compress(self, data: Any) -> bool:
        return payload_size(data) >= self.threshold

    def compress(self, data: Any) -> CompressedPayload | Any:
        """Return a :class:`CompressedPayload`, or ``data`` unchanged when small."""
        raw = json.dumps(data, default=str).encode("utf-8")
        if len(raw) < self.threshold:
            return data
        packed = zlib.compress(raw, self.level)
        payload = CompressedPayload(packed, len(raw), len(packed))
        self.count += 1
        self.ratios.append(payload.ratio)
        self.emitter.emit(
            "compressionComplete",
            original_size=payload.original_size,
            compressed_size=payload.compressed_size,
            ratio=payload.ratio,
        )
        return payload

    @staticmethod
    def decompress(payload: CompressedPayload | Any) -> Any:
        if not isinstance(payload, CompressedPayload):
            return payload
        return json.loads(zlib.decompress(payload.data).decode("utf-8"))

    @property
    def average_ratio(self) -> float:
        return sum(self.ratios) / len(self.ratios) if self.ratios else 0.0


# ── Memory ───────────────────────────────────────────────────────────


class MemoryManager:
    def __init__(self, chunk_size: int = 1000) -> None:
        self.chunk_size = chunk_size
        self.optimization_count = 0

    def needs_chunking(self, data: Any) -> bool:
        return isinstance(data, list) and len(data) > self.chunk_size

    def chunk(self, items: list[Any]) -> list[list[Any]]:
        """Split into lists of at most ``chunk_size`` items."""
        if not self.needs_chunking(items):
            return [items]
        self.optimization_count += 1
        return [items[i:i + self.chunk_size] for i in range(0, len(items), self.chunk_size)]


# ── Batch sizing ─────────────────────────────────────────────────────


@dataclass
class BatchSample:
    batch_size: int
    processing_time: float
    items_processed: int
    timestamp: float = field(default_factory=time.time)

    @property
    def throughput(self) -> float:
        return self.items_processed / self.processing_time if self.processing_time > 0 else 0.0


class BatchOptimizer:
    """Tiered default batch sizes, replaced by the best observed throughput."""

    def __init__(self, history_size: int = HISTORY_SIZE, *, emitter: EventEmitter | None = None) -> None:
        self.history: deque[BatchSample] = deque(maxlen=history_size)
        self.emitter = emitter

    @staticmethod
    def tier(data_size: int) -> int:
        if data_size < 100:
            return 50
        if data_size < 1_000:
            return 100
        if data_size < 10_000:
            return 500
        if data_size < 100_000:
            return 1000
        return 2000

    def record(self, batch_size: int, processing_time: float, items_processed: int) -> None:
        self.history.append(BatchSample(batch_size, processing_time, items_processed))

    def best_from_history(self) -> int | None:
        samples = [s for s in self.history if s.processing_time > 0]
        if not samples:
            return None
        return max(samples, key=lambda s: s.throughput).batch_size

    def optimal_batch_size(self, data_size: int) -> int:
        learned = self.best_from_history()
        size = learned if learned is not None else self.tier(data_size)
        if learned is not None and self.emitter is not None:
            self.emitter.emit("batchSizeAdjusted", data_size=data_size, batch_size=size, source="history")
        return size

    def reset(self) -> None:
        self.history.clear()


# ── Optimizer ────────────────────────────────────────────────────────


@dataclass
class OptimizedData:
    data: Any
    compressed: bool = False
    chunks: int = 1
    cache_key: str | None = None
    original_size: int = 0
    optimized_size: int = 0

    def restore(self) -> Any:
        """Original payload (decompressed and flattened)."""
        data = CompressionManager.decompress(self.data)
        if self.chunks > 1:
            return [item for chunk in data for item in chunk]
        return data


@dataclass
class StrategyRecommendation:
    executor_type: str = "sequential"
    batch_size: int = 100
    parallelism: int = 1
    memory_strategy: str = "standard"
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "executorType": self.executor_type,
            "batchSize": self.batch_size,
            "parallelism": self.parallelism,
            "memoryStrategy": self.memory_strategy,
            "reasons": list(self.reasons),
        }


class PerformanceOptimizer:
    """Strategy selection, payload shaping and memory-pressure handling."""

    def __init__(
        self,
        settings: MapflowSettings | None = None,
        *,
        emitter: EventEmitter | None = None,
        monitor: ResourceMonitor | None = None,
        enable_compression: bool = True,
        enable_caching: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.emitter = emitter or EventEmitter(source="optimizer")
        self.monitor = monitor or ResourceMonitor()
        self.enable_compression = enable_compression
        self.enable_caching = enable_caching
        self.compression = CompressionManager(self.settings.compression_threshold, emitter=self.emitter)
        self.memory = MemoryManager(self.settings.chunk_size)
        self.batch = BatchOptimizer(emitter=self.emitter)
        self.cache = CacheManager(
            max_size=self.settings.optimizer_cache_size,
            name="optimizer",
            emitter=self.emitter,
        )
        self._caches: list[CacheManager] = [self.cache]
        self._timings: dict[str, deque[float]] = {}
        self._pressure_events = 0
        self._started = time.monotonic()

    def register_cache(self, cache: CacheManager) -> None:
        """Include ``cache`` in the caches cleared under memory pressure."""
        if cache not in self._caches:
            self._caches.append(cache)

    # ── Payloads ─────────────────────────────────────────────────────

    def optimize_data_processing(self, data: Any, *, cache_key: str | None = None) -> OptimizedData:
        started = time.perf_counter()
        key = cache_key or fingerprint(data)
        if self.enable_caching:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        original_size = payload_size(data)
        shaped: Any = data
        chunks = 1
        if self.memory.needs_chunking(data):
            shaped = self.memory.chunk(data)
            chunks = len(shaped)

        compressed = False
        if self.enable_compression and original_size >= self.compression.threshold:
            shaped = self.compression.compress(shaped)
            compressed = isinstance(shaped, CompressedPayload)

        result = OptimizedData(
            data=shaped,
            compressed=compressed,
            chunks=chunks,
            cache_key=key,
            original_size=original_size,
            optimized_size=payload_size(shaped),
        )
        if self.enable_caching:
            self.cache.set(key, result)

        elapsed = time.perf_counter() - started
        self.record_timing("optimize_data", elapsed)
        self.emitter.emit(
            "dataOptimized",
            original_size=result.original_size,
            optimized_size=result.optimized_size,
            compressed=compressed,
            chunks=chunks,
            processing_time=elapsed,
        )
        return result

    # ── Strategy ─────────────────────────────────────────────────────

    def optimize_execution_strategy(
        self,
        data_size: int,
        complexity: float,
        env: dict[str, float] | None = None,
    ) -> StrategyRecommendation:
        """Recommend executor type, batch size, parallelism and memory strategy.

        Args:
            data_size: Number of records.
            complexity: Mapping complexity in [0, 1].
            env: ``availableMemory`` and ``cpuUsage`` fractions; sampled
                from the monitor when omitted.
        """
        if env is None:
            snapshot = self.monitor.sample()
            env = {"availableMemory": snapshot.available_memory, "cpuUsage": snapshot.cpu_usage}
        available_memory = float(env.get("availableMemory", 1.0))
        cpu_usage = float(env.get("cpuUsage", 0.0))
        cores = int(env.get("cpuCount", psutil.cpu_count(logical=True) or 1))

        rec = StrategyRecommendation(batch_size=self.batch.optimal_batch_size(data_size))

        if data_size >= STREAM_THRESHOLD:
            rec.executor_type = "stream"
            rec.memory_strategy = "streaming"
            rec.reasons.append("Very large dataset, using streaming")
        elif data_size >= BATCH_THRESHOLD:
            rec.executor_type = "batch"
            rec.reasons.append("Large dataset, using batch processing")
        elif complexity >= PARALLEL_COMPLEXITY:
            rec.executor_type = "parallel"
            rec.parallelism = max(1, min(cores, MAX_PARALLELISM, math.ceil(data_size / 100) or 1))
            rec.reasons.append("High complexity, using parallel processing")

        if available_memory < LOW_MEMORY:
            rec.memory_strategy = "conservative"
            rec.batch_size = max(1, rec.batch_size // 2)
            rec.reasons.append("Low memory, reducing batch size")
        if cpu_usage > HIGH_CPU:
            rec.parallelism = min(rec.parallelism, HIGH_CPU_PARALLELISM)
            rec.reasons.append("High CPU usage, reducing parallelism")

        logger.debug(
            "optimizer.strategy",
            data_size=data_size,
            complexity=complexity,
            executor=rec.executor_type,
            batch_size=rec.batch_size,
            parallelism=rec.parallelism,
        )
        return rec

    # ── Memory pressure ──────────────────────────────────────────────

    def handle_memory_pressure(self, pressure: float) -> list[str]:
        """Clear caches and force a collection. Returns the actions taken."""
        self._pressure_events += 1
        logger.warning("optimizer.memory_pressure", pressure=pressure)
        self.emitter.emit("memoryPressure", pressure=pressure)
        for cache in self._caches:
            cache.clear()
        collected = gc.collect()
        actions = ["cache_cleared", "gc_forced"]
        self.emitter.emit(
            "performanceWarning",
            type="memory_pressure",
            level=pressure,
            actions=actions,
            collected=collected,
        )
        return actions

    def check_memory(self) -> ResourceSnapshot:
        """Sample resources; handle pressure above ``memory_threshold``."""
        snapshot = self.monitor.sample()
        pressure = 1.0 - snapshot.available_memory
        if pressure > self.settings.memory_threshold:
            self.handle_memory_pressure(pressure)
        return snapshot

    # ── Metrics ──────────────────────────────────────────────────────

    def record_timing(self, operation: str, seconds: float) -> None:
        self._timings.setdefault(operation, deque(maxlen=HISTORY_SIZE)).append(seconds)

    def metrics(self) -> dict[str, Any]:
        latest = self.monitor.latest
        return {
            "uptime": time.monotonic() - self._started,
            "resources": latest.to_dict() if latest else None,
            "timings": {
                op: {"count": len(v), "average": sum(v) / len(v) if v else 0.0}
                for op, v in self._timings.items()
            },
            "averageCompressionRatio": self.compression.average_ratio,
            "compressions": self.compression.count,
            "chunkings": self.memory.optimization_count,
            "batchHistory": len(self.batch.history),
            "cacheHitRate": self.cache.hit_rate,
            "memoryPressureEvents": self._pressure_events,
        }

    def reset_metrics(self) -> None:
        self._timings.clear()
        self._pressure_events = 0
        self.compression.ratios.clear()
        self.compression.count = 0
        self.memory.optimization_count = 0
        self.batch.reset()


__all__ = [
    "ResourceSnapshot",
    "ResourceMonitor",
    "CompressedPayload",
    "CompressionManager",
    "MemoryManager",
    "BatchSample",
    "BatchOptimizer",
    "OptimizedData",
    "StrategyRecommendation",
    "PerformanceOptimizer",
    "payload_size",
]
