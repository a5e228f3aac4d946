"""Tests for mapflow.performance.optimizer."""

import pytest

from mapflow.config.settings import MapflowSettings, get_settings
from mapflow.core.cache import CacheManager
from mapflow.performance.optimizer import (
    BatchOptimizer,
    CompressedPayload,
    CompressionManager,
    MemoryManager,
    PerformanceOptimizer,
    ResourceMonitor,
    ResourceSnapshot,
    payload_size,
)


class StaticMonitor:
    """Monitor returning a fixed snapshot."""

    def __init__(self, available_memory=0.9, cpu_usage=0.1):
        self.snapshot = ResourceSnapshot(
            rss=1024,
            memory_percent=1.0,
            available_memory=available_memory,
            cpu_usage=cpu_usage,
            cpu_count=8,
        )
        self.history = []

    def sample(self):
        self.history.append(self.snapshot)
        return self.snapshot

    @property
    def latest(self):
        return self.history[-1] if self.history else None


@pytest.fixture
def optimizer(emitter):
    return PerformanceOptimizer(MapflowSettings(), emitter=emitter, monitor=StaticMonitor())


class TestStrategySelection:
    @pytest.mark.parametrize(
        "size,complexity,executor,batch_size",
        [
            (50, 0.1, "sequential", 50),
            (500, 0.2, "sequential", 100),
            (5_000, 0.9, "parallel", 500),
            (50_000, 0.2, "batch", 1000),
            (10_000, 0.9, "batch", 1000),
            (200_000, 0.1, "stream", 2000),
        ],
    )
    def test_size_and_complexity_tiers(self, optimizer, size, complexity, executor, batch_size):
        """Executor and batch size follow the size tiers, then complexity."""
        env = {"availableMemory": 0.9, "cpuUsage": 0.1, "cpuCount": 8}
        rec = optimizer.optimize_execution_strategy(size, complexity, env)
        assert rec.executor_type == executor
        assert rec.batch_size == batch_size

    def test_stream_uses_streaming_memory(self, optimizer):
        """Very large inputs stream with the streaming memory strategy."""
        rec = optimizer.optimize_execution_strategy(100_000, 0.0, {"availableMemory": 0.9, "cpuUsage": 0.0})
        assert rec.memory_strategy == "streaming"
        assert rec.reasons == ["Very large dataset, using streaming"]

    def test_parallelism_capped(self, optimizer):
        """Parallelism is bounded by cores, eight and the data size."""
        env = {"availableMemory": 0.9, "cpuUsage": 0.1, "cpuCount": 16}
        assert optimizer.optimize_execution_strategy(5_000, 0.8, env).parallelism == 8
        assert optimizer.optimize_execution_strategy(150, 0.8, env).parallelism == 2
        env["cpuCount"] = 4
        assert optimizer.optimize_execution_strategy(5_000, 0.8, env).parallelism == 4

    def test_low_memory_halves_batch(self, optimizer):
        """Below 30% free memory the batch size halves."""
        rec = optimizer.optimize_execution_strategy(50_000, 0.2, {"availableMemory": 0.2, "cpuUsage": 0.1})
        assert rec.batch_size == 500
        assert rec.memory_strategy == "conservative"

    def test_high_cpu_limits_parallelism(self, optimizer):
        """Above 80% CPU parallelism drops to at most two."""
        rec = optimizer.optimize_execution_strategy(
            5_000, 0.9, {"availableMemory": 0.9, "cpuUsage": 0.95, "cpuCount": 8}
        )
        assert rec.executor_type == "parallel"
        assert rec.parallelism == 2
        assert "High CPU usage, reducing parallelism" in rec.reasons

    def test_env_sampled_when_omitted(self, emitter):
        """Without env the monitor is sampled."""
        monitor = StaticMonitor(available_memory=0.1)
        optimizer = PerformanceOptimizer(MapflowSettings(), emitter=emitter, monitor=monitor)
        rec = optimizer.optimize_execution_strategy(10, 0.1)
        assert rec.memory_strategy == "conservative"
        assert len(monitor.history) == 1

    def test_to_dict(self, optimizer):
        """Recommendations serialize with camelCase keys."""
        data = optimizer.optimize_execution_strategy(10, 0.1, {}).to_dict()
        assert set(data) == {"executorType", "batchSize", "parallelism", "memoryStrategy", "reasons"}


class TestBatchOptimizer:
    def test_learned_size_wins(self, emitter, recorder):
        """The batch size with the best observed throughput replaces the tier."""
        batch = BatchOptimizer(emitter=emitter)
        batch.record(100, 1.0, 100)
        batch.record(250, 1.0, 500)
        batch.record(400, 0.0, 400)
        assert batch.optimal_batch_size(50) == 250
        assert recorder.named("batchSizeAdjusted")[0]["source"] == "history"
        batch.reset()
        assert batch.optimal_batch_size(50) == 50


class TestPayloadShaping:
    def test_compression_round_trip(self, emitter, recorder):
        """Large payloads compress; small ones pass through."""
        manager = CompressionManager(threshold=100, emitter=emitter)
        assert manager.compress({"a": 1}) == {"a": 1}
        data = [{"name": "x" * 20, "i": i} for i in range(50)]
        packed = manager.compress(data)
        assert isinstance(packed, CompressedPayload)
        assert packed.ratio > 1
        assert CompressionManager.decompress(packed) == data
        assert recorder.named("compressionComplete")
        assert manager.average_ratio == pytest.approx(packed.ratio)

    def test_chunking(self):
        """Long lists are split into chunk_size pieces."""
        memory = MemoryManager(chunk_size=3)
        assert memory.chunk([1, 2]) == [[1, 2]]
        assert memory.chunk(list(range(7))) == [[0, 1, 2], [3, 4, 5], [6]]
        assert memory.optimization_count == 1

    def test_payload_size(self):
        """Sizes are UTF-8 byte counts."""
        assert payload_size("é") == 2
        assert payload_size(b"abc") == 3
        assert payload_size({"a": 1}) == len('{"a": 1}')

    def test_optimize_data_processing(self, emitter, recorder):
        """Data is chunked, compressed, cached and restorable."""
        settings = MapflowSettings(compression_threshold=64, chunk_size=10)
        optimizer = PerformanceOptimizer(settings, emitter=emitter, monitor=StaticMonitor())
        data = [{"i": i, "pad": "y" * 10} for i in range(25)]
        shaped = optimizer.optimize_data_processing(data)
        assert shaped.compressed
        assert shaped.chunks == 3
        assert shaped.optimized_size < shaped.original_size
        assert shaped.restore() == data
        assert optimizer.optimize_data_processing(data) is shaped
        assert len(recorder.named("dataOptimized")) == 1


class TestMemoryPressure:
    def test_pressure_clears_registered_caches(self, optimizer, recorder):
        """Memory pressure clears every registered cache."""
        external = CacheManager(name="engine")
        external.set("k", "v")
        optimizer.register_cache(external)
        optimizer.cache.set("x", 1)
        assert optimizer.handle_memory_pressure(0.95) == ["cache_cleared", "gc_forced"]
        assert len(external) == 0
        assert len(optimizer.cache) == 0
        assert recorder.named("performanceWarning")[0]["type"] == "memory_pressure"
        assert optimizer.metrics()["memoryPressureEvents"] == 1

    def test_check_memory_threshold(self, emitter, recorder):
        """check_memory reacts only above the configured threshold."""
        calm = PerformanceOptimizer(MapflowSettings(), emitter=emitter, monitor=StaticMonitor(0.5))
        calm.check_memory()
        assert not recorder.named("memoryPressure")
        tight = PerformanceOptimizer(MapflowSettings(), emitter=emitter, monitor=StaticMonitor(0.1))
        tight.check_memory()
        assert recorder.named("memoryPressure")[0]["pressure"] == pytest.approx(0.9)

    def test_metrics_and_reset(self, optimizer):
        """Metrics include timings; reset clears them."""
        optimizer.record_timing("op", 0.5)
        optimizer.check_memory()
        metrics = optimizer.metrics()
        assert metrics["timings"]["op"] == {"count": 1, "average": 0.5}
        assert metrics["resources"]["cpuCount"] == 8
        optimizer.reset_metrics()
        assert optimizer.metrics()["timings"] == {}


class TestResourceMonitor:
    def test_real_sample(self):
        """psutil sampling yields fractions in range."""
        monitor = ResourceMonitor(history_size=2)
        snapshot = monitor.sample()
        assert 0.0 <= snapshot.available_memory <= 1.0
        assert snapshot.cpu_count >= 1
        assert snapshot.rss > 0
        assert monitor.latest is snapshot

    def test_defaults_from_settings(self):
        """Without settings the optimizer uses get_settings()."""
        optimizer = PerformanceOptimizer(monitor=StaticMonitor())
        assert optimizer.settings is get_settings()
