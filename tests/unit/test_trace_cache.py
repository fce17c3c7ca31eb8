"""
Test: trace cache keyed by (signature, device)

Validates:
- Round trip returns the same Computation without lowering again
- Eviction policies and age bound
- Concurrent misses keep the first inserted entry
"""

import threading
import time

import pytest

from lazytrace.caching.trace_cache import EvictionPolicy, TraceCache, get_trace_cache
from lazytrace.core.device import Device
from lazytrace.core.exceptions import ConfigurationError
from lazytrace.core.ir import Node, OpKind, Value, freeze_params
from lazytrace.core.lowering import lower_trace
from lazytrace.core.shape_inference import infer_output_shape
from lazytrace.core.trace import Trace, TraceState
from lazytrace.core.types import ElementType

CPU = Device.parse("CPU:0")
TPU = Device.parse("TPU:0")


def _finalized(value=1, device=CPU):
    trace = Trace(device)
    params = freeze_params({'dimensions': (2,), 'element_type': ElementType.S32, 'value': value})
    leaf = Node(OpKind.CONSTANT, (), infer_output_shape(OpKind.CONSTANT, (), params), device, params)
    trace.append(leaf)
    return trace.finalize([Value(leaf)])


class CountingLowerer:
    """lower_trace wrapper counting invocations."""

    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, finalized):
        with self._lock:
            self.calls += 1
        return lower_trace(finalized)


class TestRoundTrip:

    def test_hit_skips_lowering(self):
        cache = TraceCache(max_entries=8)
        lower = CountingLowerer()

        first = _finalized()
        computation, hit = cache.get_or_lower(first, lower)
        assert not hit
        assert first.state is TraceState.CACHED

        second = _finalized()
        again, hit = cache.get_or_lower(second, lower)
        assert hit
        assert again is computation
        assert second.state is TraceState.CACHED
        assert lower.calls == 1
        assert cache.get_stats()['lowerings'] == 1

    def test_insert_then_lookup(self):
        cache = TraceCache()
        finalized = _finalized()
        computation = lower_trace(finalized)
        assert cache.insert(finalized.signature, CPU, computation) is computation
        assert cache.lookup(finalized.signature, CPU) is computation
        assert (finalized.signature, CPU) in cache

    def test_device_is_part_of_key(self):
        cache = TraceCache()
        finalized = _finalized()
        cache.insert(finalized.signature, CPU, lower_trace(finalized))
        assert cache.lookup(finalized.signature, TPU) is None

    def test_first_insert_wins(self):
        cache = TraceCache()
        finalized = _finalized()
        first = lower_trace(finalized)
        second = lower_trace(_finalized())
        cache.insert(finalized.signature, CPU, first)
        assert cache.insert(finalized.signature, CPU, second) is first
        assert cache.get_stats()['duplicate_inserts'] == 1

    def test_stats(self):
        cache = TraceCache()
        finalized = _finalized()
        cache.lookup(finalized.signature, CPU)
        cache.insert(finalized.signature, CPU, lower_trace(finalized))
        cache.lookup(finalized.signature, CPU)
        stats = cache.get_stats()
        assert stats['hits'] == 1
        assert stats['misses'] == 1
        assert stats['entries'] == 1
        assert stats['hit_rate'] == 0.5
        cache.print_stats()


class TestEviction:

    def _fill(self, cache, values):
        keys = []
        for value in values:
            time.sleep(0.002)
            finalized = _finalized(value)
            cache.insert(finalized.signature, CPU, lower_trace(finalized))
            keys.append(finalized.signature)
        return keys

    def test_lru_bound(self):
        cache = TraceCache(max_entries=2)
        a, b = self._fill(cache, [1, 2])
        cache.lookup(a, CPU)
        (c,) = self._fill(cache, [3])
        assert len(cache) == 2
        assert cache.lookup(b, CPU) is None
        assert cache.lookup(a, CPU) is not None
        assert cache.lookup(c, CPU) is not None
        assert cache.get_stats()['evictions'] == 1

    def test_least_used(self):
        cache = TraceCache(max_entries=8, eviction_policy="least_used")
        a, b = self._fill(cache, [1, 2])
        cache.lookup(a, CPU)
        assert cache.evict() == (b, CPU)

    def test_age(self):
        cache = TraceCache(max_entries=8)
        a, b = self._fill(cache, [1, 2])
        cache.lookup(a, CPU)
        assert cache.evict(EvictionPolicy.AGE) == (a, CPU)

    def test_max_age(self):
        cache = TraceCache(max_entries=8, max_age_seconds=0.01)
        (a,) = self._fill(cache, [1])
        time.sleep(0.05)
        assert cache.lookup(a, CPU) is None
        assert cache.get_stats()['expirations'] == 1

    def test_reinsert_over_expired_entry(self):
        cache = TraceCache(max_entries=2, max_age_seconds=0.1, eviction_policy="least_used")
        (a,) = self._fill(cache, [1])
        cache.lookup(a, CPU)
        time.sleep(0.15)
        (b,) = self._fill(cache, [2])

        fresh = lower_trace(_finalized(1))
        assert cache.insert(a, CPU, fresh) is fresh
        assert len(cache) == 2
        assert (b, CPU) in cache
        stats = cache.get_stats()
        assert stats['evictions'] == 0
        assert stats['expirations'] == 1

        # the replacement is the most recently used entry
        assert cache.evict(EvictionPolicy.LRU) == (b, CPU)

    def test_evicted_computation_still_usable(self):
        cache = TraceCache(max_entries=1)
        finalized = _finalized()
        computation, _ = cache.get_or_lower(finalized, lower_trace)
        self._fill(cache, [5])
        assert cache.lookup(finalized.signature, CPU) is None
        assert computation.graph_module()[0].tolist() == [1, 1]

    def test_evict_empty(self):
        assert TraceCache().evict() is None

    def test_bad_policy(self):
        with pytest.raises(ConfigurationError):
            TraceCache(eviction_policy="random")
        with pytest.raises(ConfigurationError):
            TraceCache(max_entries=0)


class TestConcurrency:

    @pytest.mark.robustness
    def test_concurrent_get_or_lower(self):
        cache = TraceCache()
        lower = CountingLowerer()
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def worker():
            try:
                finalized = _finalized()
                barrier.wait()
                results.append(cache.get_or_lower(finalized, lower)[0])
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(cache) == 1
        cached = cache.lookup(_finalized().signature, CPU)
        assert len(results) == 8
        assert all(r is cached for r in results)


class TestGlobalCache:

    def test_from_config(self):
        cache = get_trace_cache()
        assert cache is get_trace_cache()
        assert cache.max_entries == 1024
        assert cache.eviction_policy is EvictionPolicy.LRU
