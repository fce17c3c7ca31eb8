"""
Execution and device synchronization.

GraphExecutor submits finalized traces to one single-threaded worker per
device, so executions on a device run in submission order while devices run
concurrently. Each submission returns an ExecutionHandle; failures stay on
the handle (and on the output DeviceData) until someone observes them.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import (
    Future,
    ThreadPoolExecutor,
    TimeoutError as FutureTimeoutError,
    wait as wait_futures,
)
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..caching.trace_cache import TraceCache, get_trace_cache
from ..core.context import LazyTensorContext, get_context
from ..core.device import Device, DeviceList
from ..core.exceptions import ConsistencyError, ExecutionError
from ..core.lowering import lower_trace
from ..core.trace import FinalizedTrace, TraceState
from .backend import Backend, DeviceData, TorchBackend
from .collectives import Rendezvous, ReplicaContext

logger = logging.getLogger(__name__)

DeviceSpec = Union[str, Device]


# ============================================================================
# REPLICATION
# ============================================================================

@dataclass(frozen=True)
class ReplicationConfig:
    """Ordered set of devices taking part in cross-replica reductions."""
    devices: Tuple[Device, ...] = ()

    def __post_init__(self):
        ordered = []
        for device in self.devices:
            device = Device.parse(device)
            if device not in ordered:
                ordered.append(device)
        object.__setattr__(self, 'devices', tuple(ordered))

    @classmethod
    def from_device_list(cls, device_list: Optional[Iterable[DeviceSpec]]) -> "ReplicationConfig":
        return cls(tuple(device_list) if device_list is not None else ())

    def __len__(self) -> int:
        return len(self.devices)

    def __contains__(self, device) -> bool:
        return Device.parse(device) in self.devices

    def index(self, device: Device) -> int:
        return self.devices.index(device)

    def to_device_list(self) -> DeviceList:
        """New caller-owned DeviceList with the same devices."""
        return DeviceList(self.devices)


# ============================================================================
# HANDLES
# ============================================================================

class ExecutionHandle:
    """Future result of one submitted trace.

    ``result()`` returns the output DeviceData once the execution finished,
    or raises ExecutionError.
    """

    def __init__(self, finalized: FinalizedTrace, outputs: Tuple[DeviceData, ...],
                 future: Optional[Future] = None):
        self.finalized = finalized
        self.outputs = outputs
        self.cache_hit: Optional[bool] = None
        self.submitted_at = time.time()
        if future is None:
            future = Future()
            future.set_result(outputs)
        self._future = future

    @property
    def device(self) -> Device:
        return self.finalized.device

    @property
    def signature(self) -> str:
        return self.finalized.signature

    def result(self, timeout: Optional[float] = None) -> Tuple[DeviceData, ...]:
        try:
            return self._future.result(timeout)
        except FutureTimeoutError:
            raise ExecutionError(
                f"Execution on {self.device} not finished after {timeout}s"
            ) from None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until finished (successfully or not); True if finished."""
        done, _ = wait_futures([self._future], timeout)
        return bool(done)

    def done(self) -> bool:
        return self._future.done()

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self._future.exception(timeout)

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return (f"ExecutionHandle(device={self.device}, sig={self.signature[:12]}, "
                f"{state}, cache_hit={self.cache_hit})")


# ============================================================================
# EXECUTOR
# ============================================================================

class GraphExecutor:
    """Dispatches finalized traces to per-device workers."""

    def __init__(self, backend: Optional[Backend] = None, cache: Optional[TraceCache] = None,
                 context: Optional[LazyTensorContext] = None,
                 rendezvous: Optional[Rendezvous] = None,
                 collective_timeout: Optional[float] = None):
        self.backend = backend or TorchBackend()
        self._cache = cache
        self._context = context
        self.rendezvous = rendezvous or Rendezvous()
        if collective_timeout is None:
            from ..config import get_config
            collective_timeout = get_config().runtime.collective_timeout
        self.collective_timeout = collective_timeout

        self._workers: Dict[Device, ThreadPoolExecutor] = {}
        self._workers_lock = threading.Lock()
        self._replication: Optional[ReplicationConfig] = None
        self._replication_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self.stats = {
            'executions': 0,
            'empty_executions': 0,
            'cache_hits': 0,
            'cache_misses': 0,
            'failures': 0,
            'barriers': 0,
            'syncs': 0,
            'total_execution_time_ms': 0.0,
        }

    @property
    def cache(self) -> TraceCache:
        return self._cache if self._cache is not None else get_trace_cache()

    @property
    def context(self) -> LazyTensorContext:
        return self._context if self._context is not None else get_context()

    def _bump(self, key: str, amount=1) -> None:
        with self._stats_lock:
            self.stats[key] += amount

    def _worker(self, device: Device) -> ThreadPoolExecutor:
        with self._workers_lock:
            worker = self._workers.get(device)
            if worker is None:
                worker = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"lazytrace-{device.hw_type.value.lower()}{device.ordinal}"
                )
                self._workers[device] = worker
            return worker

    # ------------------------------------------------------------------
    # Replication
    # ------------------------------------------------------------------

    def set_replication(self, config: Optional[ReplicationConfig]) -> None:
        with self._replication_lock:
            self._replication = config
        logger.info(
            f"Replication devices set to "
            f"{[str(d) for d in config.devices] if config else []}"
        )

    def get_replication(self) -> Optional[ReplicationConfig]:
        with self._replication_lock:
            return self._replication

    def _replica_for(self, dc, finalized: FinalizedTrace,
                     replication: Optional[ReplicationConfig]) -> Optional[ReplicaContext]:
        """Replica context for one submission (device lock held)."""
        if not finalized.has_cross_replica_sum:
            return None
        if replication is None or len(replication) <= 1 or dc.device not in replication:
            return ReplicaContext.local(dc.device)
        step = dc.replicated_step
        dc.replicated_step += 1
        return ReplicaContext(
            replication.devices, replication.index(dc.device), step,
            self.rendezvous, self.collective_timeout,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_trace(self, finalized: FinalizedTrace,
                      output_data: Optional[Sequence[DeviceData]] = None,
                      replica: Optional[ReplicaContext] = None) -> ExecutionHandle:
        """Look up or lower ``finalized`` and run it on its device's worker."""
        if output_data is None:
            output_data = tuple(
                DeviceData.placeholder(v.shape, finalized.device) for v in finalized.outputs
            )
        output_data = tuple(output_data)
        if len(output_data) != len(finalized.outputs):
            raise ConsistencyError(
                f"{len(output_data)} output buffers for {len(finalized.outputs)} outputs"
            )

        if finalized.is_empty:
            finalized.transition(TraceState.CACHED)
            self._bump('empty_executions')
            return ExecutionHandle(finalized, output_data)

        handle = ExecutionHandle(finalized, output_data, Future())
        handle._future = self._worker(finalized.device).submit(
            self._run, handle, replica
        )
        self._bump('executions')
        return handle

    def _run(self, handle: ExecutionHandle, replica: Optional[ReplicaContext]):
        finalized = handle.finalized
        start = time.perf_counter()
        try:
            computation, hit = self.cache.get_or_lower(finalized, lower_trace)
            handle.cache_hit = hit
            self._bump('cache_hits' if hit else 'cache_misses')
            arguments = [node.data for node in finalized.parameters]
            buffers = self.backend.execute(computation, arguments, replica)
            for data, buffer in zip(handle.outputs, buffers):
                data.set_buffer(buffer)
        except ExecutionError as e:
            self._fail(handle, e)
            raise
        except Exception as e:
            error = ExecutionError(
                f"Execution failed on {finalized.device}: {e}",
                {'signature': finalized.signature[:16]},
            )
            self._fail(handle, error)
            raise error from e
        finally:
            self._bump('total_execution_time_ms', (time.perf_counter() - start) * 1000)

        logger.debug(
            f"Executed {finalized.signature[:12]} on {finalized.device} "
            f"(cache_hit={handle.cache_hit})"
        )
        return handle.outputs

    def _fail(self, handle: ExecutionHandle, error: ExecutionError) -> None:
        for data in handle.outputs:
            data.set_exception(error)
        self._bump('failures')
        logger.error(
            f"Execution of {handle.signature[:12]} on {handle.device} failed: {error.message}"
        )

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    def _devices(self, devices: Iterable[DeviceSpec]) -> List[Device]:
        ordered = []
        for device in devices:
            device = Device.parse(device)
            if device not in ordered:
                ordered.append(device)
        return ordered

    def step_device(self, device: Device, replication: Optional[ReplicationConfig] = None,
                    force: bool = True) -> Optional[ExecutionHandle]:
        """Finalize and submit ``device``'s open trace.

        With ``force=False`` an empty trace is left alone and None returned.
        """
        dc = self.context.device_context(device)
        with dc.lock:
            if not force and not dc.has_pending():
                return None
            finalized, outputs = dc.finalize()
            replica = self._replica_for(dc, finalized, replication)
            handle = self.execute_trace(finalized, outputs, replica)
            dc.track(handle)
            return handle

    def barrier(self, devices: Iterable[DeviceSpec], wait: bool = True,
                replication: Optional[ReplicationConfig] = None) -> List[ExecutionHandle]:
        """
        Mark a step on every device: finalize and submit each open trace (even
        an empty one) and, if ``wait``, block until every execution submitted
        to those devices so far has finished.

        Without an explicit ``replication`` the process default set through
        set_replication_devices() is used.
        """
        devices = self._devices(devices)
        if replication is None:
            replication = self.get_replication()
        handles = [self.step_device(device, replication, force=True) for device in devices]
        self._bump('barriers')
        if wait:
            self.wait_devices(devices)
        return handles

    def sync_live_tensors(self, devices: Iterable[DeviceSpec],
                          replication: Optional[ReplicationConfig] = None) -> List[ExecutionHandle]:
        """Submit every device's pending work without waiting for it."""
        devices = self._devices(devices)
        if replication is None:
            replication = self.get_replication()
        handles = []
        for device in devices:
            handle = self.step_device(device, replication, force=False)
            if handle is not None:
                handles.append(handle)
        self._bump('syncs')
        return handles

    def wait_devices(self, devices: Iterable[DeviceSpec], timeout: Optional[float] = None) -> bool:
        """Wait for all outstanding executions on ``devices``; True if all finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for device in self._devices(devices):
            for handle in self.context.device_context(device).outstanding():
                remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
                if not handle.wait(remaining):
                    return False
        return True

    def get_stats(self) -> Dict:
        with self._stats_lock:
            stats = dict(self.stats)
        stats['workers'] = len(self._workers)
        stats['replication_devices'] = [
            str(d) for d in (self.get_replication() or ReplicationConfig()).devices
        ]
        return stats

    def print_stats(self) -> None:
        stats = self.get_stats()
        print("\n" + "=" * 70)
        print("Graph Executor Statistics")
        print("=" * 70)
        print(f"  Executions: {stats['executions']} (empty: {stats['empty_executions']})")
        print(f"  Cache hits/misses: {stats['cache_hits']}/{stats['cache_misses']}")
        print(f"  Failures: {stats['failures']}")
        print(f"  Barriers: {stats['barriers']}  Syncs: {stats['syncs']}")
        print(f"  Execution time: {stats['total_execution_time_ms']:.1f}ms")
        print(f"  Replication devices: {stats['replication_devices']}")
        print("=" * 70)

    def shutdown(self, wait: bool = True) -> None:
        with self._workers_lock:
            workers = list(self._workers.values())
            self._workers.clear()
        for worker in workers:
            worker.shutdown(wait=wait)


# Global executor instance
_executor: Optional[GraphExecutor] = None
_executor_lock = threading.Lock()


def get_executor() -> GraphExecutor:
    """Get or create the global executor."""
    global _executor

    if _executor is None:
        with _executor_lock:
            if _executor is None:
                _executor = GraphExecutor()

    return _executor


def reset_executor() -> None:
    """Shut down and drop the global executor (mainly for tests)."""
    global _executor
    with _executor_lock:
        executor, _executor = _executor, None
    if executor is not None:
        executor.shutdown(wait=True)


def set_replication_devices(device_list: Optional[Iterable[DeviceSpec]]) -> None:
    """Process-wide default replication set, read by later barriers.

    The devices are copied; the caller keeps ownership of ``device_list``.
    """
    get_executor().set_replication(ReplicationConfig.from_device_list(device_list))


def get_replication_devices() -> DeviceList:
    """Current default replication set as a new caller-owned DeviceList."""
    config = get_executor().get_replication()
    return config.to_device_list() if config is not None else DeviceList()


__all__ = [
    'ReplicationConfig',
    'ExecutionHandle',
    'GraphExecutor',
    'get_executor',
    'reset_executor',
    'set_replication_devices',
    'get_replication_devices',
]
