"""
Per-device recording state.

LazyTensorContext owns one DeviceContext per device: the open trace, weak
references to the live tensors recorded into it, the replicated-step counter
and the handles of executions that have not been waited on yet.
"""

from __future__ import annotations

import itertools
import logging
import threading
import weakref
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .device import Device
from .ir import Node, OpKind
from .trace import FinalizedTrace, Trace

if TYPE_CHECKING:
    from ..runtime.backend import DeviceData
    from .lazy_tensor import LazyTensor

logger = logging.getLogger(__name__)

_tensor_ids = itertools.count()


def next_tensor_id() -> int:
    return next(_tensor_ids)


class DeviceContext:
    """Recording state of one device. ``lock`` guards the trace and is held
    across finalize + submit so that per-device submission order matches
    finalize order."""

    def __init__(self, device: Device, max_trace_length: Optional[int] = None):
        self.device = device
        self.lock = threading.RLock()
        self.trace = Trace(device, max_trace_length)
        self.live: "weakref.WeakValueDictionary[int, LazyTensor]" = weakref.WeakValueDictionary()
        self.steps = 0
        self.replicated_step = 0
        self.handles: List = []

    def append(self, node: Node) -> None:
        with self.lock:
            self.trace.append(node)

    def register(self, tensor: "LazyTensor") -> None:
        """Track ``tensor`` (whose pending value is in the open trace)."""
        with self.lock:
            self.trace.register(tensor.id, tensor._value)
            self.live[tensor.id] = tensor

    def has_pending(self) -> bool:
        with self.lock:
            return not self.trace.is_empty

    def finalize(self) -> Tuple[FinalizedTrace, Tuple["DeviceData", ...]]:
        """
        Finalize the open trace over every live tensor and reset it.

        Live tensors computed by the trace are rebound to output placeholders,
        which the execution fulfils.
        """
        from ..runtime.backend import DeviceData

        with self.lock:
            pending: List[Tuple["LazyTensor", object]] = []
            for tensor_id in sorted(self.trace.tensors):
                tensor = self.live.get(tensor_id)
                value = self.trace.tensors[tensor_id]
                if tensor is None or tensor._value is not value:
                    continue
                pending.append((tensor, value))

            outputs = [v for _, v in pending if v.node.op is not OpKind.DEVICE_DATA]
            finalized = self.trace.finalize(outputs)
            placeholders = tuple(
                DeviceData.placeholder(v.shape, self.device) for v in finalized.outputs
            )
            by_value = dict(zip(finalized.outputs, placeholders))
            for tensor, value in pending:
                tensor._bind_data(by_value.get(value))

            self.trace.reset()
            self.live = weakref.WeakValueDictionary()
            self.steps += 1
            return finalized, placeholders

    def track(self, handle) -> None:
        with self.lock:
            self.handles = [h for h in self.handles if not h.done()]
            self.handles.append(handle)

    def outstanding(self) -> List:
        with self.lock:
            return [h for h in self.handles if not h.done()]

    def __repr__(self) -> str:
        return f"DeviceContext({self.device}, trace={self.trace!r}, steps={self.steps})"


class LazyTensorContext:
    """Registry of DeviceContexts, created lazily per device."""

    def __init__(self):
        self._lock = threading.Lock()
        self._devices: Dict[Device, DeviceContext] = {}

    def device_context(self, device: Device) -> DeviceContext:
        dc = self._devices.get(device)
        if dc is None:
            with self._lock:
                dc = self._devices.get(device)
                if dc is None:
                    from ..config import get_config
                    dc = DeviceContext(device, get_config().trace.max_trace_length)
                    self._devices[device] = dc
                    logger.debug(f"Opened trace for {device}")
        return dc

    def trace_for(self, device: Device) -> Trace:
        return self.device_context(device).trace

    def devices(self) -> List[Device]:
        with self._lock:
            return list(self._devices)


# Global context instance
_context: Optional[LazyTensorContext] = None
_context_lock = threading.Lock()


def get_context() -> LazyTensorContext:
    """Get or create the global context."""
    global _context

    if _context is None:
        with _context_lock:
            if _context is None:
                _context = LazyTensorContext()

    return _context


def reset_context() -> None:
    """Discard all open traces (mainly for tests)."""
    global _context
    with _context_lock:
        _context = None


__all__ = [
    'DeviceContext',
    'LazyTensorContext',
    'get_context',
    'reset_context',
    'next_tensor_id',
]
