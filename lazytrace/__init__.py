"""
lazytrace: a lazy-tensor tracing JIT.

Tensor operations record IR nodes into a per-device trace instead of running.
Reading a value or hitting a step boundary finalizes the trace, which is
looked up by structural signature in the trace cache, lowered to a torch.fx
GraphModule on a miss, and executed asynchronously on the device's worker.

Usage:
    import lazytrace
    from lazytrace import LazyTensor

    a = LazyTensor.from_host([0b1010], device="CPU:0")
    b = LazyTensor.from_host([0b0110], device="CPU:0")
    print((a ^ b).to_host())        # tensor([12])

    devices = lazytrace.get_all_devices()
    lazytrace.lazy_tensor_barrier(None, devices, wait=True)
    lazytrace.destroy_device_list(devices)
"""

from typing import Iterable, Optional, Union

from .config import LazyTraceConfig, get_config, load_config, set_config, setup_logging
from .core.device import (
    Device,
    DeviceList,
    DeviceType,
    default_device,
    destroy_device_list,
    get_all_devices,
)
from .core.exceptions import (
    ConfigurationError,
    ConsistencyError,
    ExecutionError,
    LazyTraceException,
    ShapeError,
    TraceStateError,
    UnsupportedTypeError,
)
from .core.lazy_tensor import LazyTensor
from .core.types import ElementType, Shape, make_shape
from .runtime.executor import (
    ExecutionHandle,
    ReplicationConfig,
    get_executor,
    get_replication_devices,
    set_replication_devices,
)

__version__ = "0.1.0"


def lazy_tensor_barrier(device: Union[str, Device, None],
                        device_list: Optional[Iterable[Union[str, Device]]],
                        wait: bool = True):
    """
    Mark a step on ``device`` (or on every device of ``device_list`` when
    ``device`` is None) and optionally wait for it.

    ``device_list`` is the replication group the step reduces across; when
    it is empty the process default from set_replication_devices() applies.
    Meant to be called from one thread per replica.
    """
    group = ReplicationConfig.from_device_list(device_list)
    if device is not None:
        devices = [Device.parse(device)]
    else:
        devices = list(group.devices)
    return get_executor().barrier(devices, wait=wait, replication=group if len(group) else None)


def sync_live_tensors_for_devices(device_list: Iterable[Union[str, Device]]):
    """Submit outstanding work on every device of ``device_list`` without waiting."""
    return get_executor().sync_live_tensors(list(device_list))


def get_trace_cache_stats():
    """Current trace cache statistics."""
    from .caching.trace_cache import get_trace_cache

    return get_trace_cache().get_stats()


def print_trace_cache_stats():
    """Print human-readable trace cache statistics."""
    from .caching.trace_cache import get_trace_cache

    get_trace_cache().print_stats()


def clear_trace_cache():
    """Drop every cached computation."""
    from .caching.trace_cache import get_trace_cache

    get_trace_cache().clear()


__all__ = [
    # Tensors
    'LazyTensor',
    'ElementType',
    'Shape',
    'make_shape',

    # Devices
    'Device',
    'DeviceType',
    'DeviceList',
    'get_all_devices',
    'default_device',
    'destroy_device_list',

    # Barrier entry points
    'lazy_tensor_barrier',
    'sync_live_tensors_for_devices',
    'set_replication_devices',
    'get_replication_devices',
    'ReplicationConfig',
    'ExecutionHandle',
    'get_executor',

    # Trace cache
    'get_trace_cache_stats',
    'print_trace_cache_stats',
    'clear_trace_cache',

    # Configuration
    'LazyTraceConfig',
    'get_config',
    'set_config',
    'load_config',
    'setup_logging',

    # Errors
    'LazyTraceException',
    'ShapeError',
    'UnsupportedTypeError',
    'ExecutionError',
    'ConsistencyError',
    'TraceStateError',
    'ConfigurationError',
]
