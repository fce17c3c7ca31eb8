"""Execution runtime: backends, collectives and the graph executor."""

from .backend import Backend, DeviceData, TorchBackend
from .executor import (
    ExecutionHandle,
    GraphExecutor,
    ReplicationConfig,
    get_executor,
    get_replication_devices,
    set_replication_devices,
)

__all__ = [
    'Backend',
    'DeviceData',
    'TorchBackend',
    'ExecutionHandle',
    'GraphExecutor',
    'ReplicationConfig',
    'get_executor',
    'get_replication_devices',
    'set_replication_devices',
]
