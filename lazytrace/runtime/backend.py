"""
Device backends.

The backend is the opaque collaborator that owns device buffers and runs
lowered computations. TorchBackend is the reference implementation: buffers
are flat torch tensors stored in the device layout on the mapped torch
device (TPU-class devices are emulated on the host).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, List, Optional, Sequence

import torch

from ..core.device import Device
from ..core.exceptions import ConsistencyError, ExecutionError
from ..core.tensor_util import TensorBuffer, make_tensor_from_buffer, populate_buffer
from ..core.types import Shape
from .collectives import ReplicaContext

if TYPE_CHECKING:
    from ..core.lowering import Computation

logger = logging.getLogger(__name__)


class DeviceData:
    """
    Device-resident value of a tensor.

    Either realized (holds a TensorBuffer) or a placeholder that an execution
    fulfils later. Reading a placeholder blocks; a failed execution re-raises
    as ExecutionError on every read.
    """

    def __init__(self, shape: Shape, device: Device, buffer: Optional[TensorBuffer] = None):
        self.shape = shape
        self.device = device
        self._future: Future = Future()
        if buffer is not None:
            self.set_buffer(buffer)

    @classmethod
    def placeholder(cls, shape: Shape, device: Device) -> "DeviceData":
        return cls(shape, device)

    @property
    def is_ready(self) -> bool:
        return self._future.done()

    @property
    def has_error(self) -> bool:
        return self._future.done() and self._future.exception() is not None

    def set_buffer(self, buffer: TensorBuffer) -> None:
        if buffer.shape.dimensions != self.shape.dimensions:
            raise ConsistencyError(
                f"Buffer {buffer.shape} does not match device data {self.shape}"
            )
        self._future.set_result(buffer)

    def set_exception(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)

    def buffer(self, timeout: Optional[float] = None) -> TensorBuffer:
        try:
            return self._future.result(timeout)
        except FutureTimeoutError:
            raise ExecutionError(
                f"Timed out after {timeout}s waiting for data on {self.device}"
            ) from None
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"Device data on {self.device} failed: {e}") from e

    def __repr__(self) -> str:
        state = "ready" if self.is_ready else "pending"
        return f"DeviceData({self.shape}, {self.device}, {state})"


class Backend(ABC):
    """Opaque device runtime: owns buffers and runs computations."""

    @abstractmethod
    def transfer_to_device(self, tensor: torch.Tensor, shape: Shape, device: Device) -> DeviceData:
        """Copy a host tensor into a new device buffer of ``shape``."""

    @abstractmethod
    def transfer_from_device(self, data: DeviceData, dtype: Optional[torch.dtype] = None,
                             timeout: Optional[float] = None) -> torch.Tensor:
        """Copy device data back into a new host tensor."""

    @abstractmethod
    def execute(self, computation: "Computation", arguments: Sequence[DeviceData],
                replica: Optional[ReplicaContext] = None) -> List[TensorBuffer]:
        """Run ``computation`` and return its output buffers."""


class TorchBackend(Backend):
    """Reference backend running torch.fx GraphModules."""

    def transfer_to_device(self, tensor: torch.Tensor, shape: Shape, device: Device) -> DeviceData:
        buffer = TensorBuffer.allocate(shape, device.torch_device)
        populate_buffer(tensor, shape, buffer.data, device)
        logger.debug(f"Uploaded {tuple(tensor.shape)} {tensor.dtype} to {device} as {shape}")
        return DeviceData(shape, device, buffer)

    def transfer_from_device(self, data: DeviceData, dtype: Optional[torch.dtype] = None,
                             timeout: Optional[float] = None) -> torch.Tensor:
        return make_tensor_from_buffer(data.buffer(timeout), dtype)

    def execute(self, computation: "Computation", arguments: Sequence[DeviceData],
                replica: Optional[ReplicaContext] = None) -> List[TensorBuffer]:
        if len(arguments) != len(computation.parameter_shapes):
            raise ExecutionError(
                f"Computation expects {len(computation.parameter_shapes)} arguments, "
                f"got {len(arguments)}"
            )
        args = []
        for i, (data, expected) in enumerate(zip(arguments, computation.parameter_shapes)):
            buffer = data.buffer()
            if not buffer.shape.same_dimensions(expected) or buffer.shape.element_type is not expected.element_type:
                raise ExecutionError(
                    f"Argument {i} is {buffer.shape}, computation expects {expected}"
                )
            args.append(buffer.view())

        if computation.needs_replica_context:
            args.insert(0, replica or ReplicaContext.local(computation.device))

        with torch.no_grad():
            results = computation.graph_module(*args)
        if len(results) != len(computation.output_shapes):
            raise ExecutionError(
                f"Computation produced {len(results)} outputs, "
                f"expected {len(computation.output_shapes)}"
            )

        outputs = []
        torch_device = computation.device.torch_device
        for i, (result, expected) in enumerate(zip(results, computation.output_shapes)):
            if tuple(result.shape) != expected.dimensions:
                raise ExecutionError(
                    f"Output {i} has dimensions {tuple(result.shape)}, inferred {expected}"
                )
            if result.dtype != expected.element_type.torch_dtype:
                raise ExecutionError(
                    f"Output {i} has dtype {result.dtype}, inferred {expected}"
                )
            buffer = TensorBuffer.allocate(expected, torch_device)
            buffer.view().copy_(result)
            outputs.append(buffer)
        return outputs


__all__ = ['DeviceData', 'Backend', 'TorchBackend']
