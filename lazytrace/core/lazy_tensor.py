"""
LazyTensor: user-facing handle to a deferred value.

A LazyTensor is either pending (its value is a node in the open trace of its
device) or materialized (backed by DeviceData). Operations only record nodes;
reading a value back forces the device's whole open trace to execute.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

import numpy as np
import torch

from . import ops
from .context import get_context, next_tensor_id
from .device import Device, default_device
from .exceptions import ConsistencyError
from .ir import Value
from .tensor_util import HostData, as_host_tensor, make_device_shape
from .types import ElementType, Shape

logger = logging.getLogger(__name__)

Scalar = Union[int, float, bool]


def _executor():
    from ..runtime.executor import get_executor
    return get_executor()


def _dims(args) -> tuple:
    if len(args) == 1 and isinstance(args[0], (tuple, list)):
        return tuple(args[0])
    return tuple(args)


class LazyTensor:
    """Deferred tensor bound to one device."""

    def __init__(self, value: Optional[Value] = None, data=None):
        if (value is None) == (data is None):
            raise ConsistencyError("LazyTensor needs exactly one of value or data")
        self.id = next_tensor_id()
        self._value: Optional[Value] = value
        self._data = data
        if value is not None:
            self._device = value.device
            self._shape = value.shape
            get_context().device_context(self._device).register(self)
        else:
            self._device = data.device
            self._shape = data.shape.with_default_layout()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_host(cls, data: HostData, device: Union[str, Device, None] = None,
                  shape: Optional[Shape] = None) -> "LazyTensor":
        """
        Upload host data. ``shape`` optionally fixes the device element type
        and layout; its dimensions must match the data.
        """
        device = Device.parse(device) if device is not None else default_device()
        tensor = as_host_tensor(data)
        if shape is None:
            shape = make_device_shape(tuple(tensor.shape), tensor.dtype, device)
        elif shape.dimensions != tuple(tensor.shape):
            raise ConsistencyError(
                f"Target {shape} does not match host dimensions {tuple(tensor.shape)}"
            )
        return cls(data=_executor().backend.transfer_to_device(tensor, shape, device))

    @classmethod
    def full(cls, dimensions: Sequence[int], value: Scalar,
             element_type: ElementType = ElementType.F32,
             device: Union[str, Device, None] = None) -> "LazyTensor":
        device = Device.parse(device) if device is not None else default_device()
        return cls(ops.constant(value, element_type, device, tuple(dimensions)))

    @classmethod
    def eye(cls, rows: int, columns: Optional[int] = None, batch_shape: Sequence[int] = (),
            element_type: ElementType = ElementType.F32,
            device: Union[str, Device, None] = None) -> "LazyTensor":
        """Identity matrix, or a batch of them."""
        columns = rows if columns is None else columns
        ones = cls.full((rows, columns), 1, element_type, device)
        identity = ones.band_part(0, 0)
        if batch_shape:
            identity = identity.expand(tuple(batch_shape) + (rows, columns))
        return identity

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def device(self) -> Device:
        return self._device

    @property
    def shape(self) -> Shape:
        return self._shape

    @property
    def dimensions(self):
        return self._shape.dimensions

    @property
    def element_type(self) -> ElementType:
        return self._shape.element_type

    @property
    def rank(self) -> int:
        return self._shape.rank

    @property
    def is_materialized(self) -> bool:
        return self._data is not None and self._data.is_ready

    @property
    def device_data(self):
        return self._data

    # ------------------------------------------------------------------
    # Trace plumbing
    # ------------------------------------------------------------------

    def _current_value(self) -> Value:
        """Value of this tensor in the open trace (lock of its device held)."""
        if self._value is not None:
            return self._value
        self._value = ops.device_data(self._data)
        get_context().device_context(self._device).register(self)
        return self._value

    def _bind_data(self, data) -> None:
        if data is not None:
            self._data = data
        self._value = None

    def _operand(self, other, validating: bool = False) -> Value:
        if isinstance(other, LazyTensor):
            if other.device != self._device:
                raise ConsistencyError(
                    f"Operands live on different devices: {self._device} and {other.device}"
                )
            if validating:
                return ops.stand_in(other.shape, other.device)
            return other._current_value()
        if isinstance(other, (bool, int, float)):
            return ops.constant(other, self.element_type, self._device)
        raise TypeError(f"Unsupported operand type {type(other).__name__}")

    def _apply(self, fn, *others, reverse: bool = False, **params) -> "LazyTensor":
        with get_context().device_context(self._device).lock:
            # Dry run first: leaves for data-backed tensors and scalars are
            # only appended once the op is known to be valid.
            with ops.validation_only():
                operands = [self._operand(self, validating=True)]
                operands += [self._operand(o, validating=True) for o in others]
                if reverse:
                    operands.reverse()
                fn(*operands, **params)

            operands = [self._current_value()] + [self._operand(o) for o in others]
            if reverse:
                operands.reverse()
            return LazyTensor(fn(*operands, **params))

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def __and__(self, other):
        return self._apply(ops.bitwise_and, other)

    def __rand__(self, other):
        return self._apply(ops.bitwise_and, other, reverse=True)

    def __or__(self, other):
        return self._apply(ops.bitwise_or, other)

    def __ror__(self, other):
        return self._apply(ops.bitwise_or, other, reverse=True)

    def __xor__(self, other):
        return self._apply(ops.bitwise_xor, other)

    def __rxor__(self, other):
        return self._apply(ops.bitwise_xor, other, reverse=True)

    def __invert__(self):
        return self._apply(ops.bitwise_not)

    def __add__(self, other):
        return self._apply(ops.add, other)

    def __radd__(self, other):
        return self._apply(ops.add, other, reverse=True)

    def __sub__(self, other):
        return self._apply(ops.sub, other)

    def __rsub__(self, other):
        return self._apply(ops.sub, other, reverse=True)

    def __mul__(self, other):
        return self._apply(ops.mul, other)

    def __rmul__(self, other):
        return self._apply(ops.mul, other, reverse=True)

    def __truediv__(self, other):
        return self._apply(ops.div, other)

    def __rtruediv__(self, other):
        return self._apply(ops.div, other, reverse=True)

    def __neg__(self):
        return self._apply(ops.neg)

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def cast(self, element_type: ElementType) -> "LazyTensor":
        return self._apply(ops.cast, element_type=element_type)

    def reshape(self, *dimensions) -> "LazyTensor":
        return self._apply(ops.reshape, dimensions=_dims(dimensions))

    def permute(self, *permutation) -> "LazyTensor":
        return self._apply(ops.permute, permutation=_dims(permutation))

    def expand(self, *dimensions) -> "LazyTensor":
        return self._apply(ops.expand, dimensions=_dims(dimensions))

    def sum(self, dimensions: Optional[Sequence[int]] = None, keepdim: bool = False) -> "LazyTensor":
        if isinstance(dimensions, int):
            dimensions = (dimensions,)
        return self._apply(ops.reduce_sum, dimensions=dimensions, keepdim=keepdim)

    def band_part(self, num_lower: int, num_upper: int) -> "LazyTensor":
        return self._apply(ops.band_part, num_lower=num_lower, num_upper=num_upper)

    def diagonal_part(self) -> "LazyTensor":
        """``[..., M, N] -> [..., min(M, N)]``."""
        return self._apply(ops.diagonal_part)

    def diagonal(self) -> "LazyTensor":
        """``[..., M] -> [..., M, M]`` with ``self`` on the diagonal."""
        return self._apply(ops.matrix_diag)

    def with_diagonal(self, diagonal: "LazyTensor") -> "LazyTensor":
        return self._apply(ops.matrix_set_diag, diagonal)

    def trace(self) -> "LazyTensor":
        """Sum of the main diagonal of each innermost matrix."""
        return self.diagonal_part().sum(-1)

    def cross_replica_sum(self) -> "LazyTensor":
        return self._apply(ops.cross_replica_sum)

    # ------------------------------------------------------------------
    # Read-back
    # ------------------------------------------------------------------

    def materialize(self, timeout: Optional[float] = None):
        """Force execution if pending and return the DeviceData once ready."""
        if self._data is None:
            _executor().sync_live_tensors([self._device])
        self._data.buffer(timeout)
        return self._data

    def to_host(self, dtype: Optional[torch.dtype] = None,
                timeout: Optional[float] = None) -> torch.Tensor:
        data = self.materialize(timeout)
        return _executor().backend.transfer_from_device(data, dtype, timeout)

    def cpu(self) -> torch.Tensor:
        return self.to_host()

    def numpy(self) -> np.ndarray:
        return self.to_host().numpy()

    def __repr__(self) -> str:
        state = "materialized" if self._data is not None else "pending"
        return f"LazyTensor(id={self.id}, {self._shape}, device={self._device}, {state})"


__all__ = ['LazyTensor']
