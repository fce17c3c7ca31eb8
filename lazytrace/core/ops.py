"""
Op constructors.

Each constructor validates its operands, infers the output shape eagerly and
appends one immutable node to the open trace of the operands' device. Nothing
executes here; a ShapeError or ConsistencyError leaves the trace untouched.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Optional, Sequence

from .context import get_context
from .device import Device
from .exceptions import ConsistencyError, ShapeError
from .ir import Node, OpKind, Value, freeze_params
from .shape_inference import infer_output_shape, normalize_axis
from .types import ElementType, Shape

logger = logging.getLogger(__name__)

_construction = threading.local()


def validation_only():
    """Context in which constructors validate and infer shapes but append nothing."""
    class ValidationContext:
        def __enter__(self):
            self.previous = getattr(_construction, 'validate_only', False)
            _construction.validate_only = True

        def __exit__(self, *args):
            _construction.validate_only = self.previous

    return ValidationContext()


def _common_device(op: OpKind, operands: Sequence[Value]) -> Device:
    devices = {v.device for v in operands}
    if len(devices) != 1:
        raise ConsistencyError(
            f"{op.value} operands live on different devices",
            {'devices': sorted(str(d) for d in devices)},
        )
    return operands[0].device


def make_node(op: OpKind, operands: Sequence[Value] = (),
              params: Optional[Mapping[str, Any]] = None,
              device: Optional[Device] = None, data=None) -> Value:
    """Validate, infer, build and append a node; returns its output value."""
    operands = tuple(operands)
    if operands:
        device = _common_device(op, operands)
    elif device is None:
        raise ConsistencyError(f"{op.value} without operands needs an explicit device")

    frozen = freeze_params(params)
    shape = infer_output_shape(op, tuple(v.shape for v in operands), frozen)
    node = Node(op, operands, shape, device, frozen, data)
    if getattr(_construction, 'validate_only', False):
        return Value(node)
    get_context().device_context(device).append(node)
    return Value(node)


# ============================================================================
# LEAVES
# ============================================================================

def device_data(data) -> Value:
    """Parameter node bound to device-resident data (one per data per trace)."""
    dc = get_context().device_context(data.device)
    with dc.lock:
        existing = dc.trace.data_node(data)
        if existing is not None:
            return Value(existing)
        shape = data.shape
        return make_node(
            OpKind.DEVICE_DATA,
            params={'dimensions': shape.dimensions, 'element_type': shape.element_type},
            device=data.device,
            data=data,
        )


def _coerce_scalar(value, element_type: ElementType):
    if element_type.is_predicate:
        return bool(value)
    if element_type.is_integral:
        if isinstance(value, float) and not value.is_integer():
            raise ShapeError(f"Constant {value!r} is not representable as {element_type.value}")
        return int(value)
    return float(value)


def constant(value, element_type: ElementType, device: Device,
             dimensions: Sequence[int] = ()) -> Value:
    """Constant filled with ``value``; rank 0 by default so it broadcasts."""
    return make_node(
        OpKind.CONSTANT,
        params={
            'dimensions': tuple(dimensions),
            'element_type': element_type,
            'value': _coerce_scalar(value, element_type),
        },
        device=device,
    )


def stand_in(shape: Shape, device: Device) -> Value:
    """Detached leaf of ``shape``; never part of any trace."""
    params = freeze_params({'dimensions': shape.dimensions, 'element_type': shape.element_type})
    return Value(Node(OpKind.DEVICE_DATA, (), shape.with_default_layout(), device, params))


# ============================================================================
# ELEMENTWISE
# ============================================================================

def bitwise_and(lhs: Value, rhs: Value) -> Value:
    return make_node(OpKind.BITWISE_AND, (lhs, rhs))


def bitwise_or(lhs: Value, rhs: Value) -> Value:
    return make_node(OpKind.BITWISE_OR, (lhs, rhs))


def bitwise_xor(lhs: Value, rhs: Value) -> Value:
    return make_node(OpKind.BITWISE_XOR, (lhs, rhs))


def bitwise_not(operand: Value) -> Value:
    return make_node(OpKind.BITWISE_NOT, (operand,))


def add(lhs: Value, rhs: Value) -> Value:
    return make_node(OpKind.ADD, (lhs, rhs))


def sub(lhs: Value, rhs: Value) -> Value:
    return make_node(OpKind.SUB, (lhs, rhs))


def mul(lhs: Value, rhs: Value) -> Value:
    return make_node(OpKind.MUL, (lhs, rhs))


def div(lhs: Value, rhs: Value) -> Value:
    """Division; truncates toward zero for integer types."""
    return make_node(OpKind.DIV, (lhs, rhs))


def neg(operand: Value) -> Value:
    return make_node(OpKind.NEG, (operand,))


def cast(operand: Value, element_type: ElementType) -> Value:
    return make_node(OpKind.CAST, (operand,), {'element_type': element_type})


# ============================================================================
# SHAPE MANIPULATION
# ============================================================================

def reshape(operand: Value, dimensions: Sequence[int]) -> Value:
    return make_node(OpKind.RESHAPE, (operand,), {'dimensions': tuple(dimensions)})


def permute(operand: Value, permutation: Sequence[int]) -> Value:
    return make_node(OpKind.PERMUTE, (operand,), {'permutation': tuple(permutation)})


def expand(operand: Value, dimensions: Sequence[int]) -> Value:
    return make_node(OpKind.EXPAND, (operand,), {'dimensions': tuple(dimensions)})


def reduce_sum(operand: Value, dimensions: Optional[Sequence[int]] = None,
               keepdim: bool = False) -> Value:
    rank = operand.shape.rank
    if dimensions is None:
        axes = tuple(range(rank))
    else:
        axes = tuple(normalize_axis(d, rank) for d in dimensions)
        if len(set(axes)) != len(axes):
            raise ShapeError(f"Repeated reduction axes {tuple(dimensions)}", {'op': OpKind.SUM.value})
        axes = tuple(sorted(axes))
    return make_node(OpKind.SUM, (operand,), {'dimensions': axes, 'keepdim': bool(keepdim)})


# ============================================================================
# LINEAR ALGEBRA
# ============================================================================

def band_part(operand: Value, num_lower: int, num_upper: int) -> Value:
    """Zero everything outside a central band; a negative count keeps the
    whole lower (or upper) triangle."""
    return make_node(
        OpKind.BAND_PART, (operand,),
        {'num_lower': int(num_lower), 'num_upper': int(num_upper)},
    )


def diagonal_part(operand: Value) -> Value:
    return make_node(OpKind.DIAGONAL_PART, (operand,))


def matrix_diag(diagonal: Value) -> Value:
    return make_node(OpKind.MATRIX_DIAG, (diagonal,))


def matrix_set_diag(matrix: Value, diagonal: Value) -> Value:
    return make_node(OpKind.MATRIX_SET_DIAG, (matrix, diagonal))


# ============================================================================
# COLLECTIVES
# ============================================================================

def cross_replica_sum(operand: Value) -> Value:
    """Sum across the replication group active when the trace executes."""
    return make_node(OpKind.CROSS_REPLICA_SUM, (operand,))


__all__ = [
    'make_node',
    'validation_only',
    'stand_in',
    'device_data',
    'constant',
    'bitwise_and',
    'bitwise_or',
    'bitwise_xor',
    'bitwise_not',
    'add',
    'sub',
    'mul',
    'div',
    'neg',
    'cast',
    'reshape',
    'permute',
    'expand',
    'reduce_sum',
    'band_part',
    'diagonal_part',
    'matrix_diag',
    'matrix_set_diag',
    'cross_replica_sum',
]
