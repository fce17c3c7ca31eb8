"""
IR node definitions.

Nodes are immutable. Behaviour per op kind (shape inference, lowering) lives in
tables keyed by :class:`OpKind` rather than on the node instances; a node only
carries its tag, operands, inferred shape and scalar parameters.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple

from .device import Device
from .types import Shape

if TYPE_CHECKING:
    from ..runtime.backend import DeviceData


class OpKind(Enum):
    """Closed set of IR operations."""
    DEVICE_DATA = "xla::device_data"
    CONSTANT = "prim::constant"
    BITWISE_AND = "aten::__and__"
    BITWISE_OR = "aten::__or__"
    BITWISE_XOR = "aten::__xor__"
    BITWISE_NOT = "aten::bitwise_not"
    ADD = "aten::add"
    SUB = "aten::sub"
    MUL = "aten::mul"
    DIV = "aten::div"
    NEG = "aten::neg"
    CAST = "xla::cast"
    RESHAPE = "aten::reshape"
    PERMUTE = "aten::permute"
    EXPAND = "aten::expand"
    SUM = "aten::sum"
    BAND_PART = "xla::band_part"
    DIAGONAL_PART = "xla::diagonal_part"
    MATRIX_DIAG = "xla::matrix_diag"
    MATRIX_SET_DIAG = "xla::matrix_set_diag"
    CROSS_REPLICA_SUM = "xla::cross_replica_sum"


_node_ids = itertools.count()


def freeze_params(params: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, Any], ...]:
    """Sorted, hashable form of op parameters (lists become tuples)."""
    if not params:
        return ()
    frozen = []
    for key in sorted(params):
        value = params[key]
        if isinstance(value, list):
            value = tuple(value)
        frozen.append((key, value))
    return tuple(frozen)


@dataclass(frozen=True, eq=False)
class Node:
    """Immutable IR vertex.

    ``id`` and ``data`` identify this particular node and its bound device
    buffer; neither participates in structural signatures.
    """
    op: OpKind
    operands: Tuple["Value", ...]
    shape: Shape
    device: Device
    params: Tuple[Tuple[str, Any], ...] = ()
    data: Optional["DeviceData"] = field(default=None, repr=False)
    id: int = field(default_factory=lambda: next(_node_ids))

    @property
    def param_dict(self) -> Dict[str, Any]:
        return dict(self.params)

    def param(self, name: str, default: Any = None) -> Any:
        for key, value in self.params:
            if key == name:
                return value
        return default

    def operand(self, index: int) -> "Value":
        return self.operands[index]

    def infer_shape(self) -> Shape:
        """Re-derive the output shape from the operands and parameters."""
        from .shape_inference import infer_output_shape

        return infer_output_shape(
            self.op, tuple(v.shape for v in self.operands), self.params
        )

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        ops = ", ".join(f"%{v.node.id}" for v in self.operands)
        params = "".join(f", {k}={v!r}" for k, v in self.params)
        return f"%{self.id} = {self.op.value}({ops}{params}) : {self.shape}"


@dataclass(frozen=True)
class Value:
    """Handle to one output of a node."""
    node: Node
    index: int = 0

    @property
    def shape(self) -> Shape:
        return self.node.shape

    @property
    def device(self) -> Device:
        return self.node.device


__all__ = [
    'OpKind',
    'Node',
    'Value',
    'freeze_params',
]
