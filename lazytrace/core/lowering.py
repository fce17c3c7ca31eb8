"""Lowering of finalized traces into torch.fx GraphModules.

Each op kind maps to one entry of LOWERING_RULES. Parameters (DEVICE_DATA
nodes) become placeholders in first-use order, preceded by a replica context
placeholder when the trace contains a cross-replica reduction.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

import torch
import torch.fx as fx
from torch.fx import Graph, GraphModule

from .device import Device
from .exceptions import ExecutionError
from .ir import Node, OpKind
from .trace import FinalizedTrace
from .types import ElementType, Shape

logger = logging.getLogger(__name__)


@dataclass
class Computation:
    """Lowered, executable form of a finalized trace.

    Shared read-only by the trace cache and every execution that hits it.
    """
    signature: str
    device: Device
    graph_module: GraphModule
    parameter_shapes: Tuple[Shape, ...]
    output_shapes: Tuple[Shape, ...]
    needs_replica_context: bool = False
    build_time_ms: float = 0.0

    @property
    def num_parameters(self) -> int:
        return len(self.parameter_shapes)

    @property
    def num_outputs(self) -> int:
        return len(self.output_shapes)

    def __repr__(self) -> str:
        return (f"Computation(sig={self.signature[:12]}, device={self.device}, "
                f"params={self.num_parameters}, outputs={self.num_outputs})")


# ============================================================================
# HELPERS CALLED FROM GENERATED CODE
# ============================================================================

def _band_part(x: torch.Tensor, num_lower: int, num_upper: int) -> torch.Tensor:
    m, n = x.shape[-2], x.shape[-1]
    rows = torch.arange(m, device=x.device).unsqueeze(-1)
    cols = torch.arange(n, device=x.device).unsqueeze(0)
    keep = torch.ones(m, n, dtype=torch.bool, device=x.device)
    if num_lower >= 0:
        keep &= (rows - cols) <= num_lower
    if num_upper >= 0:
        keep &= (cols - rows) <= num_upper
    return torch.where(keep, x, torch.zeros((), dtype=x.dtype, device=x.device))


def _matrix_set_diag(x: torch.Tensor, diagonal: torch.Tensor) -> torch.Tensor:
    out = x.clone()
    out.diagonal(dim1=-2, dim2=-1).copy_(diagonal)
    return out


def _cross_replica_sum(replica, x: torch.Tensor) -> torch.Tensor:
    return replica.all_reduce_sum(x)


# ============================================================================
# LOWERING RULES
# ============================================================================

LoweringRule = Callable[["FunctionBuilder", Node, List[fx.Node]], fx.Node]

# torch has no arithmetic kernels for these; they compute in int64 and wrap back
_WIDE_UNSIGNED = frozenset({ElementType.U16, ElementType.U32, ElementType.U64})


def _function(target, **kwargs) -> LoweringRule:
    def lower(builder, node, args):
        return builder.graph.call_function(target, tuple(args), dict(kwargs))
    return lower


def _widen_unsigned(rule: LoweringRule) -> LoweringRule:
    def lower(builder, node, args):
        source = node.operands[0].shape if node.operands else node.shape
        if source.element_type not in _WIDE_UNSIGNED:
            return rule(builder, node, args)
        widened = [builder.graph.call_method('to', (a, torch.int64)) for a in args]
        result = rule(builder, node, widened)
        return builder.graph.call_method('to', (result, node.shape.element_type.torch_dtype))
    return lower


def _lower_constant(builder, node, args):
    element_type = node.shape.element_type
    dtype = torch.int64 if element_type in _WIDE_UNSIGNED else element_type.torch_dtype
    full = builder.graph.call_function(
        torch.full,
        (tuple(node.param('dimensions')), node.param('value')),
        {'dtype': dtype, 'device': builder.device_str},
    )
    if dtype is element_type.torch_dtype:
        return full
    return builder.graph.call_method('to', (full, element_type.torch_dtype))


def _lower_div(builder, node, args):
    if node.shape.element_type.is_floating:
        return builder.graph.call_function(torch.div, tuple(args))
    return builder.graph.call_function(torch.div, tuple(args), {'rounding_mode': 'trunc'})


def _lower_cast(builder, node, args):
    return builder.graph.call_method('to', (args[0], node.shape.element_type.torch_dtype))


def _lower_reshape(builder, node, args):
    return builder.graph.call_function(torch.reshape, (args[0], node.shape.dimensions))


def _lower_permute(builder, node, args):
    return builder.graph.call_function(torch.permute, (args[0], tuple(node.param('permutation'))))


def _lower_expand(builder, node, args):
    return builder.graph.call_method('expand', (args[0], node.shape.dimensions))


def _lower_sum(builder, node, args):
    dims = tuple(node.param('dimensions'))
    if not dims:
        return builder.graph.call_function(torch.clone, (args[0],))
    summed = builder.graph.call_function(
        torch.sum, (args[0],), {'dim': dims, 'keepdim': node.param('keepdim', False)}
    )
    # integer sums widen to int64
    return builder.graph.call_method('to', (summed, node.shape.element_type.torch_dtype))


def _lower_band_part(builder, node, args):
    return builder.graph.call_function(
        _band_part, (args[0], node.param('num_lower'), node.param('num_upper'))
    )


def _lower_cross_replica_sum(builder, node, args):
    return builder.graph.call_function(_cross_replica_sum, (builder.replica_placeholder, args[0]))


LOWERING_RULES: Dict[OpKind, LoweringRule] = {
    OpKind.CONSTANT: _lower_constant,
    OpKind.BITWISE_AND: _function(torch.bitwise_and),
    OpKind.BITWISE_OR: _function(torch.bitwise_or),
    OpKind.BITWISE_XOR: _function(torch.bitwise_xor),
    OpKind.BITWISE_NOT: _function(torch.bitwise_not),
    OpKind.ADD: _widen_unsigned(_function(torch.add)),
    OpKind.SUB: _widen_unsigned(_function(torch.sub)),
    OpKind.MUL: _widen_unsigned(_function(torch.mul)),
    OpKind.DIV: _widen_unsigned(_lower_div),
    OpKind.NEG: _widen_unsigned(_function(torch.neg)),
    OpKind.CAST: _lower_cast,
    OpKind.RESHAPE: _lower_reshape,
    OpKind.PERMUTE: _lower_permute,
    OpKind.EXPAND: _lower_expand,
    OpKind.SUM: _widen_unsigned(_lower_sum),
    OpKind.BAND_PART: _widen_unsigned(_lower_band_part),
    OpKind.DIAGONAL_PART: _function(torch.diagonal, dim1=-2, dim2=-1),
    OpKind.MATRIX_DIAG: _widen_unsigned(_function(torch.diag_embed)),
    OpKind.MATRIX_SET_DIAG: _widen_unsigned(_function(_matrix_set_diag)),
    OpKind.CROSS_REPLICA_SUM: _widen_unsigned(_lower_cross_replica_sum),
}


# ============================================================================
# FUNCTION BUILDER
# ============================================================================

class FunctionBuilder:
    """Build a GraphModule from one FinalizedTrace."""

    def __init__(self, finalized: FinalizedTrace, torch_device=None):
        self.finalized = finalized
        self.torch_device = torch.device(torch_device) if torch_device is not None \
            else finalized.device.torch_device
        self.graph = Graph()
        self.replica_placeholder = None
        self.value_map: Dict[int, fx.Node] = {}  # ir Node.id -> fx.Node

    @property
    def device_str(self) -> str:
        return str(self.torch_device)

    def build(self) -> Computation:
        start = time.perf_counter()
        finalized = self.finalized

        if finalized.has_cross_replica_sum:
            self.replica_placeholder = self.graph.placeholder('replica_ctx')
        for i, param in enumerate(finalized.parameters):
            placeholder = self.graph.placeholder(f'param_{i}')
            placeholder.meta['lazytrace'] = {'shape': param.shape, 'parameter': i}
            self.value_map[param.id] = placeholder

        for node in finalized.nodes:
            if node.op is OpKind.DEVICE_DATA:
                continue
            rule = LOWERING_RULES.get(node.op)
            if rule is None:
                raise ExecutionError(f"No lowering rule for {node.op.value}")
            args = [self.value_map[v.node.id] for v in node.operands]
            fx_node = rule(self, node, args)
            fx_node.meta['lazytrace'] = {'op': node.op.value, 'shape': node.shape}
            self.value_map[node.id] = fx_node

        self.graph.output(tuple(self.value_map[v.node.id] for v in finalized.outputs))
        self.graph.lint()
        graph_module = GraphModule(torch.nn.Module(), self.graph)

        build_time_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Lowered trace sig={finalized.signature[:12]} on {finalized.device}: "
            f"{len(finalized.nodes)} nodes in {build_time_ms:.2f}ms"
        )
        return Computation(
            signature=finalized.signature,
            device=finalized.device,
            graph_module=graph_module,
            parameter_shapes=finalized.parameter_shapes,
            output_shapes=finalized.output_shapes,
            needs_replica_context=self.replica_placeholder is not None,
            build_time_ms=build_time_ms,
        )


def lower_trace(finalized: FinalizedTrace) -> Computation:
    return FunctionBuilder(finalized).build()


__all__ = [
    'Computation',
    'FunctionBuilder',
    'LOWERING_RULES',
    'lower_trace',
]
