"""
Static shape inference for IR nodes.

Every rule is a pure function ``rule(operand_shapes, params) -> Shape`` that
depends only on operand shapes/element types and op parameters, never on data.
Rules run eagerly when a node is constructed; any incompatibility raises
ShapeError before the node exists, so a failing op never reaches a trace.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Sequence, Tuple

from .exceptions import ShapeError
from .ir import OpKind
from .types import ElementType, Shape

logger = logging.getLogger(__name__)

ShapeRule = Callable[[Sequence[Shape], Mapping[str, Any]], Shape]


# ============================================================================
# HELPERS
# ============================================================================

def broadcast_dimensions(lhs: Sequence[int], rhs: Sequence[int]) -> Tuple[int, ...]:
    """Standard (numpy-style) broadcasting of two dimension tuples."""
    result = []
    for i in range(1, max(len(lhs), len(rhs)) + 1):
        a = lhs[-i] if i <= len(lhs) else 1
        b = rhs[-i] if i <= len(rhs) else 1
        if a == b or b == 1:
            result.append(a)
        elif a == 1:
            result.append(b)
        else:
            raise ShapeError(
                f"Shapes {tuple(lhs)} and {tuple(rhs)} are not broadcast compatible",
                {'dimension': -i},
            )
    return tuple(reversed(result))


def normalize_axis(axis: int, rank: int) -> int:
    if not -rank <= axis < rank:
        raise ShapeError(f"Axis {axis} out of range for rank {rank}")
    return axis % rank if rank else 0


def _expect_operands(op: str, shapes: Sequence[Shape], count: int) -> None:
    if len(shapes) != count:
        raise ShapeError(f"{op} expects {count} operand(s), got {len(shapes)}")


def _expect_same_type(op: str, lhs: Shape, rhs: Shape) -> None:
    if lhs.element_type is not rhs.element_type:
        raise ShapeError(
            f"{op} requires identical element types",
            {'lhs': lhs.element_type.value, 'rhs': rhs.element_type.value},
        )


def _expect_min_rank(op: str, shape: Shape, rank: int) -> None:
    if shape.rank < rank:
        raise ShapeError(f"{op} requires rank >= {rank}, got {shape}")


# ============================================================================
# RULES
# ============================================================================

def _data_shape(shapes, params) -> Shape:
    _expect_operands("constant", shapes, 0)
    return Shape(tuple(params['dimensions']), params['element_type'])


def _bitwise_binary(shapes, params) -> Shape:
    _expect_operands("bitwise op", shapes, 2)
    lhs, rhs = shapes
    _expect_same_type("bitwise op", lhs, rhs)
    et = lhs.element_type
    if not (et.is_integral or et.is_predicate):
        raise ShapeError(
            "Bitwise ops require integer or predicate element types",
            {'element_type': et.value},
        )
    return Shape(broadcast_dimensions(lhs.dimensions, rhs.dimensions), et)


def _bitwise_not(shapes, params) -> Shape:
    _expect_operands("bitwise_not", shapes, 1)
    et = shapes[0].element_type
    if not (et.is_integral or et.is_predicate):
        raise ShapeError(
            "bitwise_not requires an integer or predicate element type",
            {'element_type': et.value},
        )
    return shapes[0].with_default_layout()


def _arithmetic_binary(shapes, params) -> Shape:
    _expect_operands("arithmetic op", shapes, 2)
    lhs, rhs = shapes
    _expect_same_type("arithmetic op", lhs, rhs)
    if lhs.element_type.is_predicate:
        raise ShapeError("Arithmetic ops are not defined on predicates")
    return Shape(broadcast_dimensions(lhs.dimensions, rhs.dimensions), lhs.element_type)


def _neg(shapes, params) -> Shape:
    _expect_operands("neg", shapes, 1)
    if shapes[0].element_type.is_predicate:
        raise ShapeError("neg is not defined on predicates")
    return shapes[0].with_default_layout()


def _cast(shapes, params) -> Shape:
    _expect_operands("cast", shapes, 1)
    element_type = params.get('element_type')
    if not isinstance(element_type, ElementType):
        raise ShapeError(f"cast requires an ElementType, got {element_type!r}")
    return Shape(shapes[0].dimensions, element_type)


def _reshape(shapes, params) -> Shape:
    _expect_operands("reshape", shapes, 1)
    source = shapes[0]
    dims = list(params['dimensions'])
    if dims.count(-1) > 1:
        raise ShapeError(f"reshape allows at most one inferred dimension, got {tuple(dims)}")
    if any(d < -1 for d in dims):
        raise ShapeError(f"Negative dimension in reshape target {tuple(dims)}")
    if -1 in dims:
        known = 1
        for d in dims:
            if d != -1:
                known *= d
        if known == 0 or source.element_count % known:
            raise ShapeError(f"Cannot infer dimension reshaping {source} to {tuple(dims)}")
        dims[dims.index(-1)] = source.element_count // known
    target = Shape(tuple(dims), source.element_type)
    if target.element_count != source.element_count:
        raise ShapeError(
            f"reshape cannot change the element count: {source} -> {tuple(dims)}"
        )
    return target


def _permute(shapes, params) -> Shape:
    _expect_operands("permute", shapes, 1)
    source = shapes[0]
    perm = tuple(params['permutation'])
    if sorted(perm) != list(range(source.rank)):
        raise ShapeError(f"{perm} is not a permutation for rank {source.rank}")
    return Shape(tuple(source.dimensions[p] for p in perm), source.element_type)


def _expand(shapes, params) -> Shape:
    _expect_operands("expand", shapes, 1)
    source = shapes[0]
    target = tuple(params['dimensions'])
    if len(target) < source.rank:
        raise ShapeError(f"Cannot expand {source} to lower rank {target}")
    offset = len(target) - source.rank
    for i, d in enumerate(source.dimensions):
        if d != 1 and d != target[offset + i]:
            raise ShapeError(f"Cannot expand {source} to {target}", {'dimension': i})
    return Shape(target, source.element_type)


def _sum(shapes, params) -> Shape:
    _expect_operands("sum", shapes, 1)
    source = shapes[0]
    if source.element_type.is_predicate:
        raise ShapeError("sum is not defined on predicates")
    axes = [normalize_axis(a, source.rank) for a in params['dimensions']]
    if len(set(axes)) != len(axes):
        raise ShapeError(f"Repeated reduction axes {tuple(params['dimensions'])}")
    keepdim = params.get('keepdim', False)
    dims = []
    for i, d in enumerate(source.dimensions):
        if i in axes:
            if keepdim:
                dims.append(1)
        else:
            dims.append(d)
    return Shape(tuple(dims), source.element_type)


def _band_part(shapes, params) -> Shape:
    _expect_operands("band_part", shapes, 1)
    _expect_min_rank("band_part", shapes[0], 2)
    for key in ('num_lower', 'num_upper'):
        if not isinstance(params.get(key), int):
            raise ShapeError(f"band_part requires an integer {key}")
    return shapes[0].with_default_layout()


def _diagonal_part(shapes, params) -> Shape:
    _expect_operands("diagonal_part", shapes, 1)
    source = shapes[0]
    _expect_min_rank("diagonal_part", source, 2)
    *batch, m, n = source.dimensions
    return Shape(tuple(batch) + (min(m, n),), source.element_type)


def _matrix_diag(shapes, params) -> Shape:
    _expect_operands("matrix_diag", shapes, 1)
    source = shapes[0]
    _expect_min_rank("matrix_diag", source, 1)
    return Shape(source.dimensions + (source.dimensions[-1],), source.element_type)


def _matrix_set_diag(shapes, params) -> Shape:
    _expect_operands("matrix_set_diag", shapes, 2)
    matrix, diagonal = shapes
    _expect_min_rank("matrix_set_diag", matrix, 2)
    _expect_same_type("matrix_set_diag", matrix, diagonal)
    expected = _diagonal_part([matrix], {}).dimensions
    if diagonal.dimensions != expected:
        raise ShapeError(
            f"Diagonal {diagonal} does not match matrix {matrix}",
            {'expected': expected},
        )
    return matrix.with_default_layout()


def _cross_replica_sum(shapes, params) -> Shape:
    _expect_operands("cross_replica_sum", shapes, 1)
    if shapes[0].element_type.is_predicate:
        raise ShapeError("cross_replica_sum is not defined on predicates")
    return shapes[0].with_default_layout()


SHAPE_RULES: Dict[OpKind, ShapeRule] = {
    OpKind.DEVICE_DATA: _data_shape,
    OpKind.CONSTANT: _data_shape,
    OpKind.BITWISE_AND: _bitwise_binary,
    OpKind.BITWISE_OR: _bitwise_binary,
    OpKind.BITWISE_XOR: _bitwise_binary,
    OpKind.BITWISE_NOT: _bitwise_not,
    OpKind.ADD: _arithmetic_binary,
    OpKind.SUB: _arithmetic_binary,
    OpKind.MUL: _arithmetic_binary,
    OpKind.DIV: _arithmetic_binary,
    OpKind.NEG: _neg,
    OpKind.CAST: _cast,
    OpKind.RESHAPE: _reshape,
    OpKind.PERMUTE: _permute,
    OpKind.EXPAND: _expand,
    OpKind.SUM: _sum,
    OpKind.BAND_PART: _band_part,
    OpKind.DIAGONAL_PART: _diagonal_part,
    OpKind.MATRIX_DIAG: _matrix_diag,
    OpKind.MATRIX_SET_DIAG: _matrix_set_diag,
    OpKind.CROSS_REPLICA_SUM: _cross_replica_sum,
}


@lru_cache(maxsize=4096)
def infer_output_shape(op: OpKind, operand_shapes: Tuple[Shape, ...],
                       params: Tuple[Tuple[str, Any], ...] = ()) -> Shape:
    """
    Infer the output shape of ``op``.

    Memoised on (op, operand shapes, params); failures raise ShapeError and
    are not cached.
    """
    rule = SHAPE_RULES.get(op)
    if rule is None:
        raise ShapeError(f"No shape rule for {op.value}")
    try:
        return rule(operand_shapes, dict(params))
    except ShapeError as e:
        e.context.setdefault('op', op.value)
        logger.debug(f"Shape inference failed for {op.value}: {e.message}")
        raise


def get_shape_inference_stats() -> Dict[str, Any]:
    info = infer_output_shape.cache_info()
    total = info.hits + info.misses
    return {
        'hits': info.hits,
        'misses': info.misses,
        'hit_rate': f"{(info.hits / total * 100) if total else 0:.1f}%",
        'cache_size': info.currsize,
    }


__all__ = [
    'SHAPE_RULES',
    'broadcast_dimensions',
    'normalize_axis',
    'infer_output_shape',
    'get_shape_inference_stats',
]
