"""
Test: static shape inference

Validates:
- Binary elementwise ops follow standard broadcasting
- Invalid operands/parameters raise ShapeError before any node is appended
- Per-op rules (reshape, permute, expand, sum, linear algebra)
"""

import itertools

import pytest
import torch

from lazytrace.core import ops
from lazytrace.core.context import get_context
from lazytrace.core.device import Device
from lazytrace.core.exceptions import ShapeError
from lazytrace.core.ir import OpKind, freeze_params
from lazytrace.core.shape_inference import (
    broadcast_dimensions,
    get_shape_inference_stats,
    infer_output_shape,
)
from lazytrace.core.types import ElementType, make_shape

CPU = Device.parse("CPU:0")

SAMPLE_DIMS = [(), (1,), (3,), (4,), (2, 1), (2, 3), (1, 3), (4, 1, 3), (2, 2, 3), (5, 4, 2, 3)]


def _infer(op, shapes, **params):
    return infer_output_shape(op, tuple(shapes), freeze_params(params))


def _torch_broadcast(lhs, rhs):
    try:
        return tuple(torch.broadcast_shapes(lhs, rhs))
    except RuntimeError:
        return None


class TestBroadcasting:

    @pytest.mark.parametrize("lhs,rhs", list(itertools.product(SAMPLE_DIMS, repeat=2)))
    def test_bitwise_and_matches_broadcast_rule(self, lhs, rhs):
        """Valid pairs follow torch's broadcast rule; invalid pairs append nothing."""
        a = ops.constant(1, ElementType.S32, CPU, lhs)
        b = ops.constant(2, ElementType.S32, CPU, rhs)
        trace = get_context().trace_for(CPU)
        before = len(trace)

        expected = _torch_broadcast(lhs, rhs)
        if expected is None:
            with pytest.raises(ShapeError):
                ops.bitwise_and(a, b)
            assert len(trace) == before
        else:
            result = ops.bitwise_and(a, b)
            assert result.shape.dimensions == expected
            assert result.shape.element_type is ElementType.S32
            assert len(trace) == before + 1

    def test_broadcast_dimensions(self):
        assert broadcast_dimensions((2, 1, 3), (4, 1)) == (2, 4, 3)
        with pytest.raises(ShapeError):
            broadcast_dimensions((2, 3), (3, 2))


class TestElementTypes:

    def test_bitwise_requires_identical_types(self):
        with pytest.raises(ShapeError):
            _infer(OpKind.BITWISE_AND, [make_shape([2], ElementType.S32), make_shape([2], ElementType.S64)])

    def test_bitwise_rejects_floats(self):
        with pytest.raises(ShapeError):
            _infer(OpKind.BITWISE_XOR, [make_shape([2], ElementType.F32)] * 2)
        with pytest.raises(ShapeError):
            _infer(OpKind.BITWISE_NOT, [make_shape([2], ElementType.F32)])

    def test_bitwise_accepts_predicates(self):
        shape = _infer(OpKind.BITWISE_OR, [make_shape([2], ElementType.PRED)] * 2)
        assert shape.element_type is ElementType.PRED

    def test_arithmetic_rejects_predicates(self):
        with pytest.raises(ShapeError):
            _infer(OpKind.ADD, [make_shape([2], ElementType.PRED)] * 2)
        with pytest.raises(ShapeError):
            _infer(OpKind.NEG, [make_shape([2], ElementType.PRED)])

    def test_cast(self):
        shape = _infer(OpKind.CAST, [make_shape([2, 3], ElementType.S32)], element_type=ElementType.F16)
        assert shape == make_shape([2, 3], ElementType.F16)
        with pytest.raises(ShapeError):
            _infer(OpKind.CAST, [make_shape([2], ElementType.S32)], element_type="f16")

    def test_error_context_names_op(self):
        with pytest.raises(ShapeError) as exc_info:
            _infer(OpKind.SUB, [make_shape([2], ElementType.F32), make_shape([3], ElementType.F32)])
        assert exc_info.value.context['op'] == OpKind.SUB.value


class TestShapeOps:

    def test_reshape(self):
        source = make_shape([2, 3, 4], ElementType.F32)
        assert _infer(OpKind.RESHAPE, [source], dimensions=(6, 4)).dimensions == (6, 4)
        assert _infer(OpKind.RESHAPE, [source], dimensions=(-1, 2)).dimensions == (12, 2)
        with pytest.raises(ShapeError):
            _infer(OpKind.RESHAPE, [source], dimensions=(5, 5))
        with pytest.raises(ShapeError):
            _infer(OpKind.RESHAPE, [source], dimensions=(-1, -1))
        with pytest.raises(ShapeError):
            _infer(OpKind.RESHAPE, [source], dimensions=(-2, -12))

    def test_permute(self):
        source = make_shape([2, 3, 4], ElementType.F32)
        assert _infer(OpKind.PERMUTE, [source], permutation=(2, 0, 1)).dimensions == (4, 2, 3)
        with pytest.raises(ShapeError):
            _infer(OpKind.PERMUTE, [source], permutation=(0, 0, 1))

    def test_expand(self):
        source = make_shape([3, 1], ElementType.S32)
        assert _infer(OpKind.EXPAND, [source], dimensions=(2, 3, 5)).dimensions == (2, 3, 5)
        with pytest.raises(ShapeError):
            _infer(OpKind.EXPAND, [source], dimensions=(4, 5))
        with pytest.raises(ShapeError):
            _infer(OpKind.EXPAND, [source], dimensions=(5,))

    def test_sum(self):
        source = make_shape([2, 3, 4], ElementType.F32)
        assert _infer(OpKind.SUM, [source], dimensions=(1,), keepdim=False).dimensions == (2, 4)
        assert _infer(OpKind.SUM, [source], dimensions=(0, 2), keepdim=True).dimensions == (1, 3, 1)
        assert _infer(OpKind.SUM, [source], dimensions=(0, 1, 2), keepdim=False).dimensions == ()
        with pytest.raises(ShapeError):
            _infer(OpKind.SUM, [source], dimensions=(3,), keepdim=False)
        with pytest.raises(ShapeError):
            _infer(OpKind.SUM, [source], dimensions=(1, -2), keepdim=False)

    def test_linear_algebra(self):
        matrix = make_shape([5, 2, 3], ElementType.F32)
        assert _infer(OpKind.BAND_PART, [matrix], num_lower=-1, num_upper=0) == matrix
        assert _infer(OpKind.DIAGONAL_PART, [matrix]).dimensions == (5, 2)
        assert _infer(OpKind.MATRIX_DIAG, [make_shape([5, 2], ElementType.F32)]).dimensions == (5, 2, 2)
        diagonal = make_shape([5, 2], ElementType.F32)
        assert _infer(OpKind.MATRIX_SET_DIAG, [matrix, diagonal]) == matrix

    def test_linear_algebra_errors(self):
        vector = make_shape([3], ElementType.F32)
        with pytest.raises(ShapeError):
            _infer(OpKind.BAND_PART, [vector], num_lower=0, num_upper=0)
        with pytest.raises(ShapeError):
            _infer(OpKind.DIAGONAL_PART, [vector])
        with pytest.raises(ShapeError):
            _infer(OpKind.MATRIX_SET_DIAG, [make_shape([3, 3], ElementType.F32), make_shape([2], ElementType.F32)])


class TestMemoization:

    def test_results_are_cached(self):
        shapes = (make_shape([2, 3], ElementType.S32),) * 2
        infer_output_shape(OpKind.BITWISE_AND, shapes, ())
        infer_output_shape(OpKind.BITWISE_AND, shapes, ())
        stats = get_shape_inference_stats()
        assert stats['hits'] >= 1
        assert stats['cache_size'] >= 1
