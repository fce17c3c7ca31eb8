"""
Test: op constructors append validated nodes to the open trace
"""

import pytest

from lazytrace.core import ops
from lazytrace.core.context import get_context
from lazytrace.core.device import Device
from lazytrace.core.exceptions import ConsistencyError, ShapeError
from lazytrace.core.ir import Node, OpKind
from lazytrace.core.types import ElementType, make_shape

CPU = Device.parse("CPU:0")
TPU = Device.parse("TPU:0")


class TestOpConstructors:

    def test_nodes_appended_in_construction_order(self):
        a = ops.constant(0b1010, ElementType.S32, CPU, (4,))
        b = ops.constant(0b0110, ElementType.S32, CPU, (4,))
        c = ops.bitwise_xor(a, b)
        d = ops.bitwise_not(c)

        trace = get_context().trace_for(CPU)
        assert [n.op for n in trace.nodes] == [
            OpKind.CONSTANT, OpKind.CONSTANT, OpKind.BITWISE_XOR, OpKind.BITWISE_NOT,
        ]
        assert d.node.operands == (c,)
        assert d.shape.dimensions == (4,)

    def test_nodes_are_immutable(self):
        value = ops.constant(1, ElementType.S32, CPU)
        with pytest.raises(AttributeError):
            value.node.op = OpKind.ADD

    def test_infer_shape_matches_stored_shape(self):
        a = ops.constant(1.0, ElementType.F32, CPU, (2, 3))
        b = ops.reduce_sum(a, (-1,), keepdim=True)
        assert b.node.infer_shape() == b.shape
        assert b.node.param('dimensions') == (1,)
        assert b.node.param_dict == {'dimensions': (1,), 'keepdim': True}

    def test_reduce_sum_defaults_to_all_axes(self):
        a = ops.constant(1, ElementType.S32, CPU, (2, 3))
        assert ops.reduce_sum(a).shape.dimensions == ()

    def test_mixed_devices_rejected(self):
        a = ops.constant(1, ElementType.S32, CPU, (2,))
        b = ops.constant(1, ElementType.S32, TPU, (2,))
        with pytest.raises(ConsistencyError):
            ops.bitwise_and(a, b)
        assert len(get_context().trace_for(CPU)) == 1
        assert len(get_context().trace_for(TPU)) == 1

    def test_type_mismatch_leaves_trace_untouched(self):
        a = ops.constant(1, ElementType.S32, CPU, (2,))
        b = ops.constant(1, ElementType.S64, CPU, (2,))
        with pytest.raises(ShapeError):
            ops.bitwise_or(a, b)
        assert len(get_context().trace_for(CPU)) == 2

    def test_constant_coercion(self):
        assert ops.constant(True, ElementType.PRED, CPU).node.param('value') is True
        assert ops.constant(3.0, ElementType.S32, CPU).node.param('value') == 3
        assert isinstance(ops.constant(3, ElementType.F32, CPU).node.param('value'), float)
        with pytest.raises(ShapeError):
            ops.constant(2.5, ElementType.S32, CPU)

    def test_leaf_without_device(self):
        with pytest.raises(ConsistencyError):
            ops.make_node(OpKind.CONSTANT, params={
                'dimensions': (), 'element_type': ElementType.F32, 'value': 0.0,
            })

    def test_operand_from_previous_generation_rejected(self):
        a = ops.constant(1, ElementType.S32, CPU, (2,))
        dc = get_context().device_context(CPU)
        dc.trace.finalize([a])
        dc.trace.reset()
        with pytest.raises(ConsistencyError):
            ops.neg(a)

    def test_node_ids_are_unique(self):
        nodes = [ops.constant(i, ElementType.S32, CPU).node for i in range(5)]
        assert len({n.id for n in nodes}) == 5
        assert all(isinstance(n, Node) for n in nodes)

    def test_validation_only_appends_nothing(self):
        a = ops.constant(1, ElementType.S32, CPU, (2,))
        trace = get_context().trace_for(CPU)
        with ops.validation_only():
            doubled = ops.add(a, ops.constant(2, ElementType.S32, CPU))
            assert doubled.shape == a.shape
            with pytest.raises(ShapeError):
                ops.bitwise_and(a, ops.stand_in(make_shape([2], ElementType.S64), CPU))
        assert len(trace) == 1
        assert doubled not in trace
        ops.neg(a)
        assert len(trace) == 2

    def test_stand_in_is_detached(self):
        leaf = ops.stand_in(make_shape([2, 3], ElementType.F32, [0, 1]), CPU)
        assert leaf.shape == make_shape([2, 3], ElementType.F32)
        assert leaf.node.op is OpKind.DEVICE_DATA
        assert leaf not in get_context().trace_for(CPU)
