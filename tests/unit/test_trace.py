"""
Test: trace lifecycle and structural signatures

Validates:
- Append/finalize/reset state machine
- Finalize keeps reachable nodes and orders parameters by first use
- Identical structure -> identical signature; any structural change -> new signature
"""

import dataclasses

import pytest

from lazytrace.core.device import Device
from lazytrace.core.exceptions import ConsistencyError, TraceStateError
from lazytrace.core.ir import Node, OpKind, Value, freeze_params
from lazytrace.core.shape_inference import infer_output_shape
from lazytrace.core.trace import Trace, TraceState, check_transition
from lazytrace.core.types import ElementType, make_shape

CPU = Device.parse("CPU:0")


def _node(op, operands=(), device=CPU, **params):
    frozen = freeze_params(params)
    shape = infer_output_shape(op, tuple(v.shape for v in operands), frozen)
    return Node(op, tuple(operands), shape, device, frozen)


def _leaf(trace, dims, et=ElementType.S32, value=1):
    node = _node(OpKind.CONSTANT, dimensions=tuple(dims), element_type=et, value=value)
    trace.append(node)
    return Value(node)


def _op(trace, op, *operands, **params):
    node = _node(op, operands, **params)
    trace.append(node)
    return Value(node)


def _xor_trace(dims=(2, 3), et=ElementType.S32, op=OpKind.BITWISE_XOR, value=1):
    trace = Trace(CPU)
    a = _leaf(trace, dims, et, value)
    b = _leaf(trace, dims, et, value)
    out = _op(trace, op, a, b)
    return trace.finalize([out])


class TestStateMachine:

    def test_transition_table(self):
        check_transition(TraceState.RECORDING, TraceState.FINALIZED)
        check_transition(TraceState.FINALIZED, TraceState.RECORDING)
        check_transition(TraceState.FINALIZED, TraceState.LOWERING)
        check_transition(TraceState.FINALIZED, TraceState.CACHED)
        check_transition(TraceState.LOWERING, TraceState.CACHED)
        for current, target in [
            (TraceState.RECORDING, TraceState.LOWERING),
            (TraceState.RECORDING, TraceState.CACHED),
            (TraceState.LOWERING, TraceState.FINALIZED),
            (TraceState.CACHED, TraceState.LOWERING),
        ]:
            with pytest.raises(TraceStateError):
                check_transition(current, target)

    def test_append_after_finalize_rejected(self):
        trace = Trace(CPU)
        a = _leaf(trace, (2,))
        trace.finalize([a])
        assert trace.state is TraceState.FINALIZED
        with pytest.raises(TraceStateError):
            _leaf(trace, (2,))

    def test_reset_starts_new_generation(self):
        trace = Trace(CPU)
        _leaf(trace, (2,))
        trace.finalize()
        trace.reset()
        assert trace.state is TraceState.RECORDING
        assert trace.generation == 1
        assert trace.is_empty

    def test_reset_requires_finalize(self):
        trace = Trace(CPU)
        with pytest.raises(TraceStateError):
            trace.reset()

    def test_snapshot_transitions(self):
        finalized = _xor_trace()
        assert finalized.state is TraceState.FINALIZED
        finalized.transition(TraceState.LOWERING)
        finalized.transition(TraceState.CACHED)
        with pytest.raises(TraceStateError):
            finalized.transition(TraceState.LOWERING)

    def test_snapshot_cannot_resume_recording(self):
        with pytest.raises(TraceStateError):
            _xor_trace().transition(TraceState.RECORDING)

    def test_snapshot_fields_are_read_only(self):
        finalized = _xor_trace()
        signature = finalized.signature
        with pytest.raises(dataclasses.FrozenInstanceError):
            finalized.signature = "0" * 64
        with pytest.raises(dataclasses.FrozenInstanceError):
            finalized.nodes = ()
        finalized.transition(TraceState.LOWERING)
        assert finalized.signature == signature
        assert finalized.state is TraceState.LOWERING


class TestAppend:

    def test_rejects_other_device(self):
        trace = Trace(CPU)
        node = _node(OpKind.CONSTANT, device=Device.parse("TPU:0"),
                     dimensions=(), element_type=ElementType.F32, value=0.0)
        with pytest.raises(ConsistencyError):
            trace.append(node)

    def test_rejects_foreign_operands(self):
        other = Trace(CPU)
        a = _leaf(other, (2,))
        trace = Trace(CPU)
        with pytest.raises(ConsistencyError):
            _op(trace, OpKind.NEG, a)
        assert trace.is_empty

    def test_long_trace_warns_once(self, caplog):
        trace = Trace(CPU, max_length=3)
        with caplog.at_level("WARNING", logger="lazytrace.core.trace"):
            for _ in range(6):
                _leaf(trace, (1,))
        warnings = [r for r in caplog.records if "grown past" in r.getMessage()]
        assert len(warnings) == 1


class TestFinalize:

    def test_drops_unreachable_nodes(self):
        trace = Trace(CPU)
        a = _leaf(trace, (2,))
        _op(trace, OpKind.NEG, a)
        b = _op(trace, OpKind.BITWISE_NOT, a)
        finalized = trace.finalize([b])
        assert [n.op for n in finalized.nodes] == [OpKind.CONSTANT, OpKind.BITWISE_NOT]
        assert finalized.outputs == (b,)

    def test_defaults_to_registered_tensors(self):
        trace = Trace(CPU)
        a = _leaf(trace, (2,))
        b = _op(trace, OpKind.NEG, a)
        trace.register(7, b)
        finalized = trace.finalize()
        assert finalized.outputs == (b,)

    def test_duplicate_outputs_collapsed(self):
        trace = Trace(CPU)
        a = _leaf(trace, (2,))
        finalized = trace.finalize([a, a])
        assert finalized.outputs == (a,)

    def test_parameters_in_first_use_order(self):
        trace = Trace(CPU)
        shape = make_shape([2], ElementType.S32)
        params = {'dimensions': shape.dimensions, 'element_type': shape.element_type}
        first = _node(OpKind.DEVICE_DATA, **params)
        second = _node(OpKind.DEVICE_DATA, **params)
        trace.append(first)
        trace.append(second)
        out = _op(trace, OpKind.BITWISE_AND, Value(second), Value(first))
        finalized = trace.finalize([out])
        assert finalized.parameters == (second, first)
        assert finalized.parameter_shapes == (shape, shape)

    def test_empty_trace(self):
        finalized = Trace(CPU).finalize()
        assert finalized.is_empty
        assert len(finalized) == 0


class TestSignature:

    def test_identical_structure_same_signature(self):
        assert _xor_trace().signature == _xor_trace().signature

    def test_signature_ignores_node_ids(self):
        first = _xor_trace()
        second = _xor_trace()
        assert {n.id for n in first.nodes}.isdisjoint(n.id for n in second.nodes)
        assert first.signature == second.signature

    @pytest.mark.parametrize("variant", [
        {'dims': (3, 2)},
        {'et': ElementType.S64},
        {'op': OpKind.BITWISE_AND},
        {'value': 2},
    ])
    def test_structural_change_changes_signature(self, variant):
        assert _xor_trace(**variant).signature != _xor_trace().signature

    def test_topology_changes_signature(self):
        t1 = Trace(CPU)
        a1, b1 = _leaf(t1, (2,)), _leaf(t1, (2,), value=2)
        s1 = t1.finalize([_op(t1, OpKind.SUB, a1, b1)]).signature
        t2 = Trace(CPU)
        a2, b2 = _leaf(t2, (2,)), _leaf(t2, (2,), value=2)
        s2 = t2.finalize([_op(t2, OpKind.SUB, b2, a2)]).signature
        assert s1 != s2

    def test_layout_changes_signature(self):
        t1 = Trace(CPU)
        t2 = Trace(CPU)
        n1 = Node(OpKind.DEVICE_DATA, (), make_shape([2, 3], ElementType.F32), CPU)
        n2 = Node(OpKind.DEVICE_DATA, (), make_shape([2, 3], ElementType.F32, [0, 1]), CPU)
        t1.append(n1)
        t2.append(n2)
        assert t1.finalize([Value(n1)]).signature != t2.finalize([Value(n2)]).signature

    def test_output_selection_changes_signature(self):
        t1 = Trace(CPU)
        a1 = _leaf(t1, (2,))
        b1 = _op(t1, OpKind.NEG, a1)
        t2 = Trace(CPU)
        a2 = _leaf(t2, (2,))
        b2 = _op(t2, OpKind.NEG, a2)
        assert t1.finalize([b1]).signature != t2.finalize([a2, b2]).signature
