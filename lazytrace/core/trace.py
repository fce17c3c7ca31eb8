"""
Per-device traces and their finalized snapshots.

A Trace is the append-only node list a device records into. Finalizing it
produces an immutable FinalizedTrace carrying the structural signature used
as the trace-cache key; the live Trace is then reset and keeps recording.

Lifecycle::

    RECORDING --finalize--> FINALIZED --reset--> RECORDING      (live trace)
    FINALIZED --cache miss--> LOWERING --insert--> CACHED       (snapshot)
    FINALIZED --cache hit--> CACHED
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .device import Device
from .exceptions import ConsistencyError, TraceStateError
from .ir import Node, OpKind, Value
from .types import ElementType, Shape

logger = logging.getLogger(__name__)


class TraceState(Enum):
    RECORDING = "recording"
    FINALIZED = "finalized"
    LOWERING = "lowering"
    CACHED = "cached"


_TRANSITIONS = {
    TraceState.RECORDING: frozenset({TraceState.FINALIZED}),
    TraceState.FINALIZED: frozenset({TraceState.RECORDING, TraceState.LOWERING, TraceState.CACHED}),
    TraceState.LOWERING: frozenset({TraceState.CACHED}),
    TraceState.CACHED: frozenset(),
}


def check_transition(current: TraceState, target: TraceState) -> None:
    if target not in _TRANSITIONS[current]:
        raise TraceStateError(
            f"Illegal trace transition {current.value} -> {target.value}",
            {'from': current.value, 'to': target.value},
        )


# ============================================================================
# SIGNATURE
# ============================================================================

def _format_param(value) -> str:
    if isinstance(value, ElementType):
        return value.value
    if isinstance(value, tuple):
        return "(" + ",".join(_format_param(v) for v in value) + ")"
    # repr keeps 1, 1.0 and True apart
    return repr(value)


def compute_signature(nodes: Sequence[Node], outputs: Sequence[Value],
                      parameters: Sequence[Node]) -> str:
    """
    Structural hash of a node sequence.

    Covers op kinds, operand topology (by position), shapes, element types,
    layouts and params, plus output and parameter positions. Node ids and
    bound device data never enter the hash.
    """
    position = {node.id: i for i, node in enumerate(nodes)}
    parts = []
    for node in nodes:
        operands = ",".join(f"{position[v.node.id]}.{v.index}" for v in node.operands)
        params = ";".join(f"{k}={_format_param(v)}" for k, v in node.params)
        parts.append(f"{node.op.value}({operands}){node.shape}[{params}]")
    parts.append("out:" + ",".join(f"{position[v.node.id]}.{v.index}" for v in outputs))
    parts.append("in:" + ",".join(str(position[p.id]) for p in parameters))

    hasher = hashlib.sha256()
    hasher.update("|".join(parts).encode("utf-8"))
    return hasher.hexdigest()


# ============================================================================
# FINALIZED TRACE
# ============================================================================

@dataclass(eq=False, frozen=True)
class FinalizedTrace:
    """Immutable snapshot of a trace, ready for lookup/lowering."""
    device: Device
    nodes: Tuple[Node, ...]
    outputs: Tuple[Value, ...]
    parameters: Tuple[Node, ...]
    signature: str
    generation: int = 0
    _state: TraceState = field(default=TraceState.FINALIZED, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def state(self) -> TraceState:
        return self._state

    def transition(self, target: TraceState) -> None:
        with self._lock:
            if target is TraceState.RECORDING:
                raise TraceStateError("A finalized snapshot cannot resume recording")
            check_transition(self._state, target)
            object.__setattr__(self, '_state', target)

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    @property
    def parameter_shapes(self) -> Tuple[Shape, ...]:
        return tuple(p.shape for p in self.parameters)

    @property
    def output_shapes(self) -> Tuple[Shape, ...]:
        return tuple(v.shape for v in self.outputs)

    @property
    def has_cross_replica_sum(self) -> bool:
        return any(n.op is OpKind.CROSS_REPLICA_SUM for n in self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)


# ============================================================================
# LIVE TRACE
# ============================================================================

class Trace:
    """Append-only node list for one device.

    ``tensors`` maps externally visible tensor ids to the value currently
    producing them.
    """

    def __init__(self, device: Device, max_length: Optional[int] = None):
        self.device = device
        self.nodes: List[Node] = []
        self.tensors: Dict[int, Value] = {}
        self.state = TraceState.RECORDING
        self.generation = 0
        self._node_ids = set()
        self._data_nodes: Dict[int, Node] = {}
        self._max_length = max_length
        self._warned_length = False

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, value: Value) -> bool:
        return value.node.id in self._node_ids

    def append(self, node: Node) -> None:
        if self.state is not TraceState.RECORDING:
            raise TraceStateError(
                f"Cannot append to a {self.state.value} trace", {'device': str(self.device)}
            )
        if node.device != self.device:
            raise ConsistencyError(
                f"Node for {node.device} appended to trace of {self.device}"
            )
        for operand in node.operands:
            if operand.node.id not in self._node_ids:
                raise ConsistencyError(
                    f"Operand %{operand.node.id} is not part of the open trace",
                    {'device': str(self.device), 'generation': self.generation},
                )

        self.nodes.append(node)
        self._node_ids.add(node.id)
        if node.op is OpKind.DEVICE_DATA and node.data is not None:
            self._data_nodes[id(node.data)] = node

        if (self._max_length and not self._warned_length
                and len(self.nodes) > self._max_length):
            self._warned_length = True
            logger.warning(
                f"Trace on {self.device} has grown past {self._max_length} nodes; "
                f"consider a barrier or sync_live_tensors to bound it"
            )

    def data_node(self, data) -> Optional[Node]:
        """DEVICE_DATA node already bound to ``data`` in this trace, if any."""
        return self._data_nodes.get(id(data))

    def register(self, tensor_id: int, value: Value) -> None:
        if value not in self:
            raise ConsistencyError(f"Tensor {tensor_id} bound to a value outside the trace")
        self.tensors[tensor_id] = value

    def unregister(self, tensor_id: int) -> None:
        self.tensors.pop(tensor_id, None)

    def finalize(self, outputs: Optional[Iterable[Value]] = None) -> FinalizedTrace:
        """
        Snapshot the nodes reachable from ``outputs`` (default: every
        registered tensor) and move to FINALIZED.
        """
        check_transition(self.state, TraceState.FINALIZED)

        if outputs is None:
            outputs = self.tensors.values()
        unique_outputs: List[Value] = []
        seen_outputs = set()
        for value in outputs:
            if value not in self:
                raise ConsistencyError("Finalize output is not part of the trace")
            if value not in seen_outputs:
                seen_outputs.add(value)
                unique_outputs.append(value)

        reachable = set()
        stack = [v.node for v in unique_outputs]
        while stack:
            node = stack.pop()
            if node.id in reachable:
                continue
            reachable.add(node.id)
            stack.extend(v.node for v in node.operands)
        kept = tuple(n for n in self.nodes if n.id in reachable)

        parameters: List[Node] = []
        seen_params = set()
        uses = [v.node for n in kept for v in n.operands] + [v.node for v in unique_outputs]
        for node in uses:
            if node.op is OpKind.DEVICE_DATA and node.id not in seen_params:
                seen_params.add(node.id)
                parameters.append(node)

        outputs_tuple = tuple(unique_outputs)
        finalized = FinalizedTrace(
            device=self.device,
            nodes=kept,
            outputs=outputs_tuple,
            parameters=tuple(parameters),
            signature=compute_signature(kept, outputs_tuple, parameters),
            generation=self.generation,
        )
        self.state = TraceState.FINALIZED
        logger.debug(
            f"Finalized trace gen={self.generation} on {self.device}: "
            f"{len(kept)}/{len(self.nodes)} nodes, {len(outputs_tuple)} outputs, "
            f"sig={finalized.signature[:12]}"
        )
        return finalized

    def reset(self) -> None:
        """Start a new, empty generation."""
        check_transition(self.state, TraceState.RECORDING)
        self.nodes = []
        self.tensors = {}
        self._node_ids = set()
        self._data_nodes = {}
        self._warned_length = False
        self.generation += 1
        self.state = TraceState.RECORDING

    def __repr__(self) -> str:
        return (f"Trace(device={self.device}, generation={self.generation}, "
                f"nodes={len(self.nodes)}, state={self.state.value})")


__all__ = [
    'TraceState',
    'Trace',
    'FinalizedTrace',
    'compute_signature',
    'check_transition',
]
