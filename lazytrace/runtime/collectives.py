"""
Cross-replica reduction.

Replicas executing the same step meet at a Rendezvous keyed by
``(group, step, call)``; the last one to arrive sums the contributions in
group order and wakes the others. A replica that waits longer than the
collective timeout fails its execution with ExecutionError.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Hashable, Optional, Tuple

import torch

from ..core.device import Device
from ..core.exceptions import ExecutionError

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    group_size: int
    contributions: Dict[int, torch.Tensor] = field(default_factory=dict)
    result: Optional[torch.Tensor] = None
    readers: int = 0


class Rendezvous:
    """Meeting point shared by all device workers of one executor."""

    def __init__(self):
        self._cond = threading.Condition()
        self._slots: Dict[Hashable, _Slot] = {}

    def all_reduce_sum(self, key: Hashable, group_size: int, index: int,
                       tensor: torch.Tensor, timeout: Optional[float] = None) -> torch.Tensor:
        with self._cond:
            slot = self._slots.setdefault(key, _Slot(group_size))
            if index in slot.contributions:
                raise ExecutionError(f"Replica {index} contributed twice", {'key': key})
            slot.contributions[index] = tensor.detach().cpu()

            if len(slot.contributions) == group_size:
                total = slot.contributions[0].clone()
                for i in range(1, group_size):
                    total += slot.contributions[i]
                slot.result = total
                self._cond.notify_all()
            elif not self._cond.wait_for(lambda: slot.result is not None, timeout):
                if self._slots.get(key) is slot:
                    del self._slots[key]
                raise ExecutionError(
                    f"cross_replica_sum timed out after {timeout}s waiting for "
                    f"{group_size - len(slot.contributions)} replica(s)",
                    {'key': key, 'replica': index},
                )

            slot.readers += 1
            if slot.readers == group_size:
                del self._slots[key]
            return slot.result.to(tensor.device, copy=True)

    def pending(self) -> int:
        with self._cond:
            return len(self._slots)


class ReplicaContext:
    """Per-execution handle the lowered graph uses for collectives."""

    def __init__(self, group: Tuple[Device, ...], index: int, step: int,
                 rendezvous: Optional[Rendezvous] = None, timeout: Optional[float] = None):
        self.group = tuple(group)
        self.index = index
        self.step = step
        self.rendezvous = rendezvous
        self.timeout = timeout
        self._calls = 0

    @classmethod
    def local(cls, device: Device) -> "ReplicaContext":
        """Single-replica context: reductions are the identity."""
        return cls((device,), 0, 0)

    @property
    def group_size(self) -> int:
        return len(self.group)

    def all_reduce_sum(self, tensor: torch.Tensor) -> torch.Tensor:
        call = self._calls
        self._calls += 1
        if self.group_size == 1 or self.rendezvous is None:
            return tensor.clone()
        key = (tuple(str(d) for d in self.group), self.step, call)
        logger.debug(f"Replica {self.index} entering all-reduce {key}")
        return self.rendezvous.all_reduce_sum(key, self.group_size, self.index, tensor, self.timeout)

    def __repr__(self) -> str:
        return (f"ReplicaContext(group=[{', '.join(str(d) for d in self.group)}], "
                f"index={self.index}, step={self.step})")


__all__ = ['Rendezvous', 'ReplicaContext']
