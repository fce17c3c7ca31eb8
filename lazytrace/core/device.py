"""Device identity and caller-owned device lists."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Tuple, Union

import torch

from .exceptions import ConfigurationError, ConsistencyError

logger = logging.getLogger(__name__)


class DeviceType(Enum):
    CPU = "CPU"
    GPU = "GPU"
    TPU = "TPU"
    REMOTE_TPU = "REMOTE_TPU"


@dataclass(frozen=True)
class Device:
    """A device class plus ordinal, e.g. ``GPU:1``."""
    hw_type: DeviceType
    ordinal: int = 0

    def __post_init__(self):
        if self.ordinal < 0:
            raise ConfigurationError(f"Negative device ordinal: {self.ordinal}")

    @classmethod
    def parse(cls, spec: Union[str, "Device"]) -> "Device":
        """Parse ``"CPU:0"``, ``"gpu:1"`` or ``"tpu"`` into a Device."""
        if isinstance(spec, Device):
            return spec
        text = spec.strip()
        kind, _, ordinal = text.partition(":")
        try:
            hw_type = DeviceType(kind.upper())
        except ValueError:
            raise ConfigurationError(f"Unknown device type in '{spec}'") from None
        try:
            return cls(hw_type, int(ordinal) if ordinal else 0)
        except ValueError:
            raise ConfigurationError(f"Invalid device ordinal in '{spec}'") from None

    @property
    def torch_device(self) -> torch.device:
        """Torch device the reference backend uses for this device.

        TPU and REMOTE_TPU are emulated on the host.
        """
        if self.hw_type is DeviceType.GPU:
            return torch.device("cuda", self.ordinal)
        return torch.device("cpu")

    def __str__(self) -> str:
        return f"{self.hw_type.value}:{self.ordinal}"

    def __repr__(self) -> str:
        return f"Device({self})"


class DeviceList:
    """Ordered set of devices, owned by whoever created it.

    The owner must release it with :meth:`destroy` (or use it as a context
    manager). Any access after release raises ConsistencyError.
    """

    def __init__(self, devices: Iterable[Union[str, Device]] = ()):
        ordered = []
        seen = set()
        for device in devices:
            device = Device.parse(device)
            if device not in seen:
                seen.add(device)
                ordered.append(device)
        self._devices: Tuple[Device, ...] = tuple(ordered)
        self._destroyed = False

    @property
    def devices(self) -> Tuple[Device, ...]:
        self._check_alive()
        return self._devices

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        if self._destroyed:
            raise ConsistencyError("DeviceList destroyed twice")
        self._destroyed = True
        self._devices = ()

    def _check_alive(self) -> None:
        if self._destroyed:
            raise ConsistencyError("DeviceList used after destroy()")

    def __enter__(self) -> "DeviceList":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._destroyed:
            self.destroy()

    def __iter__(self) -> Iterator[Device]:
        return iter(self.devices)

    def __len__(self) -> int:
        return len(self.devices)

    def __getitem__(self, index: int) -> Device:
        return self.devices[index]

    def __contains__(self, device) -> bool:
        return Device.parse(device) in self.devices

    def __repr__(self) -> str:
        if self._destroyed:
            return "DeviceList(<destroyed>)"
        return f"DeviceList([{', '.join(str(d) for d in self._devices)}])"


def get_all_devices() -> DeviceList:
    """All devices known to the process. The caller owns the returned list."""
    from ..config import get_config

    configured = get_config().runtime.devices
    if configured:
        return DeviceList(configured)

    devices = [Device(DeviceType.CPU, 0)]
    if torch.cuda.is_available():
        devices.extend(Device(DeviceType.GPU, i) for i in range(torch.cuda.device_count()))
    logger.debug(f"Discovered devices: {[str(d) for d in devices]}")
    return DeviceList(devices)


def default_device() -> Device:
    from ..config import get_config

    return Device.parse(get_config().runtime.default_device)


def destroy_device_list(device_list: DeviceList) -> None:
    device_list.destroy()


__all__ = [
    'DeviceType',
    'Device',
    'DeviceList',
    'get_all_devices',
    'default_device',
    'destroy_device_list',
]
