"""
Host <-> device tensor marshalling.

Buffers are flat torch tensors plus a Shape whose minor-to-major layout fixes
the per-dimension strides. Copies between buffers with the same layout are a
single (optionally casting) copy; differing layouts go through a partitioned
strided copy fanned out on a small thread pool and joined before returning.

The tuning constants (minor-dimension scale, minimum elements per task and
the thread cap) come from CopyConfig and never change the copied bytes.
"""

from __future__ import annotations

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple, Union

import numpy as np
import psutil
import torch

from .device import Device, DeviceType
from .exceptions import ConsistencyError, UnsupportedTypeError
from .types import ElementType, Shape

if TYPE_CHECKING:
    from ..config import CopyConfig, TypeConfig
    from ..runtime.backend import Backend, DeviceData

logger = logging.getLogger(__name__)

HostData = Union[torch.Tensor, np.ndarray, Sequence, int, float, bool]


# ============================================================================
# STRIDES & BUFFERS
# ============================================================================

def compute_shape_strides(shape: Shape) -> Tuple[int, ...]:
    """Element strides of each dimension under the shape's layout."""
    strides = [0] * shape.rank
    stride = 1
    for dim in shape.minor_to_major:
        strides[dim] = stride
        stride *= shape.dimensions[dim]
    return tuple(strides)


def compute_array_strides(sizes: Sequence[int]) -> Tuple[int, ...]:
    """Row-major element strides for ``sizes``."""
    strides = [1] * len(sizes)
    for i in range(len(sizes) - 1, 0, -1):
        strides[i - 1] = strides[i] * sizes[i]
    return tuple(strides)


@dataclass
class TensorBuffer:
    """Flat typed storage laid out according to ``shape``."""
    shape: Shape
    data: torch.Tensor

    def __post_init__(self):
        if self.data.dim() != 1 or self.data.numel() != self.shape.element_count:
            raise ConsistencyError(
                f"Buffer of {self.data.numel()} elements does not hold {self.shape}",
                {'buffer_shape': tuple(self.data.shape)},
            )
        if self.data.dtype != self.shape.element_type.torch_dtype:
            raise ConsistencyError(
                f"Buffer dtype {self.data.dtype} does not match {self.shape.element_type.value}"
            )

    @classmethod
    def allocate(cls, shape: Shape, device: Union[str, torch.device] = "cpu") -> "TensorBuffer":
        data = torch.empty(shape.element_count, dtype=shape.element_type.torch_dtype, device=device)
        return cls(shape, data)

    @property
    def strides(self) -> Tuple[int, ...]:
        return compute_shape_strides(self.shape)

    @property
    def byte_length(self) -> int:
        return self.data.numel() * self.data.element_size()

    @property
    def data_ptr(self) -> int:
        return self.data.data_ptr()

    def view(self) -> torch.Tensor:
        """Logical (dimension-ordered) view over the flat storage."""
        return torch.as_strided(self.data, self.shape.dimensions, self.strides)


# ============================================================================
# COPY PLANNING
# ============================================================================

@dataclass
class CopyPartition:
    """Index box ``[base, limit)`` copied by one task."""
    base: List[int]
    limit: List[int]


def get_iteration_dimensions(shape: Shape, minor_dim_scale: int = 8) -> List[int]:
    """
    Dimension iteration order for a strided copy, innermost first.

    The most minor dimension is preferred unless another one is more than
    ``minor_dim_scale`` times larger.
    """
    iter_dims = list(shape.minor_to_major)
    if not iter_dims:
        return iter_dims
    index = 0
    scaled_dim_size = minor_dim_scale * shape.dimensions[iter_dims[0]]
    for i in range(1, len(iter_dims)):
        dim_size = shape.dimensions[iter_dims[i]]
        if dim_size > scaled_dim_size:
            index = i
            scaled_dim_size = dim_size
    iter_dims[0], iter_dims[index] = iter_dims[index], iter_dims[0]
    return iter_dims


def default_max_copy_parts() -> int:
    """Half of the logical cores, at least one."""
    return max((psutil.cpu_count(logical=True) or 1) // 2, 1)


def create_copy_partitions(dimensions: Sequence[int], strided_copy_dimension: int,
                           max_parts: Optional[int] = None,
                           min_thread_elements: int = 100000) -> List[CopyPartition]:
    """Split the largest non-strided dimension into contiguous ranges."""
    if max_parts is None:
        max_parts = default_max_copy_parts()
    max_dim = -1
    for i, size in enumerate(dimensions):
        if i != strided_copy_dimension and (max_dim < 0 or size > dimensions[max_dim]):
            max_dim = i
    if max_dim < 0:
        return [CopyPartition([0] * len(dimensions), list(dimensions))]

    num_elements = 1
    for size in dimensions:
        num_elements *= size
    max_dim_size = dimensions[max_dim]
    max_dim_unit_elements = num_elements // max_dim_size
    part_size = max(max(max_dim_size // max_parts, 1),
                    min_thread_elements // max_dim_unit_elements)

    parts = []
    csize = 0
    while csize < max_dim_size:
        n = min(part_size, max_dim_size - csize)
        part = CopyPartition([0] * len(dimensions), list(dimensions))
        part.base[max_dim] = csize
        part.limit[max_dim] = csize + n
        csize += n
        parts.append(part)
    return parts


# ============================================================================
# COPY KERNELS
# ============================================================================

def strided_copy(dest: torch.Tensor, dest_offset: int, dest_stride: int,
                 src: torch.Tensor, src_offset: int, src_stride: int, n: int) -> None:
    """Copy ``n`` elements between flat tensors, casting to ``dest.dtype``."""
    if n <= 0:
        return
    dest_end = dest_offset + (n - 1) * dest_stride + 1
    src_end = src_offset + (n - 1) * src_stride + 1
    dest[dest_offset:dest_end:dest_stride] = src[src_offset:src_end:src_stride].to(dest.dtype)


def _flat_offset(strides: Sequence[int], indices: Sequence[int]) -> int:
    return sum(i * s for i, s in zip(indices, strides))


def sliced_copy(dimensions: Sequence[int], src: torch.Tensor, src_strides: Sequence[int],
                dest: torch.Tensor, dest_strides: Sequence[int],
                iter_dims: Sequence[int], part: CopyPartition) -> None:
    """Copy one partition, one strided run along ``iter_dims[0]`` at a time."""
    indices = list(part.base)
    inner = iter_dims[0]
    inner_src_stride = src_strides[inner]
    inner_dest_stride = dest_strides[inner]
    n = 0
    while n < len(indices):
        strided_copy(dest, _flat_offset(dest_strides, indices), inner_dest_stride,
                     src, _flat_offset(src_strides, indices), inner_src_stride,
                     dimensions[inner])
        n = 1
        while n < len(indices):
            dim = iter_dims[n]
            indices[dim] += 1
            if indices[dim] < part.limit[dim]:
                break
            indices[dim] = part.base[dim]
            n += 1


def copy_tensors(src: torch.Tensor, src_shape: Shape, dest: torch.Tensor,
                 dest_shape: Shape, config: Optional["CopyConfig"] = None) -> None:
    """
    Copy ``src`` (laid out per ``src_shape``) into ``dest`` (per ``dest_shape``).

    Both tensors are flat. Element types are converted to ``dest.dtype``.
    """
    if not src_shape.same_dimensions(dest_shape):
        raise ConsistencyError(f"Copy between different dimensions: {src_shape} vs. {dest_shape}")
    total_elements = src_shape.element_count
    if dest.numel() != total_elements:
        raise ConsistencyError(
            f"Destination holds {dest.numel()} elements, {dest_shape} needs {total_elements}"
        )
    src = src.reshape(-1)

    if src_shape.minor_to_major == dest_shape.minor_to_major:
        dest.copy_(src)
        return
    if total_elements == 0:
        return

    if config is None:
        from ..config import get_config
        config = get_config().copy
    max_parts = config.max_copy_threads or default_max_copy_parts()

    src_strides = compute_shape_strides(src_shape)
    dest_strides = compute_shape_strides(dest_shape)
    iter_dims = get_iteration_dimensions(dest_shape, config.minor_dim_scale)
    parts = create_copy_partitions(
        dest_shape.dimensions, iter_dims[0], max_parts, config.min_thread_elements
    )
    logger.debug(
        f"Strided copy {src_shape} -> {dest_shape}: {len(parts)} partition(s), "
        f"iteration dims {iter_dims}"
    )

    def copy_part(part):
        sliced_copy(dest_shape.dimensions, src, src_strides, dest, dest_strides, iter_dims, part)

    if len(parts) == 1:
        copy_part(parts[0])
        return
    with ThreadPoolExecutor(max_workers=min(len(parts), max_parts),
                            thread_name_prefix="lazytrace-copy") as pool:
        futures = [pool.submit(copy_part, part) for part in parts]
        for future in futures:
            future.result()


# ============================================================================
# TYPE TABLES
# ============================================================================

_warned_downgrades = set()


def _warn_downgrade(source: ElementType, target: ElementType, reason: str) -> None:
    key = (source, target, reason)
    if key not in _warned_downgrades:
        _warned_downgrades.add(key)
        logger.warning(f"Using {target.value} for {source.value} values ({reason})")


def _type_config(config: Optional["TypeConfig"]) -> "TypeConfig":
    if config is None:
        from ..config import get_config
        config = get_config().types
    return config


def tensor_type_to_element_type(dtype: torch.dtype, device: Device) -> ElementType:
    """Element type a host tensor of ``dtype`` has when described for ``device``."""
    element_type = ElementType.from_torch(dtype)
    if element_type is ElementType.F64 and device.hw_type is DeviceType.TPU:
        return ElementType.F32
    return element_type


def device_element_type(element_type: ElementType, device: Device,
                        config: Optional["TypeConfig"] = None) -> ElementType:
    """Element type used on ``device`` to store ``element_type`` values."""
    config = _type_config(config)
    tpu = device.hw_type is DeviceType.TPU

    if element_type is ElementType.F64:
        if config.use_bf16:
            target, reason = ElementType.BF16, "bf16 mode"
        elif tpu:
            target, reason = ElementType.F32, "TPU"
        else:
            return element_type
    elif element_type is ElementType.F32:
        if not config.use_bf16:
            return element_type
        target, reason = ElementType.BF16, "bf16 mode"
    elif element_type in (ElementType.U8, ElementType.U16):
        if not tpu:
            return element_type
        target, reason = ElementType.U32, "TPU"
    elif element_type in (ElementType.S8, ElementType.S16):
        if not tpu:
            return element_type
        target, reason = ElementType.S32, "TPU"
    elif element_type is ElementType.S64:
        if not config.use_32bit_long:
            return element_type
        target, reason = ElementType.S32, "32-bit long mode"
    elif element_type is ElementType.U64:
        if not config.use_32bit_long:
            return element_type
        target, reason = ElementType.U32, "32-bit long mode"
    else:
        return element_type

    _warn_downgrade(element_type, target, reason)
    return target


_HOST_TYPES = {
    ElementType.PRED: torch.bool,
    ElementType.U8: torch.uint8,
    ElementType.S8: torch.int8,
    ElementType.S16: torch.int16,
    ElementType.U16: torch.int16,
    ElementType.S32: torch.int32,
    ElementType.U32: torch.int32,
    ElementType.S64: torch.int64,
    ElementType.U64: torch.int64,
    ElementType.F16: torch.float16,
    ElementType.F32: torch.float32,
    ElementType.F64: torch.float64,
}


def element_type_to_tensor_type(element_type: ElementType,
                                config: Optional["TypeConfig"] = None) -> torch.dtype:
    """Host tensor dtype used when reading back ``element_type`` data."""
    if element_type is ElementType.BF16:
        return torch.float32 if _type_config(config).use_bf16 else torch.bfloat16
    try:
        return _HOST_TYPES[element_type]
    except KeyError:
        raise UnsupportedTypeError(f"Element type not supported: {element_type}") from None


def make_device_shape(dimensions: Sequence[int], dtype: torch.dtype, device: Device,
                      minor_to_major: Optional[Sequence[int]] = None,
                      config: Optional["TypeConfig"] = None) -> Shape:
    """Shape a host tensor of ``dtype`` gets once uploaded to ``device``."""
    element_type = device_element_type(ElementType.from_torch(dtype), device, config)
    return Shape(
        tuple(dimensions),
        element_type,
        tuple(minor_to_major) if minor_to_major is not None else None,
    )


# ============================================================================
# HOST TENSORS
# ============================================================================

def as_host_tensor(data: HostData) -> torch.Tensor:
    """Accept torch tensors, numpy arrays and nested Python sequences."""
    if isinstance(data, torch.Tensor):
        return data.detach()
    if isinstance(data, np.ndarray):
        return torch.from_numpy(np.ascontiguousarray(data))
    return torch.tensor(data)


def populate_buffer(tensor: HostData, dest_shape: Shape, dest_buffer: torch.Tensor,
                    device: Optional[Device] = None,
                    config: Optional["CopyConfig"] = None) -> torch.Tensor:
    """Fill flat ``dest_buffer`` with ``tensor`` converted to ``dest_shape``."""
    tensor = as_host_tensor(tensor)
    if device is None:
        device = Device(DeviceType.CPU, 0)
    src_shape = Shape(tuple(tensor.shape), tensor_type_to_element_type(tensor.dtype, device))
    src = tensor.contiguous().reshape(-1)
    if src.device != dest_buffer.device:
        src = src.to(dest_buffer.device)
    copy_tensors(src, src_shape, dest_buffer, dest_shape, config)
    return dest_buffer


def make_tensor_from_buffer(buffer: TensorBuffer, dtype: Optional[torch.dtype] = None,
                            config: Optional["CopyConfig"] = None) -> torch.Tensor:
    """Host tensor (row-major, on the CPU) holding a copy of ``buffer``."""
    if dtype is None:
        dtype = element_type_to_tensor_type(buffer.shape.element_type)
    host_shape = Shape(buffer.shape.dimensions, ElementType.from_torch(dtype))
    dest = torch.empty(host_shape.element_count, dtype=dtype)
    copy_tensors(buffer.data.cpu(), buffer.shape, dest, host_shape, config)
    return dest.reshape(host_shape.dimensions)


def create_tensors_data(tensors: Sequence[HostData], devices: Sequence[Union[str, Device]],
                        backend: "Backend") -> List["DeviceData"]:
    """Upload ``tensors[i]`` to ``devices[i]`` in one batch."""
    if len(tensors) != len(devices):
        raise ConsistencyError(
            f"Got {len(tensors)} tensors for {len(devices)} devices"
        )
    result = []
    for data, device in zip(tensors, devices):
        device = Device.parse(device)
        tensor = as_host_tensor(data)
        shape = make_device_shape(tuple(tensor.shape), tensor.dtype, device)
        result.append(backend.transfer_to_device(tensor, shape, device))
    return result


def tensor_hash(tensor: HostData) -> str:
    """sha256 over the raw bytes of a contiguous copy of ``tensor``."""
    tensor = as_host_tensor(tensor).cpu().contiguous()
    raw = tensor.reshape(-1).view(torch.uint8).numpy().tobytes()
    return hashlib.sha256(raw).hexdigest()


__all__ = [
    'TensorBuffer',
    'CopyPartition',
    'compute_shape_strides',
    'compute_array_strides',
    'get_iteration_dimensions',
    'create_copy_partitions',
    'default_max_copy_parts',
    'strided_copy',
    'sliced_copy',
    'copy_tensors',
    'tensor_type_to_element_type',
    'device_element_type',
    'element_type_to_tensor_type',
    'make_device_shape',
    'as_host_tensor',
    'populate_buffer',
    'make_tensor_from_buffer',
    'create_tensors_data',
    'tensor_hash',
]
