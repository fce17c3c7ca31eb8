"""
Element types and shapes used by the IR, the lowering pass and marshalling.

A Shape carries dimensions, an element type and a minor-to-major layout. The
layout only matters for buffers (host or device); IR nodes always use the
default descending (row-major) layout.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Sequence, Tuple

import torch

from .exceptions import ShapeError, UnsupportedTypeError


class ElementType(Enum):
    """Primitive element types known to the type-mapping tables."""
    PRED = "pred"
    S8 = "s8"
    S16 = "s16"
    S32 = "s32"
    S64 = "s64"
    U8 = "u8"
    U16 = "u16"
    U32 = "u32"
    U64 = "u64"
    F16 = "f16"
    BF16 = "bf16"
    F32 = "f32"
    F64 = "f64"

    @property
    def is_predicate(self) -> bool:
        return self is ElementType.PRED

    @property
    def is_integral(self) -> bool:
        return self in _SIGNED or self in _UNSIGNED

    @property
    def is_unsigned(self) -> bool:
        return self in _UNSIGNED

    @property
    def is_floating(self) -> bool:
        return self in _FLOATING

    @property
    def itemsize(self) -> int:
        return _ITEMSIZE[self]

    @property
    def torch_dtype(self) -> torch.dtype:
        return _TO_TORCH[self]

    @classmethod
    def from_torch(cls, dtype: torch.dtype) -> "ElementType":
        try:
            return _FROM_TORCH[dtype]
        except KeyError:
            raise UnsupportedTypeError(
                f"Tensor type not supported: {dtype}", {'dtype': str(dtype)}
            ) from None


_SIGNED = frozenset({ElementType.S8, ElementType.S16, ElementType.S32, ElementType.S64})
_UNSIGNED = frozenset({ElementType.U8, ElementType.U16, ElementType.U32, ElementType.U64})
_FLOATING = frozenset({ElementType.F16, ElementType.BF16, ElementType.F32, ElementType.F64})

_ITEMSIZE = {
    ElementType.PRED: 1,
    ElementType.S8: 1,
    ElementType.U8: 1,
    ElementType.S16: 2,
    ElementType.U16: 2,
    ElementType.F16: 2,
    ElementType.BF16: 2,
    ElementType.S32: 4,
    ElementType.U32: 4,
    ElementType.F32: 4,
    ElementType.S64: 8,
    ElementType.U64: 8,
    ElementType.F64: 8,
}

_TO_TORCH = {
    ElementType.PRED: torch.bool,
    ElementType.S8: torch.int8,
    ElementType.S16: torch.int16,
    ElementType.S32: torch.int32,
    ElementType.S64: torch.int64,
    ElementType.U8: torch.uint8,
    ElementType.U16: torch.uint16,
    ElementType.U32: torch.uint32,
    ElementType.U64: torch.uint64,
    ElementType.F16: torch.float16,
    ElementType.BF16: torch.bfloat16,
    ElementType.F32: torch.float32,
    ElementType.F64: torch.float64,
}

_FROM_TORCH = {dtype: et for et, dtype in _TO_TORCH.items()}


def default_layout(rank: int) -> Tuple[int, ...]:
    """Descending minor-to-major layout (row-major)."""
    return tuple(range(rank - 1, -1, -1))


@dataclass(frozen=True)
class Shape:
    """Dimensions, element type and minor-to-major layout of an array."""
    dimensions: Tuple[int, ...]
    element_type: ElementType
    minor_to_major: Optional[Tuple[int, ...]] = field(default=None)

    def __post_init__(self):
        dims = tuple(int(d) for d in self.dimensions)
        if any(d < 0 for d in dims):
            raise ShapeError(f"Negative dimension in {dims}")
        object.__setattr__(self, 'dimensions', dims)

        if self.minor_to_major is None:
            layout = default_layout(len(dims))
        else:
            layout = tuple(int(d) for d in self.minor_to_major)
            if sorted(layout) != list(range(len(dims))):
                raise ShapeError(
                    f"Layout {layout} is not a permutation of the dimensions of {dims}"
                )
        object.__setattr__(self, 'minor_to_major', layout)

    @property
    def rank(self) -> int:
        return len(self.dimensions)

    @property
    def element_count(self) -> int:
        count = 1
        for d in self.dimensions:
            count *= d
        return count

    @property
    def byte_size(self) -> int:
        return self.element_count * self.element_type.itemsize

    @property
    def has_default_layout(self) -> bool:
        return self.minor_to_major == default_layout(self.rank)

    def with_layout(self, minor_to_major: Sequence[int]) -> "Shape":
        return replace(self, minor_to_major=tuple(minor_to_major))

    def with_element_type(self, element_type: ElementType) -> "Shape":
        return replace(self, element_type=element_type)

    def with_default_layout(self) -> "Shape":
        return replace(self, minor_to_major=None)

    def same_dimensions(self, other: "Shape") -> bool:
        return self.dimensions == other.dimensions

    def __str__(self) -> str:
        dims = ",".join(str(d) for d in self.dimensions)
        layout = ",".join(str(d) for d in self.minor_to_major)
        return f"{self.element_type.value}[{dims}]{{{layout}}}"


def make_shape(dimensions: Sequence[int], element_type: ElementType,
               minor_to_major: Optional[Sequence[int]] = None) -> Shape:
    return Shape(
        tuple(dimensions),
        element_type,
        tuple(minor_to_major) if minor_to_major is not None else None,
    )


__all__ = [
    'ElementType',
    'Shape',
    'default_layout',
    'make_shape',
]
