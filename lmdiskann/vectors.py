"""Vector element types, their binary encodings and distance functions."""

from __future__ import annotations

import enum
import math
import operator
import struct
from dataclasses import dataclass
from typing import Callable, Dict, Sequence, Tuple

MAX_DIMENSIONS = 65536


class VectorType(enum.IntEnum):
    """Storage type of a vector's elements."""

    FLOAT32 = 1
    INT8 = 2
    FLOAT16 = 3
    FLOAT1BIT = 4


class MetricType(enum.IntEnum):
    """Distance function used to compare vectors."""

    COSINE = 1
    L2 = 2
    IP = 3


_ELEMENT_SIZES = {
    VectorType.FLOAT32: 4,
    VectorType.FLOAT16: 2,
    VectorType.INT8: 1,
}

_STRUCT_CODES = {
    VectorType.FLOAT32: "f",
    VectorType.FLOAT16: "e",
    VectorType.INT8: "b",
}


def element_size(vector_type: VectorType) -> int:
    """Return the number of bytes one element of ``vector_type`` occupies."""
    vector_type = VectorType(vector_type)
    try:
        return _ELEMENT_SIZES[vector_type]
    except KeyError:
        raise ValueError(
            f"{vector_type.name} elements do not occupy a whole number of bytes"
        ) from None


def data_size(vector_type: VectorType, dimensions: int) -> int:
    """Return the encoded size in bytes of a vector with ``dimensions`` elements."""
    vector_type = VectorType(vector_type)
    if dimensions < 0:
        raise ValueError("dimensions must not be negative")
    if vector_type is VectorType.FLOAT1BIT:
        return (dimensions + 7) // 8
    return element_size(vector_type) * dimensions


def _round_floats(code: str, values: Tuple[float, ...]) -> Tuple[float, ...]:
    fmt = f"<{len(values)}{code}"
    try:
        return struct.unpack(fmt, struct.pack(fmt, *values))
    except (OverflowError, struct.error) as exc:
        raise ValueError(f"values cannot be stored as {code!r} elements: {exc}") from None


def _normalise(vector_type: VectorType, values: Tuple) -> Tuple:
    if vector_type is VectorType.INT8:
        result = []
        for value in values:
            try:
                number = operator.index(value)
            except TypeError:
                raise ValueError(f"INT8 element {value!r} is not an integer") from None
            if not -128 <= number <= 127:
                raise ValueError(f"INT8 element {number} is out of range")
            result.append(number)
        return tuple(result)
    if vector_type is VectorType.FLOAT1BIT:
        if any(value not in (1, -1) for value in values):
            raise ValueError("FLOAT1BIT elements must be 1 or -1")
        return tuple(float(value) for value in values)
    return _round_floats(_STRUCT_CODES[vector_type], values)


def _to_float16(value: float) -> float:
    try:
        return struct.unpack("<e", struct.pack("<e", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


@dataclass(frozen=True)
class Vector:
    """An immutable vector of a given element type."""

    type: VectorType
    values: Tuple

    def __post_init__(self) -> None:
        vector_type = VectorType(self.type)
        values = tuple(self.values)
        if not 1 <= len(values) <= MAX_DIMENSIONS:
            raise ValueError(
                f"vector must have between 1 and {MAX_DIMENSIONS} dimensions"
            )
        object.__setattr__(self, "type", vector_type)
        object.__setattr__(self, "values", _normalise(vector_type, values))

    @property
    def dims(self) -> int:
        return len(self.values)

    def to_bytes(self) -> bytes:
        """Encode the vector in its little-endian binary form."""
        if self.type is VectorType.FLOAT1BIT:
            buffer = bytearray(data_size(self.type, self.dims))
            for position, value in enumerate(self.values):
                if value > 0:
                    buffer[position >> 3] |= 1 << (position & 7)
            return bytes(buffer)
        code = _STRUCT_CODES[self.type]
        return struct.pack(f"<{self.dims}{code}", *self.values)

    @classmethod
    def from_bytes(
        cls, vector_type: VectorType, dimensions: int, data: bytes
    ) -> "Vector":
        """Decode a vector of ``dimensions`` elements from ``data``."""
        vector_type = VectorType(vector_type)
        data = bytes(data)
        expected = data_size(vector_type, dimensions)
        if len(data) != expected:
            raise ValueError(
                f"expected {expected} bytes for {dimensions} {vector_type.name} "
                f"elements, got {len(data)}"
            )
        if vector_type is VectorType.FLOAT1BIT:
            values = tuple(
                1.0 if (data[i >> 3] >> (i & 7)) & 1 else -1.0
                for i in range(dimensions)
            )
        else:
            code = _STRUCT_CODES[vector_type]
            values = struct.unpack(f"<{dimensions}{code}", data)
        return cls(vector_type, values)

    def as_floats(self) -> Tuple[float, ...]:
        """Return the element values as floats used for distance computation."""
        if self.type is VectorType.INT8:
            return tuple(value / 128.0 for value in self.values)
        return tuple(float(value) for value in self.values)

    def convert(self, vector_type: VectorType) -> "Vector":
        """Return this vector converted to another element type."""
        vector_type = VectorType(vector_type)
        if vector_type is self.type:
            return self
        floats = self.as_floats()
        if vector_type is VectorType.FLOAT1BIT:
            values: Sequence = [1 if value > 0 else -1 for value in floats]
        elif vector_type is VectorType.INT8:
            values = [int(max(-1.0, min(1.0, value)) * 127.0) for value in floats]
        elif vector_type is VectorType.FLOAT16:
            values = [_to_float16(value) for value in floats]
        else:
            values = floats
        return Vector(vector_type, tuple(values))


def _float_pair(a: Vector, b: Vector) -> Tuple[Tuple[float, ...], Tuple[float, ...]]:
    if a.dims != b.dims:
        raise ValueError(f"dimensions are different: {a.dims} != {b.dims}")
    return a.as_floats(), b.as_floats()


def l2_distance(a: Vector, b: Vector) -> float:
    """Euclidean distance between two vectors."""
    x, y = _float_pair(a, b)
    return math.dist(x, y)


def cosine_distance(a: Vector, b: Vector) -> float:
    """One minus the cosine similarity; NaN when either vector has zero length."""
    x, y = _float_pair(a, b)
    dot = math.fsum(p * q for p, q in zip(x, y))
    norm_a = math.fsum(p * p for p in x)
    norm_b = math.fsum(q * q for q in y)
    if norm_a == 0.0 or norm_b == 0.0:
        return math.nan
    return 1.0 - dot / math.sqrt(norm_a * norm_b)


def _inner_product_distance(a: Vector, b: Vector) -> float:
    x, y = _float_pair(a, b)
    return -math.fsum(p * q for p, q in zip(x, y))


_DISTANCES: Dict[MetricType, Callable[[Vector, Vector], float]] = {
    MetricType.COSINE: cosine_distance,
    MetricType.L2: l2_distance,
    MetricType.IP: _inner_product_distance,
}


def vector_distance(metric: MetricType, a: Vector, b: Vector) -> float:
    """Distance between ``a`` and ``b`` under ``metric``; lower is closer."""
    return _DISTANCES[MetricType(metric)](a, b)