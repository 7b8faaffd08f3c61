"""Binary index parameters and the block layout sizes derived from them."""

from __future__ import annotations

import enum
import math
import struct
from typing import Dict, Iterator, Tuple

from .vectors import MAX_DIMENSIONS, MetricType, VectorType, data_size

PARAMS_BUFFER_SIZE = 128
_ENTRY_SIZE = 9
_U64_MAX = 2**64 - 1

FORMAT_V1 = 1
FORMAT_V2 = 2
FORMAT_DEFAULT = 3

INDEX_TYPE_DISKANN = 1

BLOCK_SIZE_DEFAULT = 128
BLOCK_SIZE_SHIFT = 9
MIN_BLOCK_SIZE = 256
MAX_BLOCK_SIZE = 134217728

PRUNING_ALPHA_DEFAULT = 1.2
INSERT_L_DEFAULT = 70
SEARCH_L_DEFAULT = 200


class ParamId(enum.IntEnum):
    """Tags of the parameters stored in an index's binary parameter blob."""

    FORMAT = 1
    INDEX_TYPE = 2
    VECTOR_TYPE = 3
    DIMENSIONS = 4
    METRIC_TYPE = 5
    BLOCK_SIZE = 6
    PRUNING_ALPHA = 7
    INSERT_L = 8
    SEARCH_L = 9
    MAX_NEIGHBORS = 10
    COMPRESS_NEIGHBORS = 11


def _check_tag(tag: int) -> int:
    tag = int(tag)
    if not 1 <= tag <= 255:
        raise ValueError(f"parameter tag {tag} is out of range")
    return tag


class IndexParams:
    """Tagged parameters, each a one-byte tag followed by eight value bytes.

    Absent parameters read as zero. The encoded form is limited to
    ``PARAMS_BUFFER_SIZE`` bytes.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, bytes] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tag: object) -> bool:
        return tag in self._entries

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IndexParams):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        items = ", ".join(
            f"{tag}={int.from_bytes(raw, 'little')}" for tag, raw in self._entries.items()
        )
        return f"IndexParams({items})"

    def _put(self, tag: int, raw: bytes) -> None:
        tag = _check_tag(tag)
        if tag not in self._entries and (len(self._entries) + 1) * _ENTRY_SIZE > PARAMS_BUFFER_SIZE:
            raise ValueError("index parameters exceed the buffer size")
        self._entries[tag] = raw

    def get_u64(self, tag: int) -> int:
        """Return the parameter as an unsigned integer, or 0 when absent."""
        raw = self._entries.get(int(tag))
        return 0 if raw is None else int.from_bytes(raw, "little")

    def get_f64(self, tag: int) -> float:
        """Return the parameter as a double, or 0.0 when absent."""
        raw = self._entries.get(int(tag))
        return 0.0 if raw is None else struct.unpack("<d", raw)[0]

    def put_u64(self, tag: int, value: int) -> "IndexParams":
        """Store an unsigned 64-bit integer under ``tag``."""
        value = int(value)
        if not 0 <= value <= _U64_MAX:
            raise ValueError(f"value {value} does not fit in an unsigned 64-bit integer")
        self._put(tag, value.to_bytes(8, "little"))
        return self

    def put_f64(self, tag: int, value: float) -> "IndexParams":
        """Store a 64-bit float under ``tag``."""
        self._put(tag, struct.pack("<d", float(value)))
        return self

    def to_bytes(self) -> bytes:
        """Encode the parameters in their binary form."""
        return b"".join(bytes([tag]) + raw for tag, raw in self._entries.items())

    @classmethod
    def from_bytes(cls, data: bytes) -> "IndexParams":
        """Decode parameters from their binary form."""
        data = bytes(data)
        if len(data) > PARAMS_BUFFER_SIZE:
            raise ValueError("index parameters exceed the buffer size")
        if len(data) % _ENTRY_SIZE:
            raise ValueError("index parameters are truncated")
        params = cls()
        for start in range(0, len(data), _ENTRY_SIZE):
            params._put(data[start], data[start + 1 : start + _ENTRY_SIZE])
        return params

    def items(self) -> Tuple[Tuple[int, int], ...]:
        """Return ``(tag, raw unsigned value)`` pairs in storage order."""
        return tuple((tag, int.from_bytes(raw, "little")) for tag, raw in self._entries.items())


def node_metadata_size(format_version: int) -> int:
    """Bytes of node metadata (rowid and edge count) at the start of a block."""
    return 8 + 2 if format_version <= FORMAT_V2 else 8 + 8


def edge_metadata_size(format_version: int) -> int:
    """Bytes of metadata (distance and rowid) stored for each edge."""
    return 8 + 8


def node_overhead(format_version: int, node_vector_size: int) -> int:
    """Bytes taken by a node's metadata and full vector."""
    return node_vector_size + node_metadata_size(format_version)


def edge_overhead(format_version: int, edge_vector_size: int) -> int:
    """Bytes taken by one edge's vector and metadata."""
    return edge_vector_size + edge_metadata_size(format_version)


def prepare_create_params(params: IndexParams) -> IndexParams:
    """Fill in defaults and the block size for a new index.

    ``params`` is updated in place and returned. Raises ``ValueError`` when
    the vector type or dimensions are missing, when 1-bit compression is
    requested with a non-cosine metric, or when the block would be too large.
    """
    params.put_u64(ParamId.INDEX_TYPE, INDEX_TYPE_DISKANN)

    raw_type = params.get_u64(ParamId.VECTOR_TYPE)
    if raw_type == 0:
        raise ValueError("vector type is not set")
    vector_type = VectorType(raw_type)

    dims = params.get_u64(ParamId.DIMENSIONS)
    if dims == 0:
        raise ValueError("vector dimensions are not set")
    if dims > MAX_DIMENSIONS:
        raise ValueError(f"vector dimensions must not exceed {MAX_DIMENSIONS}")

    metric = params.get_u64(ParamId.METRIC_TYPE)
    if metric == 0:
        metric = MetricType.COSINE
        params.put_u64(ParamId.METRIC_TYPE, metric)

    neighbours = params.get_u64(ParamId.COMPRESS_NEIGHBORS)
    if neighbours == VectorType.FLOAT1BIT and metric != MetricType.COSINE:
        raise ValueError("1-bit compression available only for cosine metric")
    edge_type = vector_type if neighbours == 0 else VectorType(neighbours)

    node_size = node_overhead(FORMAT_DEFAULT, data_size(vector_type, dims))
    edge_size = edge_overhead(FORMAT_DEFAULT, data_size(edge_type, dims))

    max_neighbors = params.get_u64(ParamId.MAX_NEIGHBORS)
    if max_neighbors == 0:
        # 3 * sqrt(D) gives good recall; cap the disk overhead at about 50x.
        max_neighbors = min(
            3 * (math.isqrt(dims) + 1),
            (50 * node_size) // edge_size + 1,
        )
    block_size = node_size + max_neighbors * edge_size
    if block_size > MAX_BLOCK_SIZE:
        raise ValueError(
            f"block size {block_size} exceeds the maximum of {MAX_BLOCK_SIZE} bytes"
        )
    params.put_u64(ParamId.BLOCK_SIZE, max(MIN_BLOCK_SIZE, block_size))

    if params.get_f64(ParamId.PRUNING_ALPHA) == 0:
        params.put_f64(ParamId.PRUNING_ALPHA, PRUNING_ALPHA_DEFAULT)
    if params.get_u64(ParamId.INSERT_L) == 0:
        params.put_u64(ParamId.INSERT_L, INSERT_L_DEFAULT)
    if params.get_u64(ParamId.SEARCH_L) == 0:
        params.put_u64(ParamId.SEARCH_L, SEARCH_L_DEFAULT)
    return params