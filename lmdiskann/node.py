"""Binary layout of a single graph node block.

A block holds, in order: the node rowid (u64), the edge count (u16, padded
to eight bytes from format 3 on), the node's full vector, ``max_edges``
slots of edge vectors, and then ``max_edges`` slots of edge metadata, each
``[u32 unused][f32 distance][u64 edge rowid]``. All integers are
little-endian.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator, Optional

from .params import (
    FORMAT_V1,
    edge_metadata_size,
    edge_overhead,
    node_metadata_size,
    node_overhead,
)
from .vectors import MAX_DIMENSIONS, Vector, VectorType, data_size

_U64_MASK = 2**64 - 1
_EDGE_COUNT_OFFSET = 8


@dataclass(frozen=True)
class NodeGeometry:
    """Sizes and offsets shared by every node block of one index."""

    format_version: int
    block_size: int
    dimensions: int
    node_vector_type: VectorType
    edge_vector_type: Optional[VectorType] = None

    def __post_init__(self) -> None:
        node_type = VectorType(self.node_vector_type)
        edge_type = node_type if self.edge_vector_type is None else VectorType(self.edge_vector_type)
        object.__setattr__(self, "node_vector_type", node_type)
        object.__setattr__(self, "edge_vector_type", edge_type)
        if not 1 <= self.dimensions <= MAX_DIMENSIONS:
            raise ValueError(f"dimensions must be between 1 and {MAX_DIMENSIONS}")
        if self.block_size <= 0:
            raise ValueError("block size must be positive")
        if self.max_edges() <= 0:
            raise ValueError(
                f"block size {self.block_size} is too small to hold a node with any edge"
            )

    @property
    def node_vector_size(self) -> int:
        return data_size(self.node_vector_type, self.dimensions)

    @property
    def edge_vector_size(self) -> int:
        return data_size(self.edge_vector_type, self.dimensions)

    @property
    def node_metadata_size(self) -> int:
        return node_metadata_size(self.format_version)

    @property
    def edge_metadata_size(self) -> int:
        return edge_metadata_size(self.format_version)

    def max_edges(self) -> int:
        """Number of edges that fit in one block."""
        free = self.block_size - node_overhead(self.format_version, self.node_vector_size)
        return free // edge_overhead(self.format_version, self.edge_vector_size)

    def edges_metadata_offset(self) -> int:
        """Offset of the first edge's metadata within a block."""
        return (
            self.node_metadata_size
            + self.node_vector_size
            + self.max_edges() * self.edge_vector_size
        )


@dataclass(frozen=True)
class Edge:
    """One outgoing edge of a node; ``distance`` is None in format 1."""

    rowid: int
    distance: Optional[float]
    vector: Vector


class NodeBlock:
    """A mutable node block backed by a byte buffer of the geometry's block size."""

    def __init__(self, geometry: NodeGeometry, data: bytes) -> None:
        buffer = bytearray(data)
        if len(buffer) != geometry.block_size:
            raise ValueError(
                f"block must be {geometry.block_size} bytes, got {len(buffer)}"
            )
        self.geometry = geometry
        self._buffer = buffer
        if self.edge_count() > geometry.max_edges():
            raise ValueError("block holds more edges than its geometry allows")

    @classmethod
    def create(cls, geometry: NodeGeometry, rowid: int, vector: Vector) -> "NodeBlock":
        """Return a zero-filled block for ``rowid`` holding ``vector`` and no edges."""
        _check_vector(vector, geometry.node_vector_type, geometry.dimensions)
        block = cls(geometry, bytes(geometry.block_size))
        struct.pack_into("<Q", block._buffer, 0, rowid & _U64_MASK)
        start = geometry.node_metadata_size
        block._buffer[start : start + geometry.node_vector_size] = vector.to_bytes()
        return block

    @property
    def rowid(self) -> int:
        """The node's own rowid, read as unsigned."""
        return struct.unpack_from("<Q", self._buffer, 0)[0]

    @property
    def data(self) -> bytes:
        """The block's current bytes."""
        return bytes(self._buffer)

    def vector(self) -> Vector:
        """The node's full vector."""
        geometry = self.geometry
        start = geometry.node_metadata_size
        return Vector.from_bytes(
            geometry.node_vector_type,
            geometry.dimensions,
            self._buffer[start : start + geometry.node_vector_size],
        )

    def edge_count(self) -> int:
        """Number of edges currently stored."""
        return struct.unpack_from("<H", self._buffer, _EDGE_COUNT_OFFSET)[0]

    def _set_edge_count(self, count: int) -> None:
        struct.pack_into("<H", self._buffer, _EDGE_COUNT_OFFSET, count)

    def _edge_vector_offset(self, index: int) -> int:
        geometry = self.geometry
        return (
            geometry.node_metadata_size
            + geometry.node_vector_size
            + index * geometry.edge_vector_size
        )

    def _edge_meta_offset(self, index: int) -> int:
        geometry = self.geometry
        return geometry.edges_metadata_offset() + index * geometry.edge_metadata_size

    def _edge_rowid(self, index: int) -> int:
        return struct.unpack_from("<Q", self._buffer, self._edge_meta_offset(index) + 8)[0]

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.edge_count():
            raise IndexError(f"edge index {index} is out of range")

    def edge(self, index: int) -> Edge:
        """Return the edge at ``index``."""
        self._check_index(index)
        geometry = self.geometry
        meta = self._edge_meta_offset(index)
        distance: Optional[float] = None
        if geometry.format_version != FORMAT_V1:
            distance = struct.unpack_from("<f", self._buffer, meta + 4)[0]
        start = self._edge_vector_offset(index)
        vector = Vector.from_bytes(
            geometry.edge_vector_type,
            geometry.dimensions,
            self._buffer[start : start + geometry.edge_vector_size],
        )
        return Edge(self._edge_rowid(index), distance, vector)

    def edges(self) -> Iterator[Edge]:
        """Yield the stored edges in slot order."""
        for index in range(self.edge_count()):
            yield self.edge(index)

    def find_edge(self, rowid: int) -> Optional[int]:
        """Return the slot of the edge pointing to ``rowid``, or None."""
        target = rowid & _U64_MASK
        for index in range(self.edge_count()):
            if self._edge_rowid(index) == target:
                return index
        return None

    def truncate_edges(self, count: int) -> None:
        """Keep only the first ``count`` edges."""
        if not 0 <= count <= self.edge_count():
            raise ValueError(f"cannot truncate to {count} edges")
        self._set_edge_count(count)

    def replace_edge(self, index: int, rowid: int, distance: float, vector: Vector) -> None:
        """Overwrite the edge at ``index``, or append when ``index`` equals the count."""
        geometry = self.geometry
        count = self.edge_count()
        if not 0 <= index < geometry.max_edges():
            raise IndexError(f"edge index {index} exceeds the block capacity")
        if index > count:
            raise IndexError(f"edge index {index} leaves a gap after {count} edges")
        _check_vector(vector, geometry.edge_vector_type, geometry.dimensions)
        try:
            packed_distance = struct.pack("<f", distance)
        except OverflowError:
            raise ValueError(f"distance {distance} does not fit in a float") from None

        start = self._edge_vector_offset(index)
        self._buffer[start : start + geometry.edge_vector_size] = vector.to_bytes()
        meta = self._edge_meta_offset(index)
        self._buffer[meta + 4 : meta + 8] = packed_distance
        struct.pack_into("<Q", self._buffer, meta + 8, rowid & _U64_MASK)
        if index == count:
            self._set_edge_count(count + 1)

    def delete_edge(self, index: int) -> None:
        """Remove the edge at ``index`` by moving the last edge into its slot."""
        self._check_index(index)
        geometry = self.geometry
        last = self.edge_count() - 1
        if index < last:
            vector_size = geometry.edge_vector_size
            meta_size = geometry.edge_metadata_size
            dst = self._edge_vector_offset(index)
            src = self._edge_vector_offset(last)
            self._buffer[dst : dst + vector_size] = self._buffer[src : src + vector_size]
            dst = self._edge_meta_offset(index)
            src = self._edge_meta_offset(last)
            self._buffer[dst : dst + meta_size] = self._buffer[src : src + meta_size]
        self._set_edge_count(last)


def _check_vector(vector: Vector, vector_type: VectorType, dimensions: int) -> None:
    if vector.type is not vector_type:
        raise ValueError(
            f"vector type differs: {vector.type.name} != {vector_type.name}"
        )
    if vector.dims != dimensions:
        raise ValueError(f"dimensions are different: {vector.dims} != {dimensions}")