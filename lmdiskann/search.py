"""Candidate bookkeeping for graph search and the edge selection rules."""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from typing import List, MutableSequence, Optional, Sequence, Tuple, TypeVar

from .node import NodeBlock
from .params import FORMAT_V1
from .vectors import MetricType, Vector, VectorType, vector_distance

_U64_MASK = 2**64 - 1

T = TypeVar("T")


def _f32(value: float) -> float:
    """Round a distance to single precision, as it is stored in node blocks."""
    try:
        return struct.unpack("<f", struct.pack("<f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _distance(metric: MetricType, a: Vector, b: Vector) -> float:
    return _f32(vector_distance(metric, a, b))


def insert_position(
    distances: Sequence[float], max_size: int, distance: float
) -> Optional[int]:
    """Position for ``distance`` in the ascending ``distances``.

    Returns the first position whose distance is strictly larger, the end of
    the sequence when it still has room, or None when the value does not fit.
    """
    for position, current in enumerate(distances):
        if distance < current:
            return position
    return len(distances) if len(distances) < max_size else None


def bounded_insert(
    items: MutableSequence[T], max_size: int, index: int, item: T
) -> Optional[T]:
    """Insert ``item`` at ``index`` keeping at most ``max_size`` items.

    When the sequence is already full its last item is dropped and returned;
    otherwise None is returned.
    """
    size = len(items)
    if max_size <= 0:
        raise ValueError("max_size must be positive")
    if size > max_size:
        raise ValueError(f"sequence holds {size} items, more than {max_size}")
    if not 0 <= index <= size or index >= max_size:
        raise IndexError(f"insert position {index} is out of range")
    evicted = items.pop() if size == max_size else None
    items.insert(index, item)
    return evicted


@dataclass(eq=False)
class Candidate:
    """A graph node met during search; ``block`` is loaded lazily."""

    rowid: int
    visited: bool = False
    block: Optional[NodeBlock] = None


class SearchContext:
    """State of one beam search over the graph.

    ``candidates`` is kept ordered by (possibly approximate) distance to the
    query; ``top_candidates`` holds the best visited nodes by exact distance.
    """

    def __init__(
        self,
        query: Vector,
        max_candidates: int,
        max_top_candidates: int,
        edge_type: Optional[VectorType] = None,
        writable: bool = False,
    ) -> None:
        if max_candidates <= 0:
            raise ValueError("max_candidates must be positive")
        if max_top_candidates < 0:
            raise ValueError("max_top_candidates must not be negative")
        self.query = query
        self.edge_query = query if edge_type is None else query.convert(edge_type)
        self.max_candidates = max_candidates
        self.max_top_candidates = max_top_candidates
        self.writable = writable
        self.candidates: List[Candidate] = []
        self.distances: List[float] = []
        self.top_candidates: List[Candidate] = []
        self.top_distances: List[float] = []
        self._visited: List[Candidate] = []
        self._visited_rowids: set = set()
        self._unvisited = 0

    @property
    def approximate(self) -> bool:
        """True when edge distances use a compressed form of the query."""
        return self.edge_query is not self.query

    @property
    def visited(self) -> Tuple[Candidate, ...]:
        """Visited candidates, the most recently visited first."""
        return tuple(reversed(self._visited))

    def is_visited(self, rowid: int) -> bool:
        """Whether the node ``rowid`` was already visited."""
        return rowid & _U64_MASK in self._visited_rowids

    def has_candidate(self, rowid: int) -> bool:
        """Whether the node ``rowid`` is in the candidate queue."""
        target = rowid & _U64_MASK
        return any(candidate.rowid & _U64_MASK == target for candidate in self.candidates)

    def insert_position(self, distance: float) -> Optional[int]:
        """Queue position for a candidate at ``distance``, or None to skip it."""
        return insert_position(self.distances, self.max_candidates, distance)

    def insert_candidate(self, index: int, candidate: Candidate, distance: float) -> None:
        """Put ``candidate`` in the queue at ``index``, dropping the worst if full."""
        evicted = bounded_insert(self.candidates, self.max_candidates, index, candidate)
        bounded_insert(self.distances, self.max_candidates, index, distance)
        if evicted is not None and not evicted.visited:
            self._unvisited -= 1
        self._unvisited += 1

    def delete_candidate(self, index: int) -> None:
        """Remove the unvisited candidate at ``index`` from the queue."""
        candidate = self.candidates[index]
        if candidate.visited:
            raise ValueError("cannot delete a visited candidate")
        del self.candidates[index]
        del self.distances[index]
        self._unvisited -= 1

    def mark_visited(self, candidate: Candidate, distance: float) -> None:
        """Mark ``candidate`` visited and rank it among the top candidates."""
        if candidate.visited:
            raise ValueError(f"node {candidate.rowid} is already visited")
        if self._unvisited <= 0:
            raise ValueError("there are no unvisited candidates")
        candidate.visited = True
        self._unvisited -= 1
        self._visited.append(candidate)
        self._visited_rowids.add(candidate.rowid & _U64_MASK)

        position = insert_position(self.top_distances, self.max_top_candidates, distance)
        if position is None:
            return
        bounded_insert(self.top_candidates, self.max_top_candidates, position, candidate)
        bounded_insert(self.top_distances, self.max_top_candidates, position, distance)

    def closest_unvisited(self) -> Optional[int]:
        """Queue position of the closest unvisited candidate, or None."""
        return next(
            (index for index, candidate in enumerate(self.candidates) if not candidate.visited),
            None,
        )

    def has_unvisited(self) -> bool:
        """Whether any queued candidate is still unvisited."""
        return self._unvisited > 0


def replace_edge_index(
    block: NodeBlock,
    new_rowid: int,
    new_vector: Vector,
    alpha: float,
    metric: MetricType,
) -> Tuple[Optional[int], float]:
    """Choose the slot of ``block`` for a new edge to ``new_rowid``.

    Returns ``(index, node_to_new)``. ``index`` is the slot to overwrite (the
    edge count when there is room), or None when an existing edge prunes the
    new one or no edge is worth replacing. An existing edge to the same rowid
    is always reused. ``node_to_new`` is the distance between the compressed
    node vector and the compressed new vector.
    """
    geometry = block.geometry
    edge_type = geometry.edge_vector_type
    node_edge = block.vector().convert(edge_type)
    new_edge = new_vector.convert(edge_type)
    node_to_new = _distance(metric, node_edge, new_edge)

    target = new_rowid & _U64_MASK
    replace: Optional[int] = None
    node_to_replace = 0.0
    count = block.edge_count()
    for index in reversed(range(count)):
        edge = block.edge(index)
        if edge.rowid == target:
            # Deletes can leave stale edges behind; reuse their slot.
            return index, node_to_new
        if geometry.format_version == FORMAT_V1 or edge.distance is None:
            node_to_edge = _distance(metric, node_edge, edge.vector)
        else:
            node_to_edge = edge.distance
        edge_to_new = _distance(metric, edge.vector, new_edge)
        if node_to_new > alpha * edge_to_new:
            return None, node_to_new
        if node_to_new < node_to_edge and (replace is None or node_to_replace < node_to_edge):
            node_to_replace = node_to_edge
            replace = index
    if count < geometry.max_edges():
        return count, node_to_new
    return replace, node_to_new


def prune_edges(
    block: NodeBlock, inserted_index: int, alpha: float, metric: MetricType
) -> int:
    """Drop the edges of ``block`` made redundant by the edge at ``inserted_index``.

    Returns the number of edges removed.
    """
    geometry = block.geometry
    hint = block.edge(inserted_index)
    node_edge = block.vector().convert(geometry.edge_vector_type)

    removed = 0
    index = 0
    count = block.edge_count()
    while index < count:
        edge = block.edge(index)
        if edge.rowid == hint.rowid:
            index += 1
            continue
        if geometry.format_version == FORMAT_V1 or edge.distance is None:
            node_to_edge = _distance(metric, node_edge, edge.vector)
        else:
            node_to_edge = edge.distance
        hint_to_edge = _distance(metric, hint.vector, edge.vector)
        if node_to_edge > alpha * hint_to_edge:
            block.delete_edge(index)
            count -= 1
            removed += 1
        else:
            index += 1
    return removed