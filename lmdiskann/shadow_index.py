"""Graph index whose node blocks live in an SQLite shadow table."""

from __future__ import annotations

import math
import sqlite3
import struct
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Tuple

from .node import NodeBlock, NodeGeometry
from .params import (
    BLOCK_SIZE_DEFAULT,
    BLOCK_SIZE_SHIFT,
    FORMAT_DEFAULT,
    INSERT_L_DEFAULT,
    PRUNING_ALPHA_DEFAULT,
    SEARCH_L_DEFAULT,
    IndexParams,
    ParamId,
    prepare_create_params,
)
from .search import Candidate, SearchContext, prune_edges, replace_edge_index
from .vectors import MetricType, Vector, VectorType, vector_distance

SQL_RENDER_LIMIT = 128
MAX_KEY_COLUMNS = 16
KEY_COLUMN_PREFIX = "index_key"

_U64_MASK = 2**64 - 1
_I64_MAX = 2**63 - 1


class DiskAnnError(Exception):
    """Raised when an index operation fails."""


def _quote(identifier: str) -> str:
    return '"' + str(identifier).replace('"', '""') + '"'


def _table(schema: str, name: str) -> str:
    return f"{_quote(schema)}.{_quote(name + '_shadow')}"


def _signed(rowid: int) -> int:
    rowid &= _U64_MASK
    return rowid - 2**64 if rowid > _I64_MAX else rowid


def _f32(value: float) -> float:
    try:
        return struct.unpack("<f", struct.pack("<f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _key_names(count: int) -> List[str]:
    return [KEY_COLUMN_PREFIX if i == 0 else f"{KEY_COLUMN_PREFIX}{i}" for i in range(count)]


def _render(parts: Sequence[str]) -> str:
    text = ", ".join(parts)
    if len(text) >= SQL_RENDER_LIMIT:
        raise DiskAnnError(f"rendered key columns exceed {SQL_RENDER_LIMIT} bytes")
    return text


@contextmanager
def _sql_errors(message: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise DiskAnnError(f"{message}: {exc}") from exc


def create_index(
    connection: sqlite3.Connection,
    schema: str,
    name: str,
    key_columns: Sequence[str],
    params: IndexParams,
) -> IndexParams:
    """Create the shadow table for a new index and complete ``params``.

    ``key_columns`` holds the SQL type declaration of each primary key column
    of the base table. ``params`` is filled with defaults and returned.
    """
    declarations = [str(column).strip() for column in key_columns]
    if not 1 <= len(declarations) <= MAX_KEY_COLUMNS:
        raise DiskAnnError(f"an index needs between 1 and {MAX_KEY_COLUMNS} key columns")
    if not all(declarations):
        raise DiskAnnError("key column declarations must not be empty")
    names = _key_names(len(declarations))
    column_defs = _render([f"{n} {d}" for n, d in zip(names, declarations)])
    column_names = _render(names)

    try:
        # New indexes are always written in the current block format.
        if params.get_u64(ParamId.FORMAT) == 0:
            params.put_u64(ParamId.FORMAT, FORMAT_DEFAULT)
        prepare_create_params(params)
    except ValueError as exc:
        raise DiskAnnError(str(exc)) from exc

    table = _table(schema, name)
    if len(declarations) == 1 and declarations[0].upper() == "INTEGER":
        sql = (
            f"CREATE TABLE IF NOT EXISTS {table} "
            f"({column_defs}, data BLOB, PRIMARY KEY ({column_names}))"
        )
        rowid_column = KEY_COLUMN_PREFIX
    else:
        sql = (
            f"CREATE TABLE IF NOT EXISTS {table} "
            f"(rowid INTEGER PRIMARY KEY, {column_defs}, data BLOB, UNIQUE ({column_names}))"
        )
        rowid_column = "rowid"
    # Node blobs are large; an index over the rowid keeps random row selection cheap.
    index_sql = (
        f"CREATE INDEX IF NOT EXISTS {_quote(schema)}.{_quote(name + '_shadow_idx')} "
        f"ON {_quote(name + '_shadow')} ({rowid_column})"
    )
    with _sql_errors("vector index(create): failed to create shadow table"):
        connection.execute(sql)
        connection.execute(index_sql)
    return params


def clear_index(connection: sqlite3.Connection, schema: str, name: str) -> None:
    """Remove every node of the index."""
    with _sql_errors("vector index(clear): failed to clear shadow table"):
        connection.execute(f"DELETE FROM {_table(schema, name)}")


def drop_index(connection: sqlite3.Connection, schema: str, name: str) -> None:
    """Drop the index's shadow table."""
    with _sql_errors("vector index(drop): failed to drop shadow table"):
        connection.execute(f"DROP TABLE {_table(schema, name)}")


def open_index(
    connection: sqlite3.Connection, schema: str, name: str, params: IndexParams
) -> "DiskAnnIndex":
    """Open an existing index described by ``params``."""
    return DiskAnnIndex(connection, schema, name, params)


class DiskAnnIndex:
    """An opened index; its nodes are blocks in the ``<name>_shadow`` table."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        schema: str,
        name: str,
        params: IndexParams,
    ) -> None:
        block_size = params.get_u64(ParamId.BLOCK_SIZE)
        # Older indexes stored the block size divided by 512.
        if block_size <= BLOCK_SIZE_DEFAULT:
            block_size <<= BLOCK_SIZE_SHIFT
        raw_metric = params.get_u64(ParamId.METRIC_TYPE)
        raw_type = params.get_u64(ParamId.VECTOR_TYPE)
        dimensions = params.get_u64(ParamId.DIMENSIONS)
        if raw_metric == 0 or block_size == 0 or raw_type == 0 or dimensions == 0:
            raise DiskAnnError("vector index(open): required parameters are missing")

        self.connection = connection
        self.schema = schema
        self.name = name
        self.shadow = f"{name}_shadow"
        self._table = _table(schema, name)
        self.format_version = params.get_u64(ParamId.FORMAT)
        self.block_size = block_size
        self.dimensions = dimensions
        self.alpha = params.get_f64(ParamId.PRUNING_ALPHA) or PRUNING_ALPHA_DEFAULT
        self.insert_l = params.get_u64(ParamId.INSERT_L) or INSERT_L_DEFAULT
        self.search_l = params.get_u64(ParamId.SEARCH_L) or SEARCH_L_DEFAULT
        self.reads = 0
        self.writes = 0
        self._closed = False
        compress = params.get_u64(ParamId.COMPRESS_NEIGHBORS)
        try:
            self.metric = MetricType(raw_metric)
            self.node_vector_type = VectorType(raw_type)
            self.edge_vector_type = (
                self.node_vector_type if compress == 0 else VectorType(compress)
            )
            self.geometry = NodeGeometry(
                self.format_version,
                block_size,
                dimensions,
                self.node_vector_type,
                self.edge_vector_type,
            )
        except ValueError as exc:
            raise DiskAnnError(f"vector index(open): {exc}") from exc

        with _sql_errors("vector index(open): failed to read shadow table"):
            columns = [
                row[1]
                for row in connection.execute(
                    f"PRAGMA {_quote(schema)}.table_info({_quote(self.shadow)})"
                )
            ]
        if not columns:
            raise DiskAnnError(f"vector index(open): shadow table {self.shadow} does not exist")
        self.key_columns: Tuple[str, ...] = tuple(
            column for column in columns if column.startswith(KEY_COLUMN_PREFIX)
        )
        self.rowid_like = "rowid" not in columns

    def __enter__(self) -> "DiskAnnIndex":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the index; further operations raise ``DiskAnnError``."""
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise DiskAnnError("vector index is closed")

    def _check_vector(self, vector: Vector, operation: str) -> None:
        if vector.dims != self.dimensions:
            raise DiskAnnError(
                f"vector index({operation}): dimensions are different: "
                f"{vector.dims} != {self.dimensions}"
            )
        if vector.type is not self.node_vector_type:
            raise DiskAnnError(
                f"vector index({operation}): vector type differs from column type: "
                f"{int(vector.type)} != {int(self.node_vector_type)}"
            )

    def _check_keys(self, keys: Sequence) -> Tuple:
        keys = tuple(keys)
        if len(keys) != len(self.key_columns):
            raise DiskAnnError(
                f"expected {len(self.key_columns)} key values, got {len(keys)}"
            )
        return keys

    @property
    def _edge_query_type(self) -> Optional[VectorType]:
        if self.edge_vector_type is self.node_vector_type:
            return None
        return self.edge_vector_type

    def _distance(self, a: Vector, b: Vector) -> float:
        return _f32(vector_distance(self.metric, a, b))

    def _load(self, rowid: int) -> Optional[NodeBlock]:
        with _sql_errors("vector index: failed to read node block"):
            row = self.connection.execute(
                f"SELECT data FROM {self._table} WHERE rowid = ?", (_signed(rowid),)
            ).fetchone()
        if row is None:
            return None
        data = row[0]
        if not isinstance(data, (bytes, bytearray, memoryview)) or len(data) != self.block_size:
            raise DiskAnnError(f"vector index: node block {_signed(rowid)} is malformed")
        try:
            block = NodeBlock(self.geometry, data)
        except ValueError as exc:
            raise DiskAnnError(f"vector index: {exc}") from exc
        self.reads += 1
        return block

    def _flush(self, block: NodeBlock) -> None:
        with _sql_errors("vector index: failed to flush blob"):
            self.connection.execute(
                f"UPDATE {self._table} SET data = ? WHERE rowid = ?",
                (block.data, _signed(block.rowid)),
            )
        self.writes += 1

    def _random_rowid(self) -> Optional[int]:
        with _sql_errors("vector index: failed to select start node for search"):
            row = self.connection.execute(
                f"SELECT rowid FROM {self._table} LIMIT 1 OFFSET "
                f"ABS(RANDOM()) % MAX((SELECT COUNT(*) FROM {self._table}), 1)"
            ).fetchone()
        return None if row is None else row[0]

    def _search_internal(self, ctx: SearchContext, start_rowid: int) -> None:
        start_block = self._load(start_rowid)
        if start_block is None:
            raise DiskAnnError("vector index(search): failed to load new blob")
        start = Candidate(start_rowid & _U64_MASK, block=start_block if ctx.writable else None)
        ctx.insert_candidate(0, start, self._distance(ctx.query, start_block.vector()))
        reusable: Optional[NodeBlock] = None if ctx.writable else start_block

        while ctx.has_unvisited():
            index = ctx.closest_unvisited()
            candidate = ctx.candidates[index]
            distance = ctx.distances[index]
            block = candidate.block
            if block is None and reusable is not None and reusable.rowid == candidate.rowid:
                block = reusable
            if block is None:
                block = self._load(candidate.rowid)
                if block is None:
                    # Edges may still point at deleted nodes.
                    ctx.delete_candidate(index)
                    continue
                if ctx.writable:
                    candidate.block = block
                else:
                    reusable = block

            if ctx.approximate:
                distance = self._distance(block.vector(), ctx.query)
            ctx.mark_visited(candidate, distance)

            for edge in block.edges():
                if ctx.is_visited(edge.rowid) or ctx.has_candidate(edge.rowid):
                    continue
                edge_distance = self._distance(ctx.edge_query, edge.vector)
                position = ctx.insert_position(edge_distance)
                if position is None:
                    continue
                ctx.insert_candidate(position, Candidate(edge.rowid), edge_distance)

    def _row_keys(self, rowid: int) -> Tuple:
        if self.rowid_like:
            return (_signed(rowid),)
        names = _render(self.key_columns)
        with _sql_errors("vector index(search): failed to put result in the output row"):
            row = self.connection.execute(
                f"SELECT {names} FROM {self._table} WHERE rowid = ?", (_signed(rowid),)
            ).fetchone()
        if row is None:
            raise DiskAnnError("vector index(search): failed to put result in the output row")
        return tuple(row)

    def search(self, vector: Vector, k: int) -> List[Tuple]:
        """Return the keys of up to ``k`` nodes nearest to ``vector``, closest first."""
        self._check_open()
        if k < 0:
            raise DiskAnnError("vector index(search): k must be a non-negative integer")
        self._check_vector(vector, "search")
        start = self._random_rowid()
        if start is None:
            return []
        ctx = SearchContext(vector, self.search_l, k, self._edge_query_type, writable=False)
        self._search_internal(ctx, start)
        return [self._row_keys(candidate.rowid) for candidate in ctx.top_candidates[:k]]

    def _insert_shadow_row(self, keys: Tuple) -> int:
        names = _render(self.key_columns)
        placeholders = _render(["?"] * len(keys))
        with _sql_errors("vector index(insert): failed to insert shadow row"):
            cursor = self.connection.execute(
                f"INSERT INTO {self._table} ({names}, data) VALUES ({placeholders}, zeroblob(?))",
                (*keys, self.block_size),
            )
        return cursor.lastrowid

    def insert(self, vector: Vector, keys: Sequence) -> int:
        """Add a new node for ``vector`` under ``keys``; return its rowid."""
        self._check_open()
        self._check_vector(vector, "insert")
        keys = self._check_keys(keys)

        ctx = SearchContext(vector, self.insert_l, 1, self._edge_query_type, writable=True)
        # The start node must be chosen before the new row exists.
        start = self._random_rowid()
        if start is not None:
            # Searching first keeps stale edges that share the new rowid harmless.
            self._search_internal(ctx, start)

        new_rowid = self._insert_shadow_row(keys)
        block = NodeBlock.create(self.geometry, new_rowid, vector)
        edge_type = self.edge_vector_type

        if start is not None:
            for visited in ctx.visited:
                candidate_vector = visited.block.vector()
                index, node_to_new = replace_edge_index(
                    block, visited.rowid, candidate_vector, self.alpha, self.metric
                )
                if index is None:
                    continue
                block.replace_edge(
                    index, visited.rowid, node_to_new, candidate_vector.convert(edge_type)
                )
                prune_edges(block, index, self.alpha, self.metric)

            edge_vector = vector.convert(edge_type)
            for visited in ctx.visited:
                index, node_to_new = replace_edge_index(
                    visited.block, new_rowid, vector, self.alpha, self.metric
                )
                if index is None:
                    continue
                visited.block.replace_edge(index, new_rowid, node_to_new, edge_vector)
                prune_edges(visited.block, index, self.alpha, self.metric)
                self._flush(visited.block)

        self._flush(block)
        return new_rowid

    def delete(self, keys: Sequence) -> bool:
        """Remove the node stored under ``keys``; return False if there is none."""
        self._check_open()
        keys = self._check_keys(keys)
        if self.rowid_like and isinstance(keys[0], int) and not isinstance(keys[0], bool):
            rowid = keys[0]
        else:
            names = _render(self.key_columns)
            placeholders = _render(["?"] * len(keys))
            with _sql_errors("vector index(delete): failed to determined node id for deletion"):
                row = self.connection.execute(
                    f"SELECT rowid FROM {self._table} WHERE ({names}) = ({placeholders})",
                    keys,
                ).fetchone()
            if row is None:
                raise DiskAnnError("vector index(delete): failed to determined node id for deletion")
            rowid = row[0]

        node = self._load(rowid)
        if node is None:
            # Rows with NULL vectors were never indexed.
            return False
        for edge in node.edges():
            neighbour = self._load(edge.rowid)
            if neighbour is None:
                continue
            position = neighbour.find_edge(node.rowid)
            if position is None:
                continue
            neighbour.delete_edge(position)
            self._flush(neighbour)

        with _sql_errors("vector index(delete): failed to remove shadow row"):
            self.connection.execute(
                f"DELETE FROM {self._table} WHERE rowid = ?", (_signed(rowid),)
            )
        return True