# lmdiskann

An approximate nearest-neighbour index of the DiskANN / LM-DiskANN kind, kept
in SQLite. Each graph node is stored as one row of a shadow table named
`<index>_shadow`. The row holds a fixed-size blob with the node's rowid, its
full vector, the compressed vectors of its neighbours and the metadata of each
edge (distance and rowid). The package uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `lmdiskann.vectors`
  - `VectorType`: `FLOAT32`, `INT8`, `FLOAT16`, `FLOAT1BIT`.
  - `MetricType`: `COSINE`, `L2`, `IP`.
  - `Vector`: an immutable vector. It is encoded with `to_bytes` and decoded
    with `Vector.from_bytes(vector_type, dimensions, data)`. `convert` changes
    the element type. INT8 elements are read as `value / 128` and written by
    clamping to [-1, 1] and scaling by 127. FLOAT1BIT stores one sign bit per
    dimension.
  - `element_size`, `data_size`.
  - `l2_distance`: Euclidean distance.
  - `cosine_distance`: one minus the cosine similarity, NaN for a zero vector.
  - `vector_distance(metric, a, b)`: distance under `metric`. Inner product is
    returned negated, so lower is always closer.
- `lmdiskann.params`
  - `IndexParams`: the tagged binary parameter format. Each entry is one tag
    byte and eight value bytes, and the whole is at most 128 bytes. Use
    `get_u64`, `get_f64`, `put_u64`, `put_f64`, `to_bytes` and `from_bytes`.
    Absent parameters read as zero.
  - `ParamId`: the parameter tags.
  - Layout size helpers: `node_metadata_size`, `edge_metadata_size`,
    `node_overhead`, `edge_overhead`.
  - `prepare_create_params`: fills in the defaults: cosine metric, pruning
    alpha 1.2, insert L 70 and search L 200. It also derives the maximum
    neighbour count and the block size, which is at least 256 bytes and at most
    128 MiB.
- `lmdiskann.node`
  - `NodeGeometry`: block sizes and offsets (`max_edges`,
    `edges_metadata_offset`).
  - `NodeBlock`: a node blob that is edited in place, with `create`, `vector`,
    `edge_count`, `edge`, `edges`, `find_edge`, `truncate_edges`,
    `replace_edge` and `delete_edge`. `delete_edge` moves the last edge into
    the freed slot.
  - `Edge`: one edge read from a block.
- `lmdiskann.search`
  - `SearchContext` and `Candidate`: the bookkeeping of the beam search. The
    candidate queue is bounded and the top results are ranked.
  - `insert_position`, `bounded_insert`.
  - `replace_edge_index` and `prune_edges`: the alpha-based robust pruning
    rules.
- `lmdiskann.shadow_index`
  - `create_index`, `clear_index`, `drop_index`, `open_index`.
  - `DiskAnnIndex`, with `search`, `insert`, `delete` and `close`. It can also
    be used as a context manager.
  - Failures raise `DiskAnnError`.

## Example

```python
import sqlite3

from lmdiskann.params import IndexParams, ParamId
from lmdiskann.shadow_index import create_index, open_index
from lmdiskann.vectors import MetricType, Vector, VectorType

connection = sqlite3.connect(":memory:")

params = IndexParams()
params.put_u64(ParamId.VECTOR_TYPE, VectorType.FLOAT32)
params.put_u64(ParamId.DIMENSIONS, 3)
params.put_u64(ParamId.METRIC_TYPE, MetricType.L2)

# One primary key column, declared INTEGER: the key is used as the node rowid.
create_index(connection, "main", "items_idx", ["INTEGER"], params)

with open_index(connection, "main", "items_idx", params) as index:
    for key, values in enumerate([(0.0, 0.0, 1.0), (1.0, 0.0, 0.0), (0.0, 1.0, 0.0)], start=1):
        index.insert(Vector(VectorType.FLOAT32, values), (key,))
    print(index.search(Vector(VectorType.FLOAT32, (0.9, 0.1, 0.0)), 2))
```

### Keys and searches

`create_index` takes the SQL type declaration of each key column, from 1 to 16
of them. A single `INTEGER` key becomes the shadow table's primary key. Any
other key set gets its own `rowid` column and a `UNIQUE` constraint.

`search` returns a list of key tuples for the nearest rows, closest first. An
empty index returns an empty list.

### Inserting and deleting

`insert` returns the new node's rowid. `delete` removes the node and the
neighbours' edges that point back to it. It returns `False` when the node was
never indexed.

## What it does not do

- It is a library only. There is no command-line tool.
- It does not hook into SQL. There is no `CREATE INDEX ... USING` syntax and no
  table-valued search function; the caller runs the index operations and
  passes in vectors and keys.
- It never commits. Transactions on the `sqlite3` connection are left to the
  caller.
- Deleting a node does not repair the rest of the graph beyond the
  back-edges. Searches skip edges that point to deleted nodes.