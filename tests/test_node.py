import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from lmdiskann.node import Edge, NodeBlock, NodeGeometry
from lmdiskann.params import (
    FORMAT_DEFAULT,
    FORMAT_V1,
    FORMAT_V2,
    edge_overhead,
    node_metadata_size,
    node_overhead,
)
from lmdiskann.vectors import Vector, VectorType


def _geometry(fmt=FORMAT_DEFAULT, block_size=256, edge_type=None):
    return NodeGeometry(fmt, block_size, 4, VectorType.FLOAT32, edge_type)


def _vec(*values):
    return Vector(VectorType.FLOAT32, values)


NODE_VECTOR = _vec(1.0, 2.0, 3.0, 4.0)


def test_max_edges_fills_block():
    geometry = _geometry()
    n = geometry.max_edges()
    node = node_overhead(FORMAT_DEFAULT, geometry.node_vector_size)
    edge = edge_overhead(FORMAT_DEFAULT, geometry.edge_vector_size)
    assert n > 0
    assert node + n * edge <= geometry.block_size < node + (n + 1) * edge


def test_edges_metadata_offset_within_block():
    geometry = _geometry()
    offset = geometry.edges_metadata_offset()
    assert offset + geometry.max_edges() * geometry.edge_metadata_size <= geometry.block_size
    assert offset == (
        geometry.node_metadata_size
        + geometry.node_vector_size
        + geometry.max_edges() * geometry.edge_vector_size
    )


def test_geometry_too_small_raises():
    with pytest.raises(ValueError):
        _geometry(block_size=40)


def test_edge_type_defaults_to_node_type():
    assert _geometry().edge_vector_type is VectorType.FLOAT32


def test_create_layout():
    geometry = _geometry()
    block = NodeBlock.create(geometry, 42, NODE_VECTOR)
    data = block.data
    assert len(data) == geometry.block_size
    assert data[:8] == (42).to_bytes(8, "little")
    start = node_metadata_size(FORMAT_DEFAULT)
    assert data[start : start + 16] == NODE_VECTOR.to_bytes()
    assert data[start + 16 :] == bytes(geometry.block_size - start - 16)
    assert block.rowid == 42
    assert block.edge_count() == 0
    assert block.vector() == NODE_VECTOR


def test_create_rejects_wrong_vector():
    with pytest.raises(ValueError):
        NodeBlock.create(_geometry(), 1, _vec(1.0, 2.0))
    with pytest.raises(ValueError):
        NodeBlock.create(_geometry(), 1, Vector(VectorType.INT8, (1, 2, 3, 4)))


def test_block_wrong_length_raises():
    with pytest.raises(ValueError):
        NodeBlock(_geometry(), bytes(10))


def test_append_and_read_edges():
    block = NodeBlock.create(_geometry(), 1, NODE_VECTOR)
    block.replace_edge(0, 10, 0.5, _vec(0.0, 1.0, 0.0, 1.0))
    block.replace_edge(1, 11, 1.25, _vec(2.0, 2.0, 2.0, 2.0))
    assert block.edge_count() == 2
    assert block.edge(0) == Edge(10, 0.5, _vec(0.0, 1.0, 0.0, 1.0))
    assert block.edge(1) == Edge(11, 1.25, _vec(2.0, 2.0, 2.0, 2.0))
    assert [edge.rowid for edge in block.edges()] == [10, 11]


def test_replace_existing_keeps_count():
    block = NodeBlock.create(_geometry(), 1, NODE_VECTOR)
    block.replace_edge(0, 10, 0.5, _vec(0.0, 1.0, 0.0, 1.0))
    block.replace_edge(0, 20, 1.25, _vec(1.0, 1.0, 1.0, 1.0))
    assert block.edge_count() == 1
    assert block.edge(0) == Edge(20, 1.25, _vec(1.0, 1.0, 1.0, 1.0))


def test_replace_gap_and_capacity_errors():
    geometry = _geometry()
    block = NodeBlock.create(geometry, 1, NODE_VECTOR)
    with pytest.raises(IndexError):
        block.replace_edge(1, 10, 0.5, NODE_VECTOR)
    for i in range(geometry.max_edges()):
        block.replace_edge(i, 100 + i, 0.5, NODE_VECTOR)
    assert block.edge_count() == geometry.max_edges()
    with pytest.raises(IndexError):
        block.replace_edge(geometry.max_edges(), 999, 0.5, NODE_VECTOR)


def test_replace_rejects_wrong_edge_type():
    block = NodeBlock.create(_geometry(), 1, NODE_VECTOR)
    with pytest.raises(ValueError):
        block.replace_edge(0, 10, 0.5, Vector(VectorType.INT8, (1, 2, 3, 4)))


def test_delete_edge_moves_last():
    block = NodeBlock.create(_geometry(), 1, NODE_VECTOR)
    for i, rowid in enumerate((10, 11, 12)):
        block.replace_edge(i, rowid, float(i), _vec(float(i), 0.0, 0.0, 0.0))
    block.delete_edge(0)
    assert block.edge_count() == 2
    assert block.edge(0) == Edge(12, 2.0, _vec(2.0, 0.0, 0.0, 0.0))
    assert block.edge(1).rowid == 11
    block.delete_edge(1)
    assert [edge.rowid for edge in block.edges()] == [12]


def test_delete_out_of_range():
    block = NodeBlock.create(_geometry(), 1, NODE_VECTOR)
    with pytest.raises(IndexError):
        block.delete_edge(0)
    with pytest.raises(IndexError):
        block.edge(0)


def test_find_edge():
    block = NodeBlock.create(_geometry(), 1, NODE_VECTOR)
    block.replace_edge(0, 10, 0.5, NODE_VECTOR)
    block.replace_edge(1, 11, 0.5, NODE_VECTOR)
    assert block.find_edge(11) == 1
    assert block.find_edge(10) == 0
    assert block.find_edge(99) is None


def test_truncate_edges():
    block = NodeBlock.create(_geometry(), 1, NODE_VECTOR)
    for i in range(3):
        block.replace_edge(i, 10 + i, 0.5, NODE_VECTOR)
    block.truncate_edges(1)
    assert block.edge_count() == 1
    assert block.find_edge(11) is None
    with pytest.raises(ValueError):
        block.truncate_edges(2)


def test_round_trip_through_bytes():
    geometry = _geometry()
    block = NodeBlock.create(geometry, 7, NODE_VECTOR)
    block.replace_edge(0, 10, 0.5, _vec(0.0, 1.0, 0.0, 1.0))
    copy = NodeBlock(geometry, block.data)
    assert copy.rowid == 7
    assert list(copy.edges()) == list(block.edges())
    assert copy.vector() == NODE_VECTOR


def test_format_v1_has_no_distance():
    geometry = _geometry(fmt=FORMAT_V1)
    block = NodeBlock.create(geometry, 1, NODE_VECTOR)
    block.replace_edge(0, 10, 0.5, NODE_VECTOR)
    assert block.edge(0).distance is None
    assert block.edge(0).rowid == 10


def test_format_v2_vector_offset():
    geometry = _geometry(fmt=FORMAT_V2)
    block = NodeBlock.create(geometry, 3, NODE_VECTOR)
    start = node_metadata_size(FORMAT_V2)
    assert block.data[start : start + 16] == NODE_VECTOR.to_bytes()
    block.replace_edge(0, 10, 0.5, NODE_VECTOR)
    assert block.data[8:10] == (1).to_bytes(2, "little")


def test_compressed_edges():
    geometry = _geometry(edge_type=VectorType.INT8)
    block = NodeBlock.create(geometry, 1, NODE_VECTOR)
    edge_vector = Vector(VectorType.INT8, (1, -2, 3, -4))
    block.replace_edge(0, 10, 0.5, edge_vector)
    assert block.edge(0).vector == edge_vector
    assert block.vector() == NODE_VECTOR


@settings(max_examples=50, deadline=None)
@given(st.lists(st.one_of(st.integers(1, 1000), st.just(None)), max_size=30))
def test_append_delete_matches_model(operations):
    geometry = _geometry()
    block = NodeBlock.create(geometry, 1, NODE_VECTOR)
    model = []
    for op in operations:
        if op is None:
            if model:
                block.delete_edge(0)
                model[0] = model[-1]
                model.pop()
        elif len(model) < geometry.max_edges():
            block.replace_edge(len(model), op, 1.0, NODE_VECTOR)
            model.append(op)
    assert [edge.rowid for edge in block.edges()] == model
    assert block.edge_count() == len(model)