import pytest
from hypothesis import given
from hypothesis import strategies as st

from lmdiskann.params import (
    MAX_BLOCK_SIZE,
    MIN_BLOCK_SIZE,
    INSERT_L_DEFAULT,
    PRUNING_ALPHA_DEFAULT,
    SEARCH_L_DEFAULT,
    IndexParams,
    ParamId,
    edge_metadata_size,
    edge_overhead,
    node_metadata_size,
    node_overhead,
    prepare_create_params,
)
from lmdiskann.vectors import MetricType, VectorType, data_size


def _params(vector_type=VectorType.FLOAT32, dims=4, **extra):
    params = IndexParams()
    params.put_u64(ParamId.VECTOR_TYPE, vector_type)
    params.put_u64(ParamId.DIMENSIONS, dims)
    for name, value in extra.items():
        params.put_u64(ParamId[name], value)
    return params


def test_absent_parameters_read_as_zero():
    params = IndexParams()
    assert params.get_u64(ParamId.SEARCH_L) == 0
    assert params.get_f64(ParamId.PRUNING_ALPHA) == 0.0


def test_u64_wire_format():
    params = IndexParams().put_u64(ParamId.DIMENSIONS, 3)
    assert params.to_bytes() == bytes([4]) + (3).to_bytes(8, "little")


def test_put_replaces_existing_value():
    params = IndexParams().put_u64(ParamId.INSERT_L, 5).put_u64(ParamId.INSERT_L, 9)
    assert params.get_u64(ParamId.INSERT_L) == 9
    assert len(params) == 1


def test_buffer_limit_enforced():
    params = IndexParams()
    for tag in range(1, 15):
        params.put_u64(tag, tag)
    with pytest.raises(ValueError):
        params.put_u64(15, 1)
    assert len(params.to_bytes()) <= 128


def test_negative_and_oversized_values_rejected():
    with pytest.raises(ValueError):
        IndexParams().put_u64(ParamId.DIMENSIONS, -1)
    with pytest.raises(ValueError):
        IndexParams().put_u64(ParamId.DIMENSIONS, 2**64)


def test_truncated_bytes_rejected():
    with pytest.raises(ValueError):
        IndexParams.from_bytes(b"\x01\x02\x03")


@given(
    st.dictionaries(
        st.integers(min_value=1, max_value=255),
        st.integers(min_value=0, max_value=2**64 - 1),
        max_size=14,
    )
)
def test_u64_round_trip(values):
    params = IndexParams()
    for tag, value in values.items():
        params.put_u64(tag, value)
    decoded = IndexParams.from_bytes(params.to_bytes())
    assert decoded == params
    assert {tag: decoded.get_u64(tag) for tag in values} == values


@given(st.floats(allow_nan=False))
def test_f64_round_trip(value):
    params = IndexParams().put_f64(ParamId.PRUNING_ALPHA, value)
    decoded = IndexParams.from_bytes(params.to_bytes())
    assert decoded.get_f64(ParamId.PRUNING_ALPHA) == value


def test_metadata_sizes_by_format():
    assert node_metadata_size(1) == 10
    assert node_metadata_size(2) == 10
    assert node_metadata_size(3) == 16
    assert edge_metadata_size(1) == edge_metadata_size(3) == 16


def test_overheads_add_metadata():
    assert node_overhead(3, 100) - 100 == node_metadata_size(3)
    assert edge_overhead(1, 40) - 40 == edge_metadata_size(1)


def test_prepare_fills_defaults():
    params = prepare_create_params(_params())
    assert params.get_u64(ParamId.INDEX_TYPE) == 1
    assert params.get_u64(ParamId.METRIC_TYPE) == MetricType.COSINE
    assert params.get_f64(ParamId.PRUNING_ALPHA) == PRUNING_ALPHA_DEFAULT
    assert params.get_u64(ParamId.INSERT_L) == INSERT_L_DEFAULT
    assert params.get_u64(ParamId.SEARCH_L) == SEARCH_L_DEFAULT
    assert params.get_u64(ParamId.BLOCK_SIZE) >= MIN_BLOCK_SIZE


def test_prepare_keeps_given_values():
    params = _params(METRIC_TYPE=MetricType.L2, INSERT_L=11, SEARCH_L=22)
    params.put_f64(ParamId.PRUNING_ALPHA, 1.5)
    prepare_create_params(params)
    assert params.get_u64(ParamId.METRIC_TYPE) == MetricType.L2
    assert params.get_f64(ParamId.PRUNING_ALPHA) == 1.5
    assert params.get_u64(ParamId.INSERT_L) == 11
    assert params.get_u64(ParamId.SEARCH_L) == 22


def test_prepare_block_size_from_explicit_neighbors():
    params = prepare_create_params(_params(dims=64, MAX_NEIGHBORS=100))
    vector_size = data_size(VectorType.FLOAT32, 64)
    expected = node_overhead(3, vector_size) + 100 * edge_overhead(3, vector_size)
    assert params.get_u64(ParamId.BLOCK_SIZE) == expected


def test_prepare_compressed_edges_shrink_block():
    plain = prepare_create_params(_params(dims=256, MAX_NEIGHBORS=50))
    packed = prepare_create_params(
        _params(dims=256, MAX_NEIGHBORS=50, COMPRESS_NEIGHBORS=VectorType.FLOAT1BIT)
    )
    assert packed.get_u64(ParamId.BLOCK_SIZE) < plain.get_u64(ParamId.BLOCK_SIZE)


def test_prepare_requires_type_and_dimensions():
    params = IndexParams().put_u64(ParamId.DIMENSIONS, 4)
    with pytest.raises(ValueError):
        prepare_create_params(params)
    params = IndexParams().put_u64(ParamId.VECTOR_TYPE, VectorType.FLOAT32)
    with pytest.raises(ValueError):
        prepare_create_params(params)


def test_prepare_rejects_1bit_without_cosine():
    params = _params(METRIC_TYPE=MetricType.L2, COMPRESS_NEIGHBORS=VectorType.FLOAT1BIT)
    with pytest.raises(ValueError, match="cosine"):
        prepare_create_params(params)


def test_prepare_rejects_oversized_block():
    params = _params(dims=65536, MAX_NEIGHBORS=1000)
    with pytest.raises(ValueError):
        prepare_create_params(params)
    assert MAX_BLOCK_SIZE == 134217728