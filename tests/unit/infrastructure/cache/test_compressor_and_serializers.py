import gzip
import json
import pytest

from apistash.core.exceptions import ConfigurationError, StorageError
from apistash.infrastructure.cache.compressor import DataCompressor
from apistash.infrastructure.cache.serializers import (
    JsonRecordSerializer, PickleRecordSerializer, get_serializer
)


def test_compressed_output_is_gzip_and_reversible():
    compressor = DataCompressor()
    data = b"hello world " * 100
    packed = compressor.compress(data)
    assert packed[:2] == b"\x1f\x8b"
    assert len(packed) < len(data)
    assert gzip.decompress(packed) == data
    assert compressor.decompress(packed) == data


def test_decompress_garbage_raises_storage_error():
    with pytest.raises(StorageError):
        DataCompressor().decompress(b"definitely not gzip")


def test_invalid_compression_level_rejected():
    with pytest.raises(ValueError):
        DataCompressor(level=12)


def test_json_record_layout():
    raw = JsonRecordSerializer().dumps({"name": "John Doe"}, 1700000000.5)
    assert json.loads(raw) == {"data": {"name": "John Doe"}, "expires_at": 1700000000.5}


def test_json_record_preserves_bytes():
    serializer = JsonRecordSerializer()
    value, expires_at = serializer.loads(serializer.dumps({"body": b"\xff\x00"}, 10))
    assert value == {"body": b"\xff\x00"}
    assert expires_at == 10.0


@pytest.mark.parametrize("payload", [
    b"{not json",
    b'{"data": 1}',
    b'{"data": 1, "expires_at": "tomorrow"}',
    b'["data", "expires_at"]',
    b"\xff\xfe",
])
def test_json_corrupt_records_raise_storage_error(payload):
    with pytest.raises(StorageError):
        JsonRecordSerializer().loads(payload)


def test_pickle_corrupt_record_raises_storage_error():
    with pytest.raises(StorageError):
        PickleRecordSerializer().loads(b"not a pickle")


def test_get_serializer_by_name():
    assert isinstance(get_serializer("JSON"), JsonRecordSerializer)
    assert isinstance(get_serializer("pickle"), PickleRecordSerializer)
    with pytest.raises(ConfigurationError):
        get_serializer("msgpack")


@pytest.mark.parametrize("value", [
    {"__bytes__": "aGk="},
    {"__dict__": {"a": 1}},
    [{"__bytes__": "x", "other": 1}, b"raw", None, True, 1.5],
    {"nested": {"__bytes__": "aGk="}, "body": b"\x00"},
])
def test_json_record_loads_back_equal_value(value):
    serializer = JsonRecordSerializer()
    loaded, _ = serializer.loads(serializer.dumps(value, 10))
    assert loaded == value
    assert type(loaded) is type(value)


@pytest.mark.parametrize("value", [(1, 2), {1: "a"}, {"inner": {2.5: "b"}}, {1, 2}])
def test_json_record_rejects_values_it_would_change(value):
    with pytest.raises(StorageError):
        JsonRecordSerializer().dumps(value, 10)


def test_json_record_with_corrupt_bytes_raises_storage_error():
    raw = json.dumps({"data": {"__bytes__": "not base64!"}, "expires_at": 10}).encode()
    with pytest.raises(StorageError):
        JsonRecordSerializer().loads(raw)
