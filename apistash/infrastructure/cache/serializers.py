"""Encoding of ``{value, expires_at}`` cache records to bytes.

Two encodings are available: ``json`` (portable, safe to share through an
external key-value service) and ``pickle`` (any picklable value, local
use only).
"""

import abc
import base64
import binascii
import json
import pickle
from typing import Any, Tuple

from apistash.core.exceptions import ConfigurationError, StorageError

_BYTES_TAG = "__bytes__"
_DICT_TAG = "__dict__"
_TAGS = (_BYTES_TAG, _DICT_TAG)


class RecordSerializer(abc.ABC):
    """Encodes and decodes one cache record."""

    name: str = "abstract"

    @abc.abstractmethod
    def dumps(self, value: Any, expires_at: float) -> bytes:
        """Raises StorageError if ``value`` cannot be encoded."""
        pass

    @abc.abstractmethod
    def loads(self, data: bytes) -> Tuple[Any, float]:
        """Returns ``(value, expires_at)``; raises StorageError on a corrupt record."""
        pass


def _to_json(value: Any) -> Any:
    """Converts ``value`` to plain JSON types so that loading gives back an equal value.

    Raises:
        StorageError: For values JSON would silently change (tuples, non-str
            dict keys) or cannot hold at all.
    """
    if value is None or isinstance(value, (str, int, float)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, list):
        return [_to_json(item) for item in value]
    if isinstance(value, dict):
        converted = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise StorageError(
                    f"JSON records need str dict keys, got {type(k).__name__}. Use the pickle serializer."
                )
            converted[k] = _to_json(v)
        # User dicts that look like a tag are wrapped so they load back verbatim
        if any(tag in converted for tag in _TAGS):
            return {_DICT_TAG: converted}
        return converted
    raise StorageError(
        f"Values of type {type(value).__name__} do not survive JSON records. Use the pickle serializer."
    )


def _from_json(value: Any) -> Any:
    if isinstance(value, list):
        return [_from_json(item) for item in value]
    if not isinstance(value, dict):
        return value
    if len(value) == 1 and _BYTES_TAG in value:
        return base64.b64decode(value[_BYTES_TAG], validate=True)
    if len(value) == 1 and isinstance(value.get(_DICT_TAG), dict):
        return {k: _from_json(v) for k, v in value[_DICT_TAG].items()}
    return {k: _from_json(v) for k, v in value.items()}


class JsonRecordSerializer(RecordSerializer):
    """JSON records; ``bytes`` values survive through a tagged base64 object.

    Only values that load back equal are accepted: None, str, int, float,
    bool, bytes, lists and dicts with str keys.
    """

    name = "json"

    def dumps(self, value: Any, expires_at: float) -> bytes:
        try:
            data = _to_json(value)
            return json.dumps({"data": data, "expires_at": expires_at}).encode("utf-8")
        except (RecursionError, ValueError) as e:
            raise StorageError(f"Failed to encode cache data: {e}") from e

    def loads(self, data: bytes) -> Tuple[Any, float]:
        try:
            record = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise StorageError(f"Corrupt cache record: {e}") from e
        value, expires_at = _validate_record(record)
        try:
            return _from_json(value), expires_at
        except (binascii.Error, TypeError) as e:
            raise StorageError(f"Corrupt bytes value in cache record: {e}") from e


class PickleRecordSerializer(RecordSerializer):
    """Pickled records. Only use with storage this process fully trusts."""

    name = "pickle"

    def dumps(self, value: Any, expires_at: float) -> bytes:
        try:
            return pickle.dumps({"data": value, "expires_at": expires_at})
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise StorageError(f"Failed to encode cache data: {e}") from e

    def loads(self, data: bytes) -> Tuple[Any, float]:
        try:
            record = pickle.loads(data)
        except (pickle.UnpicklingError, EOFError, AttributeError, ImportError,
                IndexError, TypeError, ValueError) as e:
            raise StorageError(f"Corrupt cache record: {e}") from e
        return _validate_record(record)


def _validate_record(record: Any) -> Tuple[Any, float]:
    if not isinstance(record, dict) or "expires_at" not in record or "data" not in record:
        raise StorageError("Corrupt cache record: missing 'data' or 'expires_at'.")
    expires_at = record["expires_at"]
    if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
        raise StorageError("Corrupt cache record: 'expires_at' is not a timestamp.")
    return record["data"], float(expires_at)


_SERIALIZERS = {
    JsonRecordSerializer.name: JsonRecordSerializer,
    PickleRecordSerializer.name: PickleRecordSerializer,
}


def get_serializer(name: str) -> RecordSerializer:
    """Returns a serializer by name ('json' or 'pickle')."""
    try:
        return _SERIALIZERS[name.lower()]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown cache serializer '{name}'. Expected one of: {', '.join(_SERIALIZERS)}"
        ) from None
