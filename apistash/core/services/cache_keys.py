"""Deterministic cache keys for API calls."""

import hashlib
import json
from typing import Any

from apistash.domain.models.common import CacheKey
from apistash.domain.models.request import ApiRequest


def _canonical(obj: Any) -> Any:
    """Type-tagged, order-independent form of ``obj`` for hashing.

    Containers, bytes and unknown objects are tagged so that values of
    different types never share a canonical form (``b"a"`` vs ``"a"``,
    ``{1: x}`` vs ``{"1": x}``).
    """
    if isinstance(obj, (bytes, bytearray)):
        return ["bytes", bytes(obj).hex()]
    if isinstance(obj, dict):
        pairs = [[_canonical(k), _canonical(v)] for k, v in obj.items()]
        pairs.sort(key=lambda pair: json.dumps(pair[0], sort_keys=True))
        return ["dict", pairs]
    if isinstance(obj, (list, tuple)):
        return ["list", [_canonical(v) for v in obj]]
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    return ["repr", repr(obj)]


def derive_cache_key(request: ApiRequest) -> CacheKey:
    """SHA-256 digest over the full call identity.

    Mapping keys are sorted, so structurally identical calls share a slot
    regardless of insertion order; list order is kept as given. Any change
    to url, method, params, headers or body yields a different key.
    """
    identity = {
        "url": request.url,
        "method": request.method.upper(),
        "params": _canonical(request.params),
        "headers": _canonical(request.headers),
        "body": _canonical(request.body),
    }
    key_string = json.dumps(identity, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return CacheKey(hashlib.sha256(key_string.encode("utf-8")).hexdigest())
