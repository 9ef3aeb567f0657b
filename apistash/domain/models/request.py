"""Call identity of a single outbound API request."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

RequestBody = Union[str, bytes, None]


@dataclass(frozen=True)
class ApiRequest:
    """Everything that identifies one logical API call.

    Two requests with equal fields share a cache slot; any differing field
    (url, method, params, headers, body) yields a different one.
    ``use_cache`` and ``response_format`` control handling only and are not
    part of the identity.
    """
    url: str
    method: str = "GET"
    params: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: RequestBody = None
    use_cache: bool = True
    response_format: Optional[str] = None  # 'json', 'xml', 'html' or None for raw bytes

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiRequest":
        """Builds a request from a mapping as found in batch files.

        A mapping or list ``body`` is sent as JSON, with a JSON content type
        unless the entry sets one.

        Raises:
            ValueError: If ``url`` is missing or ``body`` has an unusable type.
        """
        if not data.get("url"):
            raise ValueError("Request entry is missing 'url'.")
        headers = {str(k): str(v) for k, v in (data.get("headers") or {}).items()}
        body = data.get("body")
        if isinstance(body, (dict, list)):
            try:
                body = json.dumps(body)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Request body is not JSON serializable: {e}") from e
            if not any(name.lower() == "content-type" for name in headers):
                headers["Content-Type"] = "application/json"
        elif body is not None and not isinstance(body, (str, bytes)):
            raise ValueError(f"Request body must be text, bytes, a mapping or a list, not {type(body).__name__}.")
        return cls(
            url=str(data["url"]),
            method=str(data.get("method", "GET")).upper(),
            params=dict(data.get("params") or {}),
            headers=headers,
            body=body,
            use_cache=bool(data.get("cache", True)),
            response_format=data.get("format"),
        )
