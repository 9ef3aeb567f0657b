"""Transport implementation backed by httpx."""

import logging
import time
from typing import Any, Dict, Optional

import httpx

from apistash.core.exceptions import TransportError
from apistash.domain.interfaces.transport import Transport
from apistash.domain.models.common import RawPayload
from apistash.domain.models.request import RequestBody

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpTransport(Transport):
    """Performs one HTTP exchange per ``send`` with ``httpx.AsyncClient``.

    Args:
        timeout: Per-exchange timeout in seconds.
        client_factory: Builds the AsyncClient; tests inject one wired to
            ``httpx.MockTransport``.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, client_factory: Optional[Any] = None):
        self.timeout = timeout
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=self.timeout))
        logger.info(f"HttpTransport initialized with timeout={timeout}s")

    async def send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        body: RequestBody = None,
    ) -> RawPayload:
        start_time = time.perf_counter()
        try:
            async with self._client_factory() as client:
                response = await client.request(
                    method.upper(), url, params=params or None, headers=headers or None, content=body
                )
        except httpx.TimeoutException as e:
            raise TransportError(f"{method.upper()} {url} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method.upper()} {url} failed: {type(e).__name__}: {e}") from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"{method.upper()} {url} -> {response.status_code} in {latency_ms:.1f}ms")
        if response.status_code >= 400:
            raise TransportError(
                f"{method.upper()} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return RawPayload(response.content)
