"""Interface for performing a single HTTP exchange."""

import abc
from typing import Any, Dict, Optional

from ..models.common import RawPayload
from ..models.request import RequestBody


class Transport(abc.ABC):
    """Abstract Base Class for transports.

    A transport performs exactly one exchange. Retries, caching and rate
    limiting are the orchestrator's job.
    """

    @abc.abstractmethod
    async def send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        body: RequestBody = None,
    ) -> RawPayload:
        """Performs the exchange and returns the raw response body.

        Raises:
            TransportError: If the exchange fails for any reason.
        """
        pass
