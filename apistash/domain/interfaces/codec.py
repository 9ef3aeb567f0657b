"""Interface for validating and parsing response payloads."""

import abc
from typing import Any, Optional

SUPPORTED_FORMATS = ("json", "xml", "html")


class PayloadCodec(abc.ABC):
    """Abstract Base Class for payload codecs."""

    @abc.abstractmethod
    def validate(self, data: bytes, fmt: str) -> bool:
        """Returns True if ``data`` is a well-formed document of format ``fmt``."""
        pass

    @abc.abstractmethod
    def parse(self, data: bytes, fmt: str) -> Optional[Any]:
        """Parses ``data`` as ``fmt``; returns None if it is not valid."""
        pass
