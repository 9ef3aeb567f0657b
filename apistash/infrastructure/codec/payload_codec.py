"""Validation and parsing of JSON, XML and HTML response bodies."""

import json
import logging
import xml.etree.ElementTree as ET
from html.parser import HTMLParser
from typing import Any, Optional, Tuple

from apistash.core.exceptions import ConfigurationError
from apistash.domain.interfaces.codec import SUPPORTED_FORMATS, PayloadCodec

logger = logging.getLogger(__name__)


class _TagCounter(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.tags = 0

    def handle_starttag(self, tag: str, attrs: Any) -> None:
        self.tags += 1


class DefaultPayloadCodec(PayloadCodec):
    """Standard-library codec.

    json returns the decoded object, xml the root ``Element``, html the
    decoded text (valid when it contains at least one element tag).
    """

    def _check_format(self, fmt: str) -> str:
        fmt = fmt.lower()
        if fmt not in SUPPORTED_FORMATS:
            raise ConfigurationError(
                f"Unsupported payload format '{fmt}'. Expected one of: {', '.join(SUPPORTED_FORMATS)}"
            )
        return fmt

    def validate(self, data: bytes, fmt: str) -> bool:
        return self._parse(data, fmt)[0]

    def parse(self, data: bytes, fmt: str) -> Optional[Any]:
        return self._parse(data, fmt)[1]

    def _parse(self, data: bytes, fmt: str) -> Tuple[bool, Optional[Any]]:
        # JSON "null" is valid yet parses to None, hence the explicit flag
        fmt = self._check_format(fmt)
        try:
            text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else str(data)
        except UnicodeDecodeError:
            logger.debug(f"Payload is not valid UTF-8; cannot parse as {fmt}.")
            return False, None

        if fmt == "json":
            try:
                return True, json.loads(text)
            except ValueError:
                return False, None
        if fmt == "xml":
            try:
                return True, ET.fromstring(text)
            except ET.ParseError:
                return False, None

        counter = _TagCounter()
        counter.feed(text)
        counter.close()
        return (True, text) if counter.tags else (False, None)
