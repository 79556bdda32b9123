"""
Parsing of hook event payloads.

Payloads arrive as JSON on stdin, sometimes with terminal escape codes
mixed in. Missing or unusable fields fall back to defaults.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pdca_loop.logging import get_logger

logger = get_logger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*(\x07|\x1b\\)")

NESTED_KEYS = ("tool_input", "input")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def parse_payload(raw: str) -> Dict[str, Any]:
    """
    Decode a hook payload.

    Returns:
        The decoded object, or an empty dict when the payload is not a JSON object
    """
    cleaned = strip_ansi(raw or "").strip()
    if not cleaned:
        return {}
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Hook payload is not valid JSON", error=str(e))
        return {}
    if not isinstance(data, dict):
        logger.warning("Hook payload is not an object", kind=type(data).__name__)
        return {}
    return data


@dataclass
class EventPayload:
    """A decoded payload plus the raw text it came from."""

    data: Dict[str, Any]
    raw: str = ""
    max_field_length: int = 100_000

    @classmethod
    def from_raw(cls, raw: str, max_field_length: int = 100_000) -> "EventPayload":
        return cls(data=parse_payload(raw), raw=raw or "", max_field_length=max_field_length)

    def lookup(self, key: str) -> Any:
        """Find ``key`` at the top level, then inside nested tool input."""
        if key in self.data:
            return self.data[key]
        for nested in NESTED_KEYS:
            inner = self.data.get(nested)
            if isinstance(inner, dict) and key in inner:
                return inner[key]
        return None

    def get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get a string field.

        A value longer than the configured maximum, or equal to the whole raw
        payload, means extraction went wrong and counts as not extracted.
        """
        value = self.lookup(key)
        if value is None:
            return default
        if not isinstance(value, str):
            value = str(value)
        if len(value) > self.max_field_length:
            logger.warning("Field too long, using default", field=key, length=len(value))
            return default
        if self.raw and value.strip() == self.raw.strip():
            logger.warning("Field swallowed the whole payload, using default", field=key)
            return default
        return value

    def get_int(self, key: str, default: int) -> int:
        """
        Get an integer field.

        Whole-valued numbers are accepted in any JSON spelling (``5``,
        ``5.0``, ``"5"``, ``"5.0"``). Anything else falls back to ``default``.
        """
        value = self.lookup(key)
        if value is None or isinstance(value, bool):
            return default
        if isinstance(value, int):
            return value
        try:
            number = float(str(value).strip())
        except ValueError:
            number = None
        if number is None or not number.is_integer():
            logger.warning("Field is not an integer, using default", field=key)
            return default
        return int(number)
