"""
json_preprocessor.py
Rewrites CVSS v4.0 enum values that older feed consumers cannot deserialize.

Only string values of object members whose name looks like a CVSS v4.0 field are
touched. Every other byte of the payload is preserved, and any payload that
cannot be parsed is returned unchanged.
"""

import io
import json
import logging
import re
import threading
from json.decoder import scanstring
from typing import Dict, List, Tuple, Union, BinaryIO

logger = logging.getLogger(__name__)

Payload = Union[str, bytes]

ENUM_FALLBACKS: Dict[str, str] = {
    "SAFETY": "HIGH",
    "UNKNOWN": "NONE",
}

FIELD_KEYWORDS = ("modified", "impact", "exploitability", "cia", "safety")

_WS = re.compile(r"[ \t\n\r]*")
_DECODER = json.JSONDecoder()


def is_cvss_v4_field(name: str) -> bool:
    """True when a member name is one whose enum values may need a fallback."""
    lowered = name.lower()
    if any(keyword in lowered for keyword in FIELD_KEYWORDS):
        return True
    return "cvss" in lowered and "v4" in lowered


class _Walker:
    """Walks JSON text and records (start, end, replacement) spans to rewrite."""

    def __init__(self, text: str, mappings: Dict[str, str]):
        self.text = text
        self.mappings = mappings
        self.edits: List[Tuple[int, int, str]] = []

    def skip_ws(self, pos: int) -> int:
        return _WS.match(self.text, pos).end()

    def parse_document(self) -> None:
        pos = self.skip_ws(0)
        pos = self.parse_value(pos)
        pos = self.skip_ws(pos)
        if pos != len(self.text):
            raise ValueError(f"Extra data at position {pos}")

    def parse_value(self, pos: int) -> int:
        ch = self.text[pos]
        if ch == "{":
            return self.parse_object(pos + 1)
        if ch == "[":
            return self.parse_array(pos + 1)
        if ch == '"':
            _, end = scanstring(self.text, pos + 1)
            return end
        _, end = _DECODER.raw_decode(self.text, pos)
        return end

    def parse_object(self, pos: int) -> int:
        text = self.text
        pos = self.skip_ws(pos)
        if text[pos] == "}":
            return pos + 1
        while True:
            if text[pos] != '"':
                raise ValueError(f"Expecting property name at position {pos}")
            name, pos = scanstring(text, pos + 1)
            pos = self.skip_ws(pos)
            if text[pos] != ":":
                raise ValueError(f"Expecting ':' at position {pos}")
            pos = self.skip_ws(pos + 1)

            if text[pos] == '"':
                value, end = scanstring(text, pos + 1)
                replacement = self.mappings.get(value)
                if replacement is not None and is_cvss_v4_field(name):
                    self.edits.append((pos, end, json.dumps(replacement)))
                    logger.debug(f"Replacing enum '{value}' -> '{replacement}' in field '{name}'")
                pos = end
            else:
                pos = self.parse_value(pos)

            pos = self.skip_ws(pos)
            if text[pos] == ",":
                pos = self.skip_ws(pos + 1)
                continue
            if text[pos] == "}":
                return pos + 1
            raise ValueError(f"Expecting ',' or '}}' at position {pos}")

    def parse_array(self, pos: int) -> int:
        text = self.text
        pos = self.skip_ws(pos)
        if text[pos] == "]":
            return pos + 1
        while True:
            pos = self.parse_value(pos)
            pos = self.skip_ws(pos)
            if text[pos] == ",":
                pos = self.skip_ws(pos + 1)
                continue
            if text[pos] == "]":
                return pos + 1
            raise ValueError(f"Expecting ',' or ']' at position {pos}")


class JsonPreprocessor:
    """Maps non-standard CVSS v4.0 enum values to values consumers accept."""

    def __init__(self, mappings: Dict[str, str] = None):
        self.mappings = dict(mappings or ENUM_FALLBACKS)
        self._markers = tuple(json.dumps(value) for value in self.mappings)
        self._lock = threading.Lock()
        self.stats = {"processed": 0, "modified": 0, "replacements": 0, "failures": 0}

    def _count(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self.stats[key] += amount

    def preprocess(self, payload: Payload) -> Payload:
        """
        Return the payload with problematic enum values replaced.

        The returned object has the same type as the input. When nothing needs
        rewriting, or the payload is not valid JSON, the input object itself
        is returned.
        """
        if not payload:
            return payload
        self._count("processed")

        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            logger.debug(f"Payload is not UTF-8, leaving untouched: {e}")
            self._count("failures")
            return payload

        if not any(marker in text for marker in self._markers):
            return payload

        walker = _Walker(text, self.mappings)
        try:
            walker.parse_document()
        except (ValueError, IndexError, RecursionError) as e:
            logger.debug(f"Payload is not valid JSON, leaving untouched: {e}")
            self._count("failures")
            return payload

        if not walker.edits:
            return payload

        pieces = []
        last = 0
        for start, end, replacement in walker.edits:
            pieces.append(text[last:start])
            pieces.append(replacement)
            last = end
        pieces.append(text[last:])
        result = "".join(pieces)

        self._count("modified")
        self._count("replacements", len(walker.edits))
        logger.info(f"Replaced {len(walker.edits)} CVSS v4.0 enum values in feed payload")

        if isinstance(payload, bytes):
            return result.encode("utf-8")
        return result

    def preprocess_stream(self, stream: BinaryIO) -> BinaryIO:
        """Read a binary stream fully and return a stream over the preprocessed bytes."""
        data = stream.read()
        return io.BytesIO(self.preprocess(data))

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.stats)


_default = JsonPreprocessor()


def preprocess(payload: Payload) -> Payload:
    """Preprocess a payload with the default enum mappings."""
    return _default.preprocess(payload)
