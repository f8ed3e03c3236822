from __future__ import annotations

import json
import logging
import re
from typing import Any

from itinerary_stream.errors import MalformedOutput


logger = logging.getLogger("itinerary-stream")

DEFAULT_PREFIX_CHARS = 1000

_FENCE_OPEN = re.compile(r"^```[A-Za-z]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?```$")

# The model sometimes drops the comma between members that sit on separate lines.
# The third item is the offset of the first character that must lie outside a
# string literal for the match to count.
_MISSING_COMMAS = [
    (re.compile(r'"\s*\n\s*"'), '",\n"', 1),
    (re.compile(r'}\s*\n\s*"'), '},\n"', 0),
    (re.compile(r']\s*\n\s*"'), '],\n"', 0),
    (re.compile(r'}\s*\n\s*{'), '},\n{', 0),
]
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def strip_code_fence(content: str) -> str:
    cleaned = content.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
        cleaned = _FENCE_CLOSE.sub("", cleaned, count=1)
    return cleaned.strip()


def _string_mask(content: str) -> list[bool]:
    """Per index, whether the character sits inside a string literal (closing quote included)."""
    mask = []
    in_string = False
    escape = False
    for ch in content:
        mask.append(in_string)
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
    return mask


def _sub_outside_strings(pattern: re.Pattern, replacement: str, content: str, anchor: int = 0) -> str:
    inside = _string_mask(content)

    def _replace(match: re.Match) -> str:
        if inside[match.start() + anchor]:
            return match.group(0)
        return match.expand(replacement)

    return pattern.sub(_replace, content)


def insert_missing_commas(content: str) -> str:
    for pattern, replacement, anchor in _MISSING_COMMAS:
        content = _sub_outside_strings(pattern, replacement, content, anchor)
    return content


def strip_trailing_commas(content: str) -> str:
    return _sub_outside_strings(_TRAILING_COMMA, r"\1", content)


def close_open_structures(content: str) -> str:
    """Append the closers needed to balance every ``{``/``[`` left open.

    Brackets inside string literals are not counted. An unterminated string
    is closed first so the appended closers are not swallowed by it.
    """
    stack: list[str] = []
    in_string = False
    escape = False
    for ch in content:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()

    if in_string:
        if escape:
            content = content[:-1]
        content += '"'
    return content + "".join("}" if opener == "{" else "]" for opener in reversed(stack))


def repair_json_text(content: str, truncated: bool) -> str:
    cleaned = insert_missing_commas(strip_code_fence(content))
    if truncated:
        cleaned = close_open_structures(cleaned)
        logger.info("repair: attempted to complete truncated JSON")
    return strip_trailing_commas(cleaned)


def parse_itinerary_response(
    content: str,
    truncated: bool,
    prefix_chars: int = DEFAULT_PREFIX_CHARS,
) -> dict[str, Any]:
    """Repair and parse one buffered completion; raises ``MalformedOutput``."""
    repaired = repair_json_text(content, truncated)
    try:
        document = json.loads(repaired)
    except json.JSONDecodeError as exc:
        logger.error(
            "repair: parse failed truncated=%s length=%s ending=%r: %s",
            truncated,
            len(content),
            content[-200:],
            exc,
        )
        raise MalformedOutput(truncated=truncated, raw_prefix=content[:prefix_chars]) from exc

    if not isinstance(document, dict):
        raise MalformedOutput(truncated=truncated, raw_prefix=content[:prefix_chars])
    return document
