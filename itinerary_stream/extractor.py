"""Incremental extraction of itinerary sections from a partial JSON document.

The LLM writes one JSON object token by token. ``SectionExtractor`` keeps the
text seen so far and, on every poll, reports the sections that became
complete since the previous poll: the ``summary`` and ``destination`` scalar
fields and each day-plan object. Every section is reported at most once.

Day objects are found from their ``"day": N`` key. Each match starts its own
depth-tracked scan at the enclosing ``{`` with fresh string/escape state, so
one malformed day cannot hide the days after it. Scans are resumable: a poll
only walks the text appended since the previous one. A day's span is parsed
on its own as soon as its closing brace arrives.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from itinerary_stream.schemas import DayEvent, DestinationEvent, SectionEvent, SummaryEvent


logger = logging.getLogger("itinerary-stream")

_STRING_FIELDS = {
    "summary": (re.compile(r'"summary"\s*:\s*"((?:[^"\\]|\\.)*)"'), SummaryEvent),
    "destination": (re.compile(r'"destination"\s*:\s*"((?:[^"\\]|\\.)*)"'), DestinationEvent),
}

_DAY_KEY = re.compile(r'"day"\s*:\s*\d+')


@dataclass
class _DayScan:
    start: int
    pos: int
    depth: int = 0
    in_string: bool = False
    escape: bool = False


def _decode_json_string(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        return raw


def _enclosing_brace(buf: str, index: int) -> int:
    """Index of the ``{`` that opens the object holding ``buf[index]``, or -1."""
    depth = 0
    for i in range(index - 1, -1, -1):
        ch = buf[i]
        if ch in "}]":
            depth += 1
        elif ch in "{[":
            if depth == 0:
                return i if ch == "{" else -1
            depth -= 1
    return -1


def day_key(day_number: int) -> str:
    return f"day-{day_number}"


class SectionExtractor:
    def __init__(self) -> None:
        self._buffer = ""
        self._emitted: set[str] = set()
        self._key_pos = 0
        self._scans: dict[int, _DayScan] = {}

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def emitted_keys(self) -> frozenset[str]:
        return frozenset(self._emitted)

    def add_chunk(self, text: str) -> None:
        self._buffer += text

    def poll_completed_sections(self) -> list[SectionEvent]:
        found: list[tuple[int, SectionEvent]] = []

        for key, (pattern, event_cls) in _STRING_FIELDS.items():
            if key in self._emitted:
                continue
            match = pattern.search(self._buffer)
            if match is None:
                continue
            self._emitted.add(key)
            found.append((match.end(), event_cls(data=_decode_json_string(match.group(1)))))

        for end, number, payload in self._scan_days():
            key = day_key(number)
            if key in self._emitted:
                logger.debug("extractor: ignoring repeated day=%s", number)
                continue
            self._emitted.add(key)
            found.append((end, DayEvent(day_number=number, data=payload)))

        found.sort(key=lambda item: item[0])
        return [event for _, event in found]

    def _find_day_keys(self) -> None:
        buf = self._buffer
        for match in _DAY_KEY.finditer(buf, self._key_pos):
            if match.end() == len(buf):
                # more digits may still arrive
                self._key_pos = match.start()
                return
            start = _enclosing_brace(buf, match.start())
            if start >= 0 and start not in self._scans:
                self._scans[start] = _DayScan(start=start, pos=start)
        self._key_pos = len(buf)

    def _scan_days(self) -> list[tuple[int, int, dict[str, Any]]]:
        self._find_day_keys()
        buf = self._buffer
        completed: list[tuple[int, int, dict[str, Any]]] = []

        for start in list(self._scans):
            scan = self._scans[start]
            end = _advance(scan, buf)
            if end is None:
                continue
            del self._scans[start]
            parsed = _parse_day(buf[start:end])
            if parsed is not None:
                completed.append((end, parsed[0], parsed[1]))

        return completed


def _advance(scan: _DayScan, buf: str) -> int | None:
    """Continue a day scan; returns the end of the object once its ``}`` arrives."""
    for i in range(scan.pos, len(buf)):
        ch = buf[i]
        if scan.in_string:
            if scan.escape:
                scan.escape = False
            elif ch == "\\":
                scan.escape = True
            elif ch == '"':
                scan.in_string = False
        elif ch == '"':
            scan.in_string = True
        elif ch == "{":
            scan.depth += 1
        elif ch == "}":
            scan.depth -= 1
            if scan.depth == 0:
                return i + 1
    scan.pos = len(buf)
    return None


def _parse_day(span: str) -> tuple[int, dict[str, Any]] | None:
    try:
        payload = json.loads(span)
    except json.JSONDecodeError as exc:
        logger.debug("extractor: dropping malformed day span: %s", exc)
        return None
    if not isinstance(payload, dict):
        return None
    number = payload.get("day")
    if isinstance(number, bool) or not isinstance(number, int):
        return None
    return number, payload
