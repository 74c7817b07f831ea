"""
Response Parser
===============

Pulls a StructuredAnswer out of arbitrary model text. Strategies, in order:

  1. the whole text parses as JSON
  2. the trailing ``{...}`` suffix (first ``{`` through a final ``}``)
  3. every ``{`` scanned left to right, decoding one JSON object from there
  4. nothing worked: Malformed

Whole-document parses win over fragments, but leading prose or trailing
chatter around the object is tolerated. A candidate counts only if it is
a JSON object that validates as a StructuredAnswer.

The result is a tagged union the caller pattern-matches on:

    match parse_model_output(text):
        case Parsed(answer=answer): ...
        case Malformed(reason=reason): ...
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from tutorflow.core.exceptions import MalformedOutputError

from .schema import SafeDefaultReason, StructuredAnswer

_decoder = json.JSONDecoder()

# ── Result Variants ──────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Parsed:
    answer: StructuredAnswer
    strategy: str                 # whole_text | trailing_object | scan

@dataclass(frozen=True, slots=True)
class Malformed:
    raw_text: str
    reason: SafeDefaultReason
    errors: tuple[str, ...] = field(default_factory=tuple)

ParseResult = Parsed | Malformed

# ── JSON Candidates ──────────────────────────────────────────────────────────

def _whole_text(text: str) -> Any:
    return json.loads(text.strip())

def _trailing_object(text: str) -> Any:
    stripped = text.rstrip()
    start = stripped.find("{")
    if start < 0 or not stripped.endswith("}"):
        raise ValueError("no trailing object")
    return json.loads(stripped[start:])

def _iter_candidates(text: str) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield (strategy, object) for every JSON object found, in priority order."""
    for strategy, fn in (("whole_text", _whole_text), ("trailing_object", _trailing_object)):
        try:
            obj = fn(text)
        except ValueError:
            continue
        if isinstance(obj, dict):
            yield strategy, obj

    idx = text.find("{")
    while idx >= 0:
        try:
            obj, _ = _decoder.raw_decode(text, idx)
        except ValueError:
            pass
        else:
            if isinstance(obj, dict):
                yield "scan", obj
        idx = text.find("{", idx + 1)

def extract_json(text: str) -> dict[str, Any]:
    """Return the first JSON object found in ``text``; raise MalformedOutputError if none."""
    if text:
        for _, obj in _iter_candidates(text):
            return obj
    raise MalformedOutputError(text or "")

# ── Public API ───────────────────────────────────────────────────────────────

def parse_model_output(text: str | None) -> ParseResult:
    """Parse model text into ``Parsed(StructuredAnswer)`` or ``Malformed``."""
    raw = text or ""
    if "{" not in raw:
        return Malformed(raw_text=raw, reason=SafeDefaultReason.MALFORMED_OUTPUT)

    errors: list[str] = []
    saw_object = False
    for strategy, obj in _iter_candidates(raw):
        saw_object = True
        try:
            return Parsed(answer=StructuredAnswer.model_validate(obj), strategy=strategy)
        except ValidationError as exc:
            errors.extend(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            )

    if not saw_object:
        return Malformed(raw_text=raw, reason=SafeDefaultReason.MALFORMED_OUTPUT)
    return Malformed(
        raw_text=raw,
        reason=SafeDefaultReason.SCHEMA_INVALID,
        errors=tuple(dict.fromkeys(errors)),
    )
