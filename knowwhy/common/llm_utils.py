"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

_FENCE_LINE = re.compile(r"^\s*```")


def _strip_fences(text: str) -> str:
    if "```" not in text:
        return text
    return "\n".join(line for line in text.split("\n") if not _FENCE_LINE.match(line))


def try_parse_llm_json(raw: Optional[str]) -> Optional[Any]:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Substring between the first '{' and last '}'
    3. Substring between the first '[' and last ']'

    Returns None when nothing parses.
    """
    if not raw or not raw.strip():
        return None

    text = _strip_fences(raw.strip())
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer) + 1
        if start >= 0 and end > start:
            try:
                return json.loads(text[start:end])
            except json.JSONDecodeError:
                continue
    return None


def parse_llm_json(raw: Optional[str]) -> dict:
    """Like ``try_parse_llm_json`` but always returns a dict ({} on failure)."""
    data = try_parse_llm_json(raw)
    return data if isinstance(data, dict) else {}


@dataclass(frozen=True)
class Parsed:
    """Model output parsed as a JSON object"""
    data: Dict[str, Any]


@dataclass(frozen=True)
class Degraded:
    """Model output that only yielded heuristic fields"""
    data: Dict[str, Any]
    raw: str
    reason: str = "unparseable"


ParseOutcome = Union[Parsed, Degraded]


def lenient_parse(
    raw: Optional[str],
    heuristics: Callable[[str], Dict[str, Any]],
) -> ParseOutcome:
    """Parse a JSON object, falling back to regex heuristics over the raw text.

    Callers branch on the tag (``Parsed`` or ``Degraded``); a degraded
    outcome is never an exception.
    """
    data = try_parse_llm_json(raw)
    if isinstance(data, dict):
        return Parsed(data)
    reason = "empty" if not (raw or "").strip() else "unparseable"
    return Degraded(data=heuristics(raw or ""), raw=raw or "", reason=reason)
