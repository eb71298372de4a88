"""Extraction of JSON payloads embedded in free-form LLM text.

Models often wrap the structured answer in prose ("Sure! Here is the plan:")
or trailing commentary. The payload is located by scanning for the earliest
opening bracket and the latest closing bracket; the slice between them must
decode as-is. Nothing is repaired: a malformed interior always fails.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from agent_coordinator.errors import ResponseParseError

logger = logging.getLogger(__name__)

_OPENERS = ("{", "[")
_CLOSERS = ("}", "]")


def parse_llm_json_response(text: str, stage: str) -> Any:
    """Return the decoded JSON object or array found in ``text``.

    Raises ``ResponseParseError`` tagged with ``stage`` when no payload is
    found, when the boundaries are inverted, or when decoding fails.
    """
    if not isinstance(text, str):
        raise ResponseParseError(stage, repr(text), "response was not text")

    starts = [idx for idx in (text.find(ch) for ch in _OPENERS) if idx != -1]
    if not starts:
        _log_failure(stage, text, "no JSON found")
        raise ResponseParseError(stage, text, "no JSON found")
    start = min(starts)

    end = max(text.rfind(ch) for ch in _CLOSERS)
    if end < start:
        _log_failure(stage, text, "mismatched JSON")
        raise ResponseParseError(stage, text, "mismatched JSON")

    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        _log_failure(stage, text, str(exc))
        raise ResponseParseError(stage, text, f"decode failed: {exc}") from exc


def _log_failure(stage: str, text: str, reason: str) -> None:
    logger.warning(
        "parse event=failed stage=%s reason=%s raw_preview=%r",
        stage,
        reason,
        text[:400],
    )
