"""Best-effort decoding of JSON replies returned by the LLM service."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


class ResponseParseError(ValueError):
    """Raised when a reply cannot be decoded even after repair."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(message)
        self.raw = raw


@dataclass(frozen=True)
class ParsedPayload:
    data: Any
    truncated: bool = False


def _close_brackets(text: str) -> str:
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()
    if in_string:
        text += '"'
    text = _TRAILING_COMMA.sub(r"\1", text.rstrip().rstrip(","))
    return text + "".join(reversed(stack))


def parse_json_payload(raw: str) -> ParsedPayload:
    """Decode ``raw`` into JSON, repairing the usual LLM formatting damage.

    The repair pass strips Markdown code fences, removes trailing commas and,
    when the reply was cut off, appends the missing closing braces and
    brackets.  ``truncated`` on the result tells callers that data may have
    been lost at the end of the reply.
    """

    if raw is None:
        raise ResponseParseError("Empty response from LLM service", "")
    cleaned = _CODE_FENCE.sub("", raw).strip()
    if not cleaned:
        raise ResponseParseError("Empty response from LLM service", raw)
    try:
        return ParsedPayload(json.loads(cleaned))
    except json.JSONDecodeError as exc:
        logger.debug("JSON decode failed (%s); attempting repair", exc)

    trimmed = _TRAILING_COMMA.sub(r"\1", cleaned)
    repaired = _close_brackets(trimmed)
    truncated = repaired != trimmed
    try:
        return ParsedPayload(json.loads(repaired), truncated=truncated)
    except json.JSONDecodeError as exc:
        raise ResponseParseError(
            f"LLM returned malformed data (likely truncated): {exc}", raw
        ) from exc


__all__ = ["ParsedPayload", "ResponseParseError", "parse_json_payload"]
