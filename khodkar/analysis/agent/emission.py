"""Recognition of the model's final structured emission.

The final answer is a JSON object with a ``businessRules`` array. Models
wrap it in different ways, so it is looked for, in order, inside
``<business_rules>`` tags, inside fenced code blocks, and finally as any
bare top-level JSON object in the text. Parsing is fault tolerant. A plain
array counts only inside the tags; elsewhere it is ordinary prose.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator

from .models import AssistantText, ModelAction, ModelResponse, TerminalEmission, ToolRequests

logger = logging.getLogger("khodkar.agent")

EMISSION_KEY = "businessRules"

_TAG_RE = re.compile(r"<business_rules>\s*(.*?)\s*</business_rules>", re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def classify_response(response: ModelResponse) -> ModelAction:
    """Turn a raw assistant turn into exactly one loop action."""
    emission = extract_emission(response.content)
    if response.tool_calls:
        return ToolRequests(calls=tuple(response.tool_calls), partial_emission=emission)
    if emission is not None:
        return TerminalEmission(emission=emission)
    return AssistantText(text=response.content)


def extract_emission(text: str | None) -> dict[str, Any] | None:
    if not text:
        return None

    found: dict[str, Any] | None = None
    for candidate, tagged in _candidates(text):
        parsed = try_parse_json(candidate)
        # A bare array is only an answer when the model marked it as one.
        if tagged and isinstance(parsed, list):
            parsed = {EMISSION_KEY: parsed}
        if isinstance(parsed, dict) and isinstance(parsed.get(EMISSION_KEY), list):
            # The last well-formed emission in a turn is the model's final word.
            found = parsed
    return found


def _candidates(text: str) -> Iterator[tuple[str, bool]]:
    tagged = _TAG_RE.findall(text)
    if tagged:
        for candidate in tagged:
            yield candidate, True
        return

    fenced = _FENCE_RE.findall(text)
    if fenced:
        for candidate in fenced:
            yield candidate, False
        return

    for candidate in _bare_objects(text):
        yield candidate, False


def _bare_objects(text: str) -> Iterator[str]:
    """Yield balanced top-level {...} spans, ignoring braces inside strings."""
    depth = 0
    start_idx: int | None = None
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start_idx = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start_idx is not None:
                candidate = text[start_idx:i + 1]
                if EMISSION_KEY in candidate:
                    yield candidate
                start_idx = None


def try_parse_json(raw: str) -> Any | None:
    """Try to parse JSON with auto-repair for common issues."""
    # Attempt 1: direct parse
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    # Attempt 2: strip // and /* */ comments
    cleaned = re.sub(r"(?<!:)//[^\n]*", "", raw)
    cleaned = re.sub(r"/\*.*?\*/", "", cleaned, flags=re.DOTALL)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Attempt 3: fix trailing commas
    cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Attempt 4: balance brackets
    open_count = cleaned.count("{")
    close_count = cleaned.count("}")
    if open_count > close_count:
        cleaned += "}" * (open_count - close_count)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        logger.debug(f"Could not repair JSON candidate ({len(raw)} chars)")
        return None
