"""Textual fallback parsing for responses that are not JSON at all.

Models asked for JSON sometimes answer in labelled prose instead::

    Decision: SEARCH_AGAIN
    Reasoning: The retrieved code does not show the handler.
    Confidence: 0.6

``parse_labelled_text`` turns that into a dict, matching labels to expected
keys regardless of case, spacing, snake_case or camelCase.
"""

import re
from typing import Any

_LABEL_LINE = re.compile(r"^\s*(?:[-*]\s*)?\**([A-Za-z][A-Za-z0-9 _-]{0,60}?)\**\s*:\s*(.*)$")
_NUMBER = re.compile(r"^-?\d+(?:\.\d+)?$")


def normalize_label(label: str) -> str:
    """Canonical form of a label: lowercase words joined by underscores."""
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", label.strip())
    return "_".join(re.split(r"[\s_-]+", spaced.lower())).strip("_")


def _coerce(value: str) -> Any:
    text = value.strip().strip("`").strip()
    lowered = text.lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    if lowered in ("null", "none", "n/a", ""):
        return None
    if _NUMBER.match(text):
        return float(text) if "." in text else int(text)
    return text


def parse_labelled_text(
    text: str, expected_keys: list[str] | None = None
) -> dict[str, Any] | None:
    """Parse ``Label: value`` lines.

    Continuation lines (no label) are appended to the previous value.

    Args:
        text: Raw response text
        expected_keys: Keys to keep, in their caller-facing spelling. When
            given, only labels matching one of them are returned.

    Returns:
        Mapping of key to coerced value, or None if nothing matched
    """
    wanted = {normalize_label(k): k for k in expected_keys or []}
    values: dict[str, list[str]] = {}
    current: str | None = None

    for line in text.splitlines():
        match = _LABEL_LINE.match(line)
        if match:
            label = normalize_label(match.group(1))
            if not wanted or label in wanted:
                key = wanted.get(label, label)
                values[key] = [match.group(2)]
                current = key
                continue
            current = None
            continue
        if current is not None and line.strip():
            values[current].append(line.strip())

    if not values:
        return None
    return {key: _coerce(" ".join(parts)) for key, parts in values.items()}
