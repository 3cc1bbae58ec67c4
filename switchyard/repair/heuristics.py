"""Heuristic (model-free) JSON fixes and malformation analysis.

All functions are pure: the same input always produces the same output.
"""

import html
import re
from dataclasses import dataclass, field
from enum import Enum

from switchyard.repair.scanner import (
    close_open_structures,
    find_balanced_span,
    first_structure_index,
    remove_trailing_commas,
    split_segments,
)

_VALID_ESCAPES = frozenset('"\\/bfnrtu')
_BARE_KEY = re.compile(r"(?<=[{,])(\s*)([A-Za-z_$][\w$-]*)(\s*:)")
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
_PY_LITERAL = re.compile(r"\b(True|False|None)\b")
_STRUCTURAL_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class MalformationReport:
    """What looks wrong with a piece of would-be JSON."""

    error_types: tuple[str, ...] = field(default_factory=tuple)
    severity: Severity = Severity.LOW

    @property
    def confidence(self) -> float:
        """Confidence that a heuristic repair preserved meaning."""
        return max(0.1, 1.0 - 0.2 * len(self.error_types))


def analyze(text: str) -> MalformationReport:
    """Identify the kinds of damage present in ``text``."""
    errors: list[str] = []

    if "```" in text:
        errors.append("markdown-code-blocks")
    if re.search(r",\s*[}\]]", text):
        errors.append("trailing-commas")
    if "&quot;" in text or "&lt;" in text or "&gt;" in text or "&amp;" in text:
        errors.append("html-entities")

    segments = split_segments(text)
    if segments and segments[-1][0] and not segments[-1][1].endswith('"'):
        errors.append("unmatched-quotes")
    if any(is_str and ("\n" in seg or "\t" in seg) for is_str, seg in segments):
        errors.append("unescaped-newlines")
    if any(not is_str and _BARE_KEY.search(seg) for is_str, seg in segments):
        errors.append("unquoted-keys")

    start = first_structure_index(text)
    if start < 0:
        errors.append("no-structure")
    elif find_balanced_span(text) is None:
        errors.append("unmatched-brackets")

    if "no-structure" in errors:
        severity = Severity.CRITICAL
    elif "unmatched-brackets" in errors or "unmatched-quotes" in errors:
        severity = Severity.HIGH
    elif len(errors) > 1:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return MalformationReport(error_types=tuple(errors), severity=severity)


def _fix_string_literal(literal: str) -> str:
    """Escape raw control characters and invalid backslashes inside one string literal."""
    out: list[str] = []
    body = literal[1:]
    closed = body.endswith('"') and not _ends_with_escape(body[:-1])
    if closed:
        body = body[:-1]

    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\":
            nxt = body[i + 1] if i + 1 < len(body) else ""
            if nxt in _VALID_ESCAPES and nxt:
                out.append(ch + nxt)
                i += 2
                continue
            out.append("\\\\")
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        elif ord(ch) < 0x20 or ch == "\x7f":
            pass
        else:
            out.append(ch)
        i += 1

    return '"' + "".join(out) + ('"' if closed else "")


def _ends_with_escape(text: str) -> bool:
    count = len(text) - len(text.rstrip("\\"))
    return count % 2 == 1


def _fix_structure_segment(segment: str) -> str:
    segment = _STRUCTURAL_CONTROL.sub("", segment)
    segment = _BARE_KEY.sub(r'\1"\2"\3', segment)
    return _PY_LITERAL.sub(lambda m: _PY_LITERALS[m.group(1)], segment)


def apply_fixes(text: str) -> str:
    """Apply every heuristic fix to ``text`` and return the candidate JSON."""
    candidate = text.translate(_SMART_QUOTES)
    if "&" in candidate:
        candidate = html.unescape(candidate)
    if '"' not in candidate and "'" in candidate:
        candidate = candidate.replace("'", '"')

    start = first_structure_index(candidate)
    if start > 0:
        candidate = candidate[start:]

    candidate = "".join(
        _fix_string_literal(seg) if is_str else _fix_structure_segment(seg)
        for is_str, seg in split_segments(candidate)
    )
    candidate = remove_trailing_commas(candidate)

    span = find_balanced_span(candidate)
    if span is not None:
        return span
    return remove_trailing_commas(close_open_structures(candidate))
