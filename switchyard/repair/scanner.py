"""String-aware scanning helpers for JSON-ish model output.

Every helper here walks the text once, tracking whether the cursor sits
inside a double-quoted string literal (honouring backslash escapes), so that
brackets, commas and quotes inside string values are never mistaken for
structure.
"""

import re

_FENCE = re.compile(r"```[ \t]*(?:json|JSON|javascript|js)?[ \t]*\r?\n?(.*?)```", re.DOTALL)
_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}", "]"}


def strip_code_fences(text: str) -> str:
    """Return the contents of the first fenced block, or the text without stray fences."""
    match = _FENCE.search(text)
    if match:
        return match.group(1).strip()
    stripped = text.strip()
    if stripped.startswith("```"):
        # Unterminated fence: drop the opening line
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
    return stripped.replace("```", "").strip()


def first_structure_index(text: str) -> int:
    """Index of the first ``{`` or ``[`` in ``text``, or -1."""
    positions = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    return min(positions) if positions else -1


def find_balanced_span(text: str) -> str | None:
    """Locate the first balanced bracketed span.

    Returns:
        The span including its outer brackets, or None when no bracket opens
        or the first opened structure never closes
    """
    start = first_structure_index(text)
    if start < 0:
        return None

    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in _CLOSERS:
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None


def split_segments(text: str) -> list[tuple[bool, str]]:
    """Split text into ``(is_string_literal, segment)`` pieces.

    String segments include their quotes. An unterminated string runs to the
    end of the text.
    """
    segments: list[tuple[bool, str]] = []
    buf: list[str] = []
    in_string = False
    escaped = False

    for ch in text:
        if in_string:
            buf.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                segments.append((True, "".join(buf)))
                buf = []
                in_string = False
            continue
        if ch == '"':
            if buf:
                segments.append((False, "".join(buf)))
            buf = [ch]
            in_string = True
        else:
            buf.append(ch)

    if buf:
        segments.append((in_string, "".join(buf)))
    return segments


def remove_trailing_commas(text: str) -> str:
    """Drop commas that directly precede a closing bracket (outside strings)."""
    out: list[str] = []
    in_string = False
    escaped = False
    n = len(text)
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] in _CLOSERS:
                continue
        out.append(ch)
    return "".join(out)


def close_open_structures(text: str) -> str:
    """Close a truncated structure: finish an open string and append missing closers."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in _CLOSERS and stack and stack[-1] == ch:
            stack.pop()

    if not stack and not in_string:
        return text

    result = text
    if in_string:
        if escaped:
            result = result[:-1]
        result += '"'
    result = result.rstrip()
    while result and result[-1] in ",:":
        result = result[:-1].rstrip()
    return result + "".join(reversed(stack))
