"""Escaping, folding and splitting of vCard text values (RFC 2426 / RFC 6350)."""

from __future__ import annotations

import re

MAX_LINE_LENGTH = 75

_UNESCAPE = re.compile(r"\\(.)", re.DOTALL)


def escape_text(text: str) -> str:
    """Escape backslash, comma, semicolon and newline."""
    return (
        text.replace("\\", "\\\\")
        .replace(",", "\\,")
        .replace(";", "\\;")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def _unescape_char(match: re.Match[str]) -> str:
    char = match.group(1)
    if char in "nN":
        return "\n"
    return char


def unescape_text(text: str) -> str:
    """Reverse ``escape_text``. Unknown escapes keep the escaped character."""
    return _UNESCAPE.sub(_unescape_char, text)


def split_escaped(value: str, sep: str = ";") -> list[str]:
    """Split a raw value on unescaped separators and unescape each component.

    Args:
        value: Raw (still escaped) property value
        sep: Component separator, ``;`` for structured values or ``,`` for lists

    Returns:
        Unescaped components
    """
    parts: list[str] = []
    current: list[str] = []
    escaped = False
    for char in value:
        if escaped:
            current.append("\\" + char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == sep:
            parts.append(unescape_text("".join(current)))
            current = []
        else:
            current.append(char)
    if escaped:
        current.append("\\")
    parts.append(unescape_text("".join(current)))
    return parts


def split_respecting_quotes(text: str, delimiter: str) -> list[str]:
    """Split on a delimiter that is not inside double quotes. Empty parts are dropped."""
    parts: list[str] = []
    current = ""
    in_quotes = False
    for char in text:
        if char == '"':
            in_quotes = not in_quotes
            current += char
        elif char == delimiter and not in_quotes:
            if current:
                parts.append(current)
            current = ""
        else:
            current += char
    if current:
        parts.append(current)
    return parts


def find_unquoted(text: str, char: str) -> int:
    """Index of the first ``char`` outside double quotes, or -1."""
    in_quotes = False
    for i, c in enumerate(text):
        if c == '"':
            in_quotes = not in_quotes
        elif c == char and not in_quotes:
            return i
    return -1


def unfold_lines(text: str) -> list[str]:
    """Join continuation lines (leading space or tab) onto their property line."""
    lines: list[str] = []
    current = ""
    for line in re.split(r"\r?\n", text):
        if line.startswith((" ", "\t")):
            current += line[1:]
            continue
        if current:
            lines.append(current)
        current = line
    if current:
        lines.append(current)
    return lines


def fold_line(line: str) -> list[str]:
    """Fold a content line longer than 75 characters.

    Continuation lines start with a single space and carry up to 74 characters.
    """
    if len(line) <= MAX_LINE_LENGTH:
        return [line]

    lines = [line[:MAX_LINE_LENGTH]]
    remaining = line[MAX_LINE_LENGTH:]
    while remaining:
        lines.append(" " + remaining[: MAX_LINE_LENGTH - 1])
        remaining = remaining[MAX_LINE_LENGTH - 1 :]
    return lines


_MARKDOWN_RULES = [
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),  # bold
    (re.compile(r"\*(.+?)\*"), r"\1"),  # italic
    (re.compile(r"#{1,6}\s(.+)"), r"\1"),  # headers
    (re.compile(r"\[(.+?)\]\(.+?\)"), r"\1"),  # links
    (re.compile(r"`(.+?)`"), r"\1"),  # code
]


def strip_markdown(text: str) -> str:
    """Remove basic markdown formatting from notes."""
    for pattern, repl in _MARKDOWN_RULES:
        text = pattern.sub(repl, text)
    return text
