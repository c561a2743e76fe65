"""Detection and removal of tool calls leaked into plain-text model output.

Some models that lack structured tool calling emit pseudo-syntax instead,
for example ``web_search</function={"q": "x"}``,
``<function=web_search>{"q": "x"}</function>``,
``web_search{"type": "function", ...}`` or DeepSeek-style
``<|tool_calls_begin|>...<|tool_calls_end|>`` blocks. Matching runs against
a glyph-normalized copy of the text; the normalization maps one character to
one character, so match offsets are valid in the original text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Pattern

__all__ = [
    "LEAK_NOT_EXECUTED_RESULT",
    "LeakMatch",
    "TOOL_MARKER_TRANSLATION",
    "detect_leak",
    "normalize_tool_marker_text",
    "sanitize_text",
]

LEAK_NOT_EXECUTED_RESULT = "Model attempted this call as text (not executed via tool system)"

# Normalizes stylized glyphs inside <|tool ...|> markers emitted by some models.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("│"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u200b"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

# name</function={...} / name</function,{...} / name</function>{...}
_CLOSING_MARKER_RE = re.compile(r"(?P<name>\w+)(?P<marker></function[=,>])")
# <function=name>{...}</function>
_OPENING_MARKER_RE = re.compile(r"(?P<marker><function=(?P<name>\w+)>)")
# name{"type":"function",...}
_TYPED_OBJECT_RE = re.compile(r"(?P<name>\w+)(?P<marker>\{\s*\"type\"\s*:\s*\"function\")")
_TOOL_CALLS_BEGIN_RE = re.compile(r"(?P<marker><\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>)", re.IGNORECASE)
_TOOL_CALL_NAME_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)
_INPUT_START_RE = re.compile(r"\{[\s\S]*")
_TRAILING_CLOSE_RE = re.compile(r"</function>?\s*$")

_DETECTORS: tuple[Pattern[str], ...] = (
    _CLOSING_MARKER_RE,
    _OPENING_MARKER_RE,
    _TYPED_OBJECT_RE,
    _TOOL_CALLS_BEGIN_RE,
)

# Applied in order by :func:`sanitize_text`.
_REMOVAL_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(
        r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>.*?<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>",
        re.IGNORECASE | re.DOTALL,
    ),
    re.compile(r"<function=\w+>[\s\S]*?</function>"),
    re.compile(r"\s*\w+</function[=,]?\s*\{[\s\S]*$"),
    re.compile(r"\s*\w+\{\s*\"type\"\s*:\s*\"function\"[\s\S]*$"),
    re.compile(r"</function[^>]*>"),
    re.compile(r"<\|[\w_]+\|>"),
)


@dataclass(frozen=True, slots=True)
class LeakMatch:
    """Earliest leaked tool call found in a text buffer."""

    index: int
    name: str | None
    input: str


def normalize_tool_marker_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for marker matching."""

    return text.translate(TOOL_MARKER_TRANSLATION)


def detect_leak(text: str) -> LeakMatch | None:
    """Return the earliest leaked tool-call marker in ``text``.

    ``index`` points at the marker itself; for ``name</function=`` and
    ``name{"type":"function"`` forms the identifier before the marker is
    reported as the tool name but stays outside the cut, since a partially
    streamed buffer cannot tell it apart from prose.
    """

    if not text:
        return None
    normalized = normalize_tool_marker_text(text)
    earliest: re.Match[str] | None = None
    for pattern in _DETECTORS:
        match = pattern.search(normalized)
        if match is None:
            continue
        if earliest is None or match.start("marker") < earliest.start("marker"):
            earliest = match
    if earliest is None:
        return None

    index = earliest.start("marker")
    tail = normalized[index:]
    name = earliest.groupdict().get("name")
    if earliest.re is _TOOL_CALLS_BEGIN_RE:
        entry = _TOOL_CALL_NAME_RE.search(tail)
        name = entry.group("name").strip("\"' \t\n\r") if entry else None
    return LeakMatch(index=index, name=name or None, input=_extract_input(text[index:]))


def sanitize_text(text: str | None) -> str:
    """Strip every recognized leaked tool-call form, closing tag and control token."""

    if not text:
        return ""
    original = text
    normalized = normalize_tool_marker_text(text)
    for pattern in _REMOVAL_PATTERNS:
        original, normalized = _remove_matches(pattern, original, normalized)
    return original.strip()


def _remove_matches(pattern: Pattern[str], original: str, normalized: str) -> tuple[str, str]:
    spans = [match.span() for match in pattern.finditer(normalized)]
    if not spans:
        return original, normalized
    kept_original: list[str] = []
    kept_normalized: list[str] = []
    cursor = 0
    for start, end in spans:
        kept_original.append(original[cursor:start])
        kept_normalized.append(normalized[cursor:start])
        cursor = end
    kept_original.append(original[cursor:])
    kept_normalized.append(normalized[cursor:])
    return "".join(kept_original), "".join(kept_normalized)


def _extract_input(fragment: str) -> str:
    match = _INPUT_START_RE.search(fragment)
    if match is None:
        return ""
    return _TRAILING_CLOSE_RE.sub("", match.group(0)).strip()
