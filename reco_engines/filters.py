"""
reco_engines.filters -- Caller-supplied filter fragment handling.

Responsibility:
    Parse the filter mini-language ``/*JSON:<preset>*/ <predicate>``,
    normalize the predicate (strip header, strip redundant outer
    parentheses, strip a leading WHERE, collapse whitespace outside quoted
    literals) and gate it against a fixed denylist of structural SQL keywords.

Architecture position:
    Engines -- pure, zero I/O.  The view assembler decides what to do with
    a rejected fragment (log it, run without it).

Invariants enforced:
    - The same normalized text is used as the cache key and as the query
      fragment, so two spellings of one filter share a cache entry.
    - A fragment containing any denylisted keyword (as a whole word) or a
      statement separator / comment opener is rejected as a whole.

Non-goals:
    This is a heuristic gate, not a parser.  It stops obviously structural
    injection; it is not a security boundary against a hostile filter
    author.  Filters are treated as semi-trusted.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from reco_kernel.exceptions import FilterRejectedError

_HEADER_PATTERN = re.compile(r"^/\*JSON:(.*?)\*/\s*(.*)$", re.DOTALL)
_WHERE_PREFIX = re.compile(r"^WHERE\s+", re.IGNORECASE)
# quoted literals are kept verbatim, whitespace runs elsewhere collapse
_LITERAL_OR_WHITESPACE = re.compile(r"""('[^']*'|"[^"]*")|\s+""")

DENYLISTED_KEYWORDS: tuple[str, ...] = (
    "union",
    "select",
    "insert",
    "delete",
    "update",
    "drop",
    "alter",
    "exec",
)
DENYLISTED_TOKENS: tuple[str, ...] = (";", "--", "/*")

_KEYWORD_PATTERN = re.compile(r"\b(" + "|".join(DENYLISTED_KEYWORDS) + r")\b", re.IGNORECASE)

POTENTIAL_DUPLICATES_FLAG = "PotentialDuplicates"


def split_header(raw: str | None) -> tuple[Mapping[str, Any], str]:
    """Return (preset, body).  An unparsable preset is treated as empty."""
    if raw is None:
        return {}, ""
    text = raw.strip()
    match = _HEADER_PATTERN.match(text)
    if not match:
        return {}, text
    try:
        preset = json.loads(match.group(1))
    except ValueError:
        preset = {}
    if not isinstance(preset, dict):
        preset = {}
    return preset, match.group(2).strip()


def _wraps_whole(text: str) -> bool:
    """True when text[0] == '(' closes exactly at text[-1]."""
    if not (text.startswith("(") and text.endswith(")")):
        return False
    depth = 0
    quote: str | None = None
    for i, ch in enumerate(text):
        if quote:
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0 and i != len(text) - 1:
                return False
    return depth == 0


def normalize_predicate(body: str | None) -> str | None:
    """Unwrap redundant parentheses, strip WHERE, collapse whitespace outside literals."""
    if not body:
        return None
    cond = body.strip()
    while True:
        unwrapped = False
        if _wraps_whole(cond):
            cond = cond[1:-1].strip()
            unwrapped = True
        stripped = _WHERE_PREFIX.sub("", cond, count=1)
        if stripped != cond:
            cond = stripped.strip()
            unwrapped = True
        if not unwrapped:
            break
    cond = _LITERAL_OR_WHITESPACE.sub(lambda m: m.group(1) or " ", cond).strip()
    return cond or None


def check_predicate(predicate: str) -> None:
    """Raise ``FilterRejectedError`` if the predicate hits the denylist."""
    for token in DENYLISTED_TOKENS:
        if token in predicate:
            raise FilterRejectedError(predicate, token)
    match = _KEYWORD_PATTERN.search(predicate)
    if match:
        raise FilterRejectedError(predicate, match.group(1).lower())


@dataclass(frozen=True)
class FilterFragment:
    """A parsed filter: preset flags plus the normalized (unchecked) predicate."""

    raw: str | None = None
    predicate: str | None = None
    preset: Mapping[str, Any] = field(default_factory=dict)

    @property
    def potential_duplicates(self) -> bool:
        return self.preset.get(POTENTIAL_DUPLICATES_FLAG) is True

    @property
    def cache_key(self) -> str:
        prefix = "#dups " if self.potential_duplicates else ""
        return f"{prefix}{self.predicate or ''}".strip()

    def safe_predicate(self) -> str | None:
        """The predicate, or ``FilterRejectedError`` if it is not safe to run."""
        if self.predicate is None:
            return None
        check_predicate(self.predicate)
        return self.predicate


def parse_filter(raw: str | None) -> FilterFragment:
    preset, body = split_header(raw)
    return FilterFragment(raw=raw, predicate=normalize_predicate(body), preset=preset)


def normalize_filter_for_cache(raw: str | None) -> str:
    return parse_filter(raw).cache_key


def extract_safe_predicate(raw: str | None) -> str | None:
    """Normalized predicate, or None when absent or rejected."""
    try:
        return parse_filter(raw).safe_predicate()
    except FilterRejectedError:
        return None
