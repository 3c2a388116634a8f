"""Utility helpers for the Gap Finder service."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Literal


POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"

# Files can't contain ":" so titles are compared without it.
DISALLOWED_TITLE_CHARS_RE = re.compile(r"[:]")
WHITESPACE_RE = re.compile(r"\s+")

LEGACY_AGENT_GUID_RE = re.compile(
    r"^com\.plexapp\.agents\.(?P<agent>themoviedb|imdb)://(?P<value>[^?/]+)"
)
MODERN_GUID_RE = re.compile(r"^(?P<agent>tmdb|imdb)://(?P<value>[^?/]+)")

GuidKind = Literal["tmdb", "imdb", "unknown"]


@dataclass(slots=True, frozen=True)
class ParsedGuid:
    """Identifier extracted from an opaque library guid."""

    kind: GuidKind
    value: str | None = None

    @property
    def tmdb_id(self) -> int | None:
        if self.kind != "tmdb" or self.value is None:
            return None
        return int(self.value)

    @property
    def imdb_id(self) -> str | None:
        if self.kind != "imdb":
            return None
        return self.value


def strip_disallowed_chars(title: str) -> str:
    """Remove characters that cannot appear in file names."""

    return DISALLOWED_TITLE_CHARS_RE.sub("", title or "").strip()


def normalize_title(title: str) -> str:
    """Return the comparison form of a movie title."""

    stripped = strip_disallowed_chars(title)
    return WHITESPACE_RE.sub(" ", stripped).casefold()


def classify_guid(guid: str | None) -> ParsedGuid:
    """Classify a library guid into a TMDB id, an IMDB id or unknown."""

    if not guid:
        return ParsedGuid("unknown")
    value = guid.strip()
    match = LEGACY_AGENT_GUID_RE.match(value) or MODERN_GUID_RE.match(value)
    if not match:
        return ParsedGuid("unknown", value)

    agent = match.group("agent")
    identifier = match.group("value").strip()
    if agent in {"themoviedb", "tmdb"}:
        if not identifier.isdigit():
            return ParsedGuid("unknown", value)
        return ParsedGuid("tmdb", identifier)
    if not identifier:
        return ParsedGuid("unknown", value)
    return ParsedGuid("imdb", identifier)


def parse_release_year(value: Any) -> int | None:
    """Return the year of a ``YYYY-MM-DD`` release date, or ``None``."""

    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").year
    except ValueError:
        return None


def parse_year(value: Any) -> int | None:
    """Coerce a library year attribute into an integer."""

    if isinstance(value, int):
        return value if value > 0 else None
    if not value:
        return None
    try:
        year = int(str(value).strip())
    except ValueError:
        return None
    return year if year > 0 else None


def is_released(year: int, today: date) -> bool:
    """Return whether ``year`` is strictly before the current year."""

    return 0 < year < today.year


def build_image_url(path: str | None, base_url: str = POSTER_BASE_URL) -> str | None:
    if not path:
        return None
    if path.startswith("http"):
        return path
    return f"{base_url}{path}"
