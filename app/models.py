"""Pydantic models describing movies, runs and search events."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, NamedTuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import normalize_title


class MovieKey(NamedTuple):
    """Identity of a movie: normalized title plus release year."""

    title: str
    year: int

    @classmethod
    def of(cls, title: str, year: int | None) -> "MovieKey":
        return cls(normalize_title(title), int(year or 0))


class Movie(BaseModel):
    """Canonical movie record.

    Records are immutable; enrichment happens through
    :meth:`app.services.registry.MovieRegistry.merge` which swaps in a copy.
    Two movies are equal when their :attr:`key` matches, whatever their other
    fields hold.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str
    year: int = 0
    tmdb_id: int | None = Field(default=None, alias="tmdbId")
    imdb_id: str | None = Field(default=None, alias="imdbId")
    collection_id: int | None = Field(default=None, alias="collectionId")
    collection_name: str | None = Field(default=None, alias="collectionName")
    poster_url: str | None = Field(default=None, alias="posterUrl")

    @property
    def key(self) -> MovieKey:
        return MovieKey.of(self.title, self.year)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Movie):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        return f"{self.title} ({self.year})"

    def to_payload(self) -> dict[str, object]:
        """Return a JSON friendly representation with camelCase keys."""

        return self.model_dump(mode="json", by_alias=True)


class LibraryEntry(BaseModel):
    """Raw listing entry reported by a library source."""

    title: str
    year: int | None = None
    guid: str | None = None


class RunState(str, Enum):
    """Lifecycle of a reconciliation run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED}


SearchEventType = Literal["progress", "movie_found", "finished", "cancelled", "failed"]


class SearchEvent(BaseModel):
    """Notification pushed to subscribers while a run progresses."""

    type: SearchEventType
    run_id: str = Field(serialization_alias="runId")
    searched_count: int = Field(serialization_alias="searchedCount")
    total_count: int = Field(serialization_alias="totalCount")
    movie: Movie | None = None
    message: str | None = None
    created_at: datetime = Field(
        default_factory=datetime.utcnow, serialization_alias="createdAt"
    )

    def to_payload(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


class SearchRequest(BaseModel):
    """Per-run overrides supplied by the caller."""

    model_config = ConfigDict(populate_by_name=True)

    tmdb_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("tmdbApiKey", "tmdb_api_key")
    )
    plex_movie_urls: list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("plexMovieUrls", "plex_movie_urls"),
    )
    movie_folders: list[str] | None = Field(
        default=None, validation_alias=AliasChoices("movieFolders", "movie_folders")
    )
    tmdb_list_id: str | None = Field(
        default=None, validation_alias=AliasChoices("tmdbListId", "tmdb_list_id")
    )
    tmdb_session_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("tmdbSessionId", "tmdb_session_id"),
    )

    @field_validator("tmdb_api_key", "tmdb_list_id", "tmdb_session_id", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("plex_movie_urls", "movie_folders", mode="before")
    @classmethod
    def _clean_list(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, list):
            cleaned = [str(item).strip() for item in value if str(item).strip()]
            return cleaned or None
        return value
