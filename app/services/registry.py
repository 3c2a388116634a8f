"""Identity registry keeping one merged record per movie."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ..models import Movie, MovieKey

logger = logging.getLogger(__name__)

MERGEABLE_FIELDS = frozenset(
    {"tmdb_id", "imdb_id", "collection_id", "collection_name", "poster_url"}
)


class MovieRegistry:
    """Owns every :class:`Movie` record seen during a run, keyed by identity."""

    def __init__(self, seed: Iterable[Movie] = ()):
        self._movies: dict[MovieKey, Movie] = {}
        for movie in seed:
            self.add(movie)

    def __len__(self) -> int:
        return len(self._movies)

    def __contains__(self, key: object) -> bool:
        return key in self._movies

    def get(self, key: MovieKey) -> Movie | None:
        return self._movies.get(key)

    def resolve_or_create(self, title: str, year: int | None) -> Movie:
        """Return the record for ``(title, year)``, registering a placeholder if new."""

        key = MovieKey.of(title, year)
        existing = self._movies.get(key)
        if existing is not None:
            return existing
        movie = Movie(title=title, year=int(year or 0))
        self._movies[key] = movie
        return movie

    def add(self, movie: Movie) -> Movie:
        """Insert ``movie`` or merge its known fields into the existing record."""

        key = movie.key
        if key not in self._movies:
            self._movies[key] = movie
            return movie
        fields = {name: getattr(movie, name) for name in MERGEABLE_FIELDS}
        return self.merge(key, **fields)

    def merge(self, key: MovieKey, **fields: Any) -> Movie:
        """Overlay the non-null ``fields`` onto the record stored for ``key``.

        Known values are only ever replaced by other known values, so a record
        can gain information but never lose it.
        """

        existing = self._movies.get(key)
        if existing is None:
            raise KeyError(f"Movie {key.title!r} ({key.year}) is not registered")

        unknown = set(fields) - MERGEABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot merge identity fields: {', '.join(sorted(unknown))}")

        update = {
            name: value
            for name, value in fields.items()
            if value not in (None, "") and getattr(existing, name) != value
        }
        if not update:
            return existing

        logger.debug("Merging %s into %s", sorted(update), existing)
        merged = existing.model_copy(update=update)
        self._movies[key] = merged
        return merged

    def snapshot(self) -> list[Movie]:
        """Return a copy of every registered record."""

        return list(self._movies.values())
