"""Resolution of owned movies to TMDB records and their collections."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..models import Movie
from .registry import MovieRegistry
from .throttle import CancellationToken, RequestThrottle, RunCancelledError
from .tmdb import (
    MetadataAuthError,
    MetadataServiceError,
    TMDBClient,
    TMDBCollection,
    TMDBMovieDetails,
    TMDBSearchResult,
)

logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    """Outcome of resolving one owned movie."""

    COLLECTION = "collection"
    NO_COLLECTION = "no_collection"
    UNRESOLVED = "unresolved"
    CANCELLED = "cancelled"


class ResolutionStrategy(str, Enum):
    """Which lookup produced the TMDB identity."""

    KNOWN_COLLECTION = "known_collection"
    DETAILS = "details"
    FIND = "find"
    SEARCH = "search"


@dataclass(slots=True)
class Resolution:
    """Result of :meth:`MetadataResolver.resolve`."""

    status: ResolutionStatus
    strategy: ResolutionStrategy
    movie: Movie


class MetadataResolver:
    """Maps owned movies to TMDB identities, cheapest lookup first.

    Every TMDB call goes through the shared :class:`RequestThrottle`, and the
    cancellation token is checked again once the throttle wait is over, right
    before each call is issued.
    ``MetadataAuthError`` is never swallowed here because a rejected key makes
    the remaining work pointless.
    """

    def __init__(
        self,
        client: TMDBClient,
        registry: MovieRegistry,
        throttle: RequestThrottle,
        token: CancellationToken,
    ):
        self._client = client
        self._registry = registry
        self._throttle = throttle
        self._token = token

    async def resolve(self, movie: Movie) -> Resolution:
        if movie.tmdb_id is not None and movie.collection_id is not None:
            logger.debug("Used collection id to get %s", movie)
            return Resolution(
                ResolutionStatus.COLLECTION, ResolutionStrategy.KNOWN_COLLECTION, movie
            )
        if movie.tmdb_id is not None:
            logger.debug("Used TMDB id to get %s", movie)
            return await self._resolve_details(
                movie, movie.tmdb_id, ResolutionStrategy.DETAILS
            )

        if movie.imdb_id:
            logger.debug("Used 'find' to search for %s", movie)
            strategy = ResolutionStrategy.FIND
        else:
            logger.debug("Used 'search' to search for %s", movie)
            strategy = ResolutionStrategy.SEARCH

        if self._token.cancelled:
            return Resolution(ResolutionStatus.CANCELLED, strategy, movie)
        try:
            async with self._throttle.slot(search=True, token=self._token):
                if strategy is ResolutionStrategy.FIND:
                    results = await self._client.find_by_imdb_id(movie.imdb_id or "")
                else:
                    results = await self._client.search_movie(movie.title, movie.year)
        except RunCancelledError:
            return Resolution(ResolutionStatus.CANCELLED, strategy, movie)
        except MetadataAuthError:
            raise
        except MetadataServiceError as exc:
            logger.warning("Error searching for movie %s: %s", movie, exc)
            return Resolution(ResolutionStatus.UNRESOLVED, strategy, movie)

        match = self._first_result(movie, results)
        if match is None:
            return Resolution(ResolutionStatus.UNRESOLVED, strategy, movie)

        movie = self._registry.merge(movie.key, tmdb_id=match.tmdb_id)
        return await self._resolve_details(movie, match.tmdb_id, strategy)

    async def fetch_details(self, tmdb_id: int) -> TMDBMovieDetails:
        """Fetch movie details through the throttle.

        Raises :class:`RunCancelledError` when the run is cancelled first.
        """

        async with self._throttle.slot(token=self._token):
            return await self._client.movie_details(tmdb_id)

    async def fetch_collection(self, collection_id: int) -> TMDBCollection:
        """Fetch a collection's member list through the throttle."""

        async with self._throttle.slot(token=self._token):
            return await self._client.collection_details(collection_id)

    async def _resolve_details(
        self, movie: Movie, tmdb_id: int, strategy: ResolutionStrategy
    ) -> Resolution:
        if self._token.cancelled:
            return Resolution(ResolutionStatus.CANCELLED, strategy, movie)
        try:
            details = await self.fetch_details(tmdb_id)
        except RunCancelledError:
            return Resolution(ResolutionStatus.CANCELLED, strategy, movie)
        except MetadataAuthError:
            raise
        except MetadataServiceError as exc:
            logger.warning("Error getting movie details for %s: %s", movie, exc)
            return Resolution(ResolutionStatus.UNRESOLVED, strategy, movie)

        movie = self._registry.merge(
            movie.key,
            imdb_id=details.imdb_id,
            poster_url=details.poster_url,
            collection_id=details.collection_id,
            collection_name=details.collection_name,
        )
        if details.collection_id is None:
            return Resolution(ResolutionStatus.NO_COLLECTION, strategy, movie)
        return Resolution(ResolutionStatus.COLLECTION, strategy, movie)

    @staticmethod
    def _first_result(
        movie: Movie, results: list[TMDBSearchResult]
    ) -> TMDBSearchResult | None:
        if not results:
            logger.warning("Results not found for %s", movie)
            return None
        if len(results) > 1:
            logger.debug(
                "Results for %s came back with %s results. Using first result.",
                movie,
                len(results),
            )
        return results[0]
