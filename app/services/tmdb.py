"""Utilities for communicating with The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx

from ..models import Movie
from ..utils import build_image_url, parse_release_year

logger = logging.getLogger(__name__)

COLLECTION_KEY = "belongs_to_collection"


class MetadataServiceError(RuntimeError):
    """Raised when TMDB cannot be reached or returns an unusable payload."""


class MetadataAuthError(MetadataServiceError):
    """Raised when TMDB rejects the API key or session."""


@dataclass(slots=True)
class TMDBSearchResult:
    """Normalized view of a TMDB search or find result."""

    tmdb_id: int
    title: str
    year: int | None = None


@dataclass(slots=True)
class TMDBMovieDetails:
    """Fields of the movie details endpoint used for reconciliation."""

    tmdb_id: int
    title: str
    imdb_id: str | None = None
    year: int | None = None
    poster_url: str | None = None
    collection_id: int | None = None
    collection_name: str | None = None


@dataclass(slots=True)
class CollectionPart:
    """A single member of a TMDB collection."""

    tmdb_id: int
    title: str
    release_date: str | None = None
    poster_url: str | None = None

    @property
    def year(self) -> int | None:
        return parse_release_year(self.release_date)


@dataclass(slots=True)
class TMDBCollection:
    """A TMDB collection along with its members."""

    collection_id: int
    name: str
    parts: list[CollectionPart] = field(default_factory=list)


@dataclass(slots=True)
class ListExportResult:
    """Aggregate outcome of adding recommendations to a TMDB list."""

    list_id: str
    added: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.added + self.failed


class TMDBClient:
    """Thin wrapper around the TMDB v3 HTTP API."""

    def __init__(self, http_client: httpx.AsyncClient, api_key: str | None):
        if not api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._client = http_client
        self._api_key = api_key

    async def search_movie(self, title: str, year: int | None) -> list[TMDBSearchResult]:
        """Search movies by title and year, in the order TMDB ranks them."""

        params: dict[str, Any] = {
            "query": title,
            "include_adult": "false",
            "language": "en-US",
            "page": 1,
        }
        if year:
            params["year"] = year
        payload = await self._get("/search/movie", params)
        return self._parse_results(payload.get("results"))

    async def find_by_imdb_id(self, imdb_id: str) -> list[TMDBSearchResult]:
        """Look up movies by their IMDB identifier."""

        payload = await self._get(
            f"/find/{imdb_id}", {"external_source": "imdb_id", "language": "en-US"}
        )
        return self._parse_results(payload.get("movie_results"))

    async def movie_details(self, tmdb_id: int) -> TMDBMovieDetails:
        """Fetch the details of a movie, including its parent collection."""

        payload = await self._get(f"/movie/{tmdb_id}", {"language": "en-US"})
        try:
            movie_id = int(payload["id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MetadataServiceError(f"TMDB details for {tmdb_id} lack an id") from exc

        collection = payload.get(COLLECTION_KEY)
        collection_id: int | None = None
        collection_name: str | None = None
        if isinstance(collection, dict) and collection.get("id") is not None:
            try:
                collection_id = int(collection["id"])
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed collection reference on %s", tmdb_id)
            else:
                collection_name = collection.get("name") or None

        return TMDBMovieDetails(
            tmdb_id=movie_id,
            title=str(payload.get("title") or payload.get("original_title") or ""),
            imdb_id=payload.get("imdb_id") or None,
            year=parse_release_year(payload.get("release_date")),
            poster_url=build_image_url(payload.get("poster_path")),
            collection_id=collection_id,
            collection_name=collection_name,
        )

    async def collection_details(self, collection_id: int) -> TMDBCollection:
        """Fetch a collection and every movie that belongs to it."""

        payload = await self._get(f"/collection/{collection_id}", {"language": "en-US"})
        raw_parts = payload.get("parts")
        if not isinstance(raw_parts, list):
            raise MetadataServiceError(f"TMDB collection {collection_id} has no parts")

        parts: list[CollectionPart] = []
        for entry in raw_parts:
            if not isinstance(entry, dict):
                continue
            try:
                part_id = int(entry["id"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping collection %s part without id", collection_id)
                continue
            parts.append(
                CollectionPart(
                    tmdb_id=part_id,
                    title=str(entry.get("title") or entry.get("original_title") or ""),
                    release_date=entry.get("release_date") or None,
                    poster_url=build_image_url(entry.get("poster_path")),
                )
            )

        return TMDBCollection(
            collection_id=int(payload.get("id") or collection_id),
            name=str(payload.get("name") or ""),
            parts=parts,
        )

    async def validate_api_key(self) -> bool:
        """Return whether TMDB accepts the configured API key."""

        try:
            await self._get("/configuration", {})
        except MetadataAuthError:
            return False
        return True

    async def create_request_token(self) -> str:
        """Start the interactive session exchange by requesting a token."""

        payload = await self._get("/authentication/token/new", {})
        token = payload.get("request_token")
        if not token:
            raise MetadataServiceError("TMDB did not return a request token")
        return str(token)

    async def create_session(self, request_token: str) -> str:
        """Exchange a user-approved request token for a session id."""

        payload = await self._post(
            "/authentication/session/new", {}, {"request_token": request_token}
        )
        session_id = payload.get("session_id")
        if not session_id:
            raise MetadataAuthError("TMDB did not return a session id")
        return str(session_id)

    async def add_to_list(
        self, list_id: str, session_id: str, movies: Iterable[Movie]
    ) -> ListExportResult:
        """Add each movie to a user list; failures are counted, not raised."""

        result = ListExportResult(list_id=list_id)
        for movie in movies:
            if movie.tmdb_id is None:
                result.failed += 1
                continue
            try:
                await self._post(
                    f"/list/{list_id}/add_item",
                    {"session_id": session_id},
                    {"media_id": movie.tmdb_id},
                )
            except MetadataServiceError as exc:
                logger.warning("Unable to add %s to TMDB list %s: %s", movie, list_id, exc)
                result.failed += 1
            else:
                result.added += 1
        return result

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def _post(
        self, path: str, params: dict[str, Any], body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request("POST", path, params=params, json=body)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any],
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        query = {**params, "api_key": self._api_key}
        try:
            response = await self._client.request(method, path, params=query, json=json)
        except httpx.HTTPError as exc:
            raise MetadataServiceError(
                f"Transport error talking to TMDB ({exc.__class__.__name__}) for {path}"
            ) from exc

        if response.status_code == 401:
            raise MetadataAuthError(f"TMDB rejected the credentials for {path}")
        if response.status_code >= 400:
            raise MetadataServiceError(
                f"TMDB returned {response.status_code} for {path}: {response.text[:200]}"
            )
        if not response.content:
            raise MetadataServiceError(f"TMDB returned an empty body for {path}")
        try:
            data = response.json()
        except ValueError as exc:
            raise MetadataServiceError(f"TMDB returned malformed JSON for {path}") from exc
        if not isinstance(data, dict):
            raise MetadataServiceError(f"Unexpected TMDB response structure for {path}")
        return data

    @staticmethod
    def _parse_results(results: Any) -> list[TMDBSearchResult]:
        if results is None:
            raise MetadataServiceError("TMDB response did not include results")
        if not isinstance(results, list):
            raise MetadataServiceError("TMDB results were not a list")

        parsed: list[TMDBSearchResult] = []
        for candidate in results:
            if not isinstance(candidate, dict) or candidate.get("id") is None:
                continue
            try:
                tmdb_id = int(candidate["id"])
            except (TypeError, ValueError):
                continue
            parsed.append(
                TMDBSearchResult(
                    tmdb_id=tmdb_id,
                    title=str(candidate.get("title") or candidate.get("name") or ""),
                    year=parse_release_year(candidate.get("release_date")),
                )
            )
        return parsed
