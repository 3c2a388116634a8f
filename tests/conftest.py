"""Pytest configuration and test helpers."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeTMDB:
    """In-memory stand-in for the TMDB endpoints used by a search run."""

    base_url = "https://tmdb.test"

    def __init__(self) -> None:
        self.movies: dict[int, dict[str, Any]] = {}
        self.collections: dict[int, dict[str, Any]] = {}
        self.search_results: dict[str, list[dict[str, Any]]] = {}
        self.find_results: dict[str, list[dict[str, Any]]] = {}
        self.failures: dict[str, int] = {}
        self.list_items: list[int] = []
        self.requests: list[httpx.Request] = []
        self.on_request: Callable[[httpx.Request], None] | None = None

    def add_movie(
        self,
        tmdb_id: int,
        title: str,
        release_date: str,
        *,
        collection: tuple[int, str] | None = None,
        imdb_id: str | None = None,
    ) -> None:
        self.movies[tmdb_id] = {
            "id": tmdb_id,
            "title": title,
            "release_date": release_date,
            "imdb_id": imdb_id,
            "poster_path": f"/poster-{tmdb_id}.jpg",
            "belongs_to_collection": (
                {"id": collection[0], "name": collection[1]} if collection else None
            ),
        }

    def add_collection(
        self, collection_id: int, name: str, parts: list[tuple[int, str, str]]
    ) -> None:
        self.collections[collection_id] = {
            "id": collection_id,
            "name": name,
            "parts": [
                {
                    "id": tmdb_id,
                    "title": title,
                    "release_date": release_date,
                    "poster_path": f"/poster-{tmdb_id}.jpg",
                }
                for tmdb_id, title, release_date in parts
            ],
        }

    def calls(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)

    @property
    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)

        path = request.url.path
        if path in self.failures:
            return httpx.Response(self.failures[path], json={"status_message": "failure"})
        if path == "/search/movie":
            query = request.url.params.get("query", "")
            return httpx.Response(200, json={"results": self.search_results.get(query, [])})
        if path.startswith("/find/"):
            imdb_id = path.rsplit("/", 1)[1]
            return httpx.Response(
                200, json={"movie_results": self.find_results.get(imdb_id, [])}
            )
        if path.startswith("/movie/"):
            movie = self.movies.get(int(path.rsplit("/", 1)[1]))
            if movie is None:
                return httpx.Response(404, json={"status_message": "not found"})
            return httpx.Response(200, json=movie)
        if path.startswith("/collection/"):
            collection = self.collections.get(int(path.rsplit("/", 1)[1]))
            if collection is None:
                return httpx.Response(404, json={"status_message": "not found"})
            return httpx.Response(200, json=collection)
        if path.startswith("/list/") and path.endswith("/add_item"):
            body = json.loads(request.content)
            self.list_items.append(int(body["media_id"]))
            return httpx.Response(201, json={"status_code": 12})
        return httpx.Response(404, json={"status_message": "unknown endpoint"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handler), base_url=self.base_url
        )


@pytest.fixture
def fake_tmdb() -> FakeTMDB:
    """Return a fresh fake TMDB service."""

    return FakeTMDB()


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"
