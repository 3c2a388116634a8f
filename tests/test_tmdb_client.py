"""Tests for the TMDB API client helpers."""

from __future__ import annotations

from typing import Callable

import httpx
import pytest

from app.models import Movie
from app.services.tmdb import MetadataAuthError, MetadataServiceError, TMDBClient


def build_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://tmdb.test"
    )


def test_client_requires_api_key() -> None:
    with pytest.raises(ValueError):
        TMDBClient(httpx.AsyncClient(), None)


@pytest.mark.anyio("asyncio")
async def test_search_movie_sends_key_and_year_and_keeps_order() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "results": [
                    {"id": 603, "title": "The Matrix", "release_date": "1999-03-31"},
                    {"id": "bad", "title": "Broken"},
                    {"id": 55931, "title": "The Matrix Revisited", "release_date": ""},
                ]
            },
        )

    async with build_client(handler) as http_client:
        client = TMDBClient(http_client, "secret")
        results = await client.search_movie("The Matrix", 1999)

    assert [result.tmdb_id for result in results] == [603, 55931]
    assert results[0].year == 1999
    assert results[1].year is None
    params = requests[0].url.params
    assert requests[0].url.path == "/search/movie"
    assert params["api_key"] == "secret"
    assert params["query"] == "The Matrix"
    assert params["year"] == "1999"


@pytest.mark.anyio("asyncio")
async def test_find_by_imdb_id_reads_movie_results() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/find/tt0133093"
        assert request.url.params["external_source"] == "imdb_id"
        return httpx.Response(
            200,
            json={"movie_results": [{"id": 603, "title": "The Matrix"}], "tv_results": []},
        )

    async with build_client(handler) as http_client:
        results = await TMDBClient(http_client, "secret").find_by_imdb_id("tt0133093")

    assert [result.tmdb_id for result in results] == [603]


@pytest.mark.anyio("asyncio")
async def test_movie_details_reads_collection() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "id": 603,
                "title": "The Matrix",
                "imdb_id": "tt0133093",
                "release_date": "1999-03-31",
                "poster_path": "/matrix.jpg",
                "belongs_to_collection": {"id": 2344, "name": "The Matrix Collection"},
            },
        )

    async with build_client(handler) as http_client:
        details = await TMDBClient(http_client, "secret").movie_details(603)

    assert details.tmdb_id == 603
    assert details.imdb_id == "tt0133093"
    assert details.year == 1999
    assert details.poster_url == "https://image.tmdb.org/t/p/w500/matrix.jpg"
    assert details.collection_id == 2344
    assert details.collection_name == "The Matrix Collection"


@pytest.mark.anyio("asyncio")
async def test_movie_details_without_collection() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": 949, "title": "Heat", "belongs_to_collection": None})

    async with build_client(handler) as http_client:
        details = await TMDBClient(http_client, "secret").movie_details(949)

    assert details.collection_id is None
    assert details.collection_name is None


@pytest.mark.anyio("asyncio")
async def test_collection_details_skips_parts_without_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "id": 2344,
                "name": "The Matrix Collection",
                "parts": [
                    {"id": 603, "title": "The Matrix", "release_date": "1999-03-31"},
                    {"title": "No id"},
                    {"id": 604, "title": "The Matrix Reloaded", "release_date": ""},
                ],
            },
        )

    async with build_client(handler) as http_client:
        collection = await TMDBClient(http_client, "secret").collection_details(2344)

    assert collection.name == "The Matrix Collection"
    assert [part.tmdb_id for part in collection.parts] == [603, 604]
    assert collection.parts[0].year == 1999
    assert collection.parts[1].release_date is None
    assert collection.parts[1].year is None


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="server error"),
        httpx.Response(404, json={"status_message": "missing"}),
        httpx.Response(200, content=b""),
        httpx.Response(200, content=b"{not json"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"page": 1}),
    ],
)
async def test_unusable_responses_raise_service_error(response: httpx.Response) -> None:
    """Malformed payloads and failures surface as MetadataServiceError."""

    def handler(request: httpx.Request) -> httpx.Response:
        return response

    async with build_client(handler) as http_client:
        client = TMDBClient(http_client, "secret")
        with pytest.raises(MetadataServiceError) as excinfo:
            await client.search_movie("Heat", 1995)

    assert not isinstance(excinfo.value, MetadataAuthError)


@pytest.mark.anyio("asyncio")
async def test_transport_errors_raise_service_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with build_client(handler) as http_client:
        with pytest.raises(MetadataServiceError, match="ConnectError"):
            await TMDBClient(http_client, "secret").movie_details(1)


@pytest.mark.anyio("asyncio")
async def test_rejected_key_raises_auth_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"status_message": "Invalid API key"})

    async with build_client(handler) as http_client:
        client = TMDBClient(http_client, "wrong")
        with pytest.raises(MetadataAuthError):
            await client.movie_details(603)
        assert await client.validate_api_key() is False


@pytest.mark.anyio("asyncio")
async def test_session_exchange() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/authentication/token/new":
            return httpx.Response(200, json={"success": True, "request_token": "req-token"})
        if request.url.path == "/authentication/session/new":
            return httpx.Response(200, json={"success": True, "session_id": "session-1"})
        return httpx.Response(404)

    async with build_client(handler) as http_client:
        client = TMDBClient(http_client, "secret")
        token = await client.create_request_token()
        session_id = await client.create_session(token)

    assert token == "req-token"
    assert session_id == "session-1"
    assert requests[1].method == "POST"
    assert b"req-token" in requests[1].content


@pytest.mark.anyio("asyncio")
async def test_add_to_list_counts_failures_without_aborting() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["session_id"] == "session-1"
        if b"666" in request.content:
            return httpx.Response(403, json={"status_message": "duplicate"})
        return httpx.Response(201, json={"status_code": 12})

    movies = [
        Movie(title="Movie B", year=2002, tmdb_id=11),
        Movie(title="Movie C", year=2003, tmdb_id=666),
        Movie(title="Movie D", year=2004),
        Movie(title="Movie E", year=2005, tmdb_id=13),
    ]

    async with build_client(handler) as http_client:
        result = await TMDBClient(http_client, "secret").add_to_list("42", "session-1", movies)

    assert result.list_id == "42"
    assert result.added == 2
    assert result.failed == 2
    assert result.total == 4
