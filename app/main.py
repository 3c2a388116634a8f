"""Entry point for the FastAPI-powered Gap Finder service."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager, suppress
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import settings
from .database import Database
from .models import SearchRequest
from .services.library import LibrarySourceError, PlexClient
from .services.search_service import (
    PreconditionError,
    RunInProgressError,
    SearchService,
)
from .services.storage import RecommendationStore
from .services.tmdb import MetadataAuthError, MetadataServiceError, TMDBClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    library_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            timeout=httpx.Timeout(settings.library_timeout_seconds, connect=10.0),
            headers={"Accept": "application/xml"},
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    search_service = SearchService(
        settings,
        tmdb_http_client,
        library_http_client,
        store=RecommendationStore(database.session_factory),
    )

    fastapi_app.state.search_service = search_service
    fastapi_app.state.plex_client = PlexClient(library_http_client)
    fastapi_app.state.tmdb_http_client = tmdb_http_client
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await search_service.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Find the movies missing from the collections in your library",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_search_service(app: FastAPI) -> SearchService:
    service = getattr(app.state, "search_service", None)
    if not isinstance(service, SearchService):
        raise RuntimeError("Search service not initialised")
    return service


def get_plex_client(app: FastAPI) -> PlexClient:
    client = getattr(app.state, "plex_client", None)
    if not isinstance(client, PlexClient):
        raise RuntimeError("Plex client not initialised")
    return client


def get_tmdb_client(app: FastAPI, api_key: str | None) -> TMDBClient:
    http_client = getattr(app.state, "tmdb_http_client", None)
    if not isinstance(http_client, httpx.AsyncClient):
        raise RuntimeError("TMDB HTTP client not initialised")
    resolved_key = api_key or settings.tmdb_api_key
    if not resolved_key:
        raise HTTPException(status_code=400, detail="No TMDB API key configured")
    return TMDBClient(http_client, resolved_key)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def _optional_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/search")
    async def start_search(request: Request) -> JSONResponse:
        service = get_search_service(fastapi_app)
        payload = await _json_body(request)
        try:
            search_request = SearchRequest.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc

        try:
            await service.start(search_request)
        except PreconditionError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RunInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return JSONResponse(service.status(), status_code=202)

    @fastapi_app.post("/api/search/cancel")
    async def cancel_search() -> JSONResponse:
        service = get_search_service(fastapi_app)
        cancelled = service.cancel()
        return JSONResponse({"cancelled": cancelled, **service.status()})

    @fastapi_app.get("/api/search/status")
    async def search_status() -> JSONResponse:
        service = get_search_service(fastapi_app)
        return JSONResponse(service.status())

    @fastapi_app.get("/api/search/recommended")
    async def recommended_movies() -> JSONResponse:
        service = get_search_service(fastapi_app)
        handle = service.current
        if handle is not None:
            movies = service.recommended()
            live = True
        else:
            movies = await service.stored_recommendations()
            live = False
        return JSONResponse(
            {
                "runId": handle.id if handle else None,
                "live": live,
                "movies": [movie.to_payload() for movie in movies],
            }
        )

    @fastapi_app.websocket("/ws/search")
    async def search_events(websocket: WebSocket) -> None:
        service = get_search_service(fastapi_app)
        await websocket.accept()
        with service.events.subscribe() as queue:
            await websocket.send_json({"type": "status", **service.status()})

            async def forward() -> None:
                while True:
                    event = await queue.get()
                    await websocket.send_json(event.to_payload())

            forward_task = asyncio.create_task(forward())
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
            finally:
                forward_task.cancel()
                with suppress(asyncio.CancelledError, WebSocketDisconnect):
                    await forward_task
        logger.debug("Search event subscriber disconnected")

    @fastapi_app.post("/api/tmdb/test-key")
    async def test_tmdb_key(request: Request) -> dict[str, bool]:
        payload = await _json_body(request)
        api_key = _optional_str(payload, "tmdbApiKey", "tmdb_api_key")
        if not api_key:
            return {"valid": False}
        client = get_tmdb_client(fastapi_app, api_key)
        try:
            valid = await client.validate_api_key()
        except MetadataServiceError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"valid": valid}

    @fastapi_app.post("/api/tmdb/request-token")
    async def tmdb_request_token(request: Request) -> dict[str, str]:
        payload = await _json_body(request)
        client = get_tmdb_client(
            fastapi_app, _optional_str(payload, "tmdbApiKey", "tmdb_api_key")
        )
        try:
            token = await client.create_request_token()
        except MetadataAuthError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except MetadataServiceError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        authorize_url = f"{str(settings.tmdb_authorize_url).rstrip('/')}/{token}"
        return {"requestToken": token, "authorizeUrl": authorize_url}

    @fastapi_app.post("/api/tmdb/session")
    async def tmdb_session(request: Request) -> dict[str, str]:
        payload = await _json_body(request)
        request_token = _optional_str(payload, "requestToken", "request_token")
        if not request_token:
            raise HTTPException(status_code=400, detail="requestToken is required")
        client = get_tmdb_client(
            fastapi_app, _optional_str(payload, "tmdbApiKey", "tmdb_api_key")
        )
        try:
            session_id = await client.create_session(request_token)
        except MetadataAuthError as exc:
            raise HTTPException(
                status_code=400,
                detail="TMDB rejected the request token. Approve it and try again.",
            ) from exc
        except MetadataServiceError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"sessionId": session_id}

    @fastapi_app.get("/api/plex/libraries")
    async def plex_libraries(address: str, token: str, port: int = 32400) -> JSONResponse:
        plex = get_plex_client(fastapi_app)
        try:
            libraries = await plex.list_movie_libraries(address, port, token)
        except LibrarySourceError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse(
            {
                "libraries": [
                    {
                        **library.to_payload(),
                        "url": plex.build_library_url(address, port, token, library.key),
                    }
                    for library in libraries
                ]
            }
        )


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
