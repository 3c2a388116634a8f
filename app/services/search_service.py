"""Supervises reconciliation runs on behalf of the HTTP layer."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from datetime import date
from typing import Any, Callable

import httpx

from ..config import Settings
from ..models import Movie, RunState, SearchRequest
from .events import SearchEventBus
from .library import FolderLibrarySource, LibrarySource, PlexLibrarySource
from .reconciler import Reconciler, RunHandle
from .registry import MovieRegistry
from .resolver import MetadataResolver
from .storage import RecommendationStore
from .throttle import Clock, RequestThrottle, Sleeper
from .tmdb import ListExportResult, MetadataServiceError, TMDBClient

logger = logging.getLogger(__name__)


class PreconditionError(ValueError):
    """Raised when a run cannot start because configuration is missing."""


class RunInProgressError(RuntimeError):
    """Raised when a run is requested while another one is active."""


class SearchService:
    """Starts, observes and cancels the single active reconciliation run.

    Only one run may be active; :meth:`start` rejects a second request with
    :class:`RunInProgressError` rather than restarting.
    """

    def __init__(
        self,
        settings: Settings,
        tmdb_http_client: httpx.AsyncClient,
        library_http_client: httpx.AsyncClient,
        *,
        store: RecommendationStore | None = None,
        events: SearchEventBus | None = None,
        today: Callable[[], date] = date.today,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._settings = settings
        self._tmdb_http = tmdb_http_client
        self._library_http = library_http_client
        self._store = store
        self.events = events or SearchEventBus()
        self._today = today
        self._clock = clock
        self._sleep = sleep
        self._handle: RunHandle | None = None
        self._reconciler: Reconciler | None = None
        self._task: asyncio.Task[None] | None = None
        self._last_export: ListExportResult | None = None

    @property
    def current(self) -> RunHandle | None:
        return self._handle

    @property
    def is_searching(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, request: SearchRequest | None = None) -> RunHandle:
        """Validate preconditions and launch a run in the background."""

        request = request or SearchRequest()
        if self.is_searching:
            raise RunInProgressError("A search is already running")

        api_key = request.tmdb_api_key or self._settings.tmdb_api_key
        if not api_key:
            raise PreconditionError("No TMDB API key configured")
        sources = self._build_sources(request)
        if not sources:
            raise PreconditionError(
                "No library source configured. Add a Plex URL or a movie folder."
            )

        # Nothing may be awaited between the is_searching check and create_task.
        handle = RunHandle()
        handle.mark_running()
        self._handle = handle
        self._reconciler = None
        self._last_export = None
        client = TMDBClient(self._tmdb_http, api_key)
        self._task = asyncio.create_task(self._run(handle, sources, client, request))
        return handle

    async def wait(self) -> RunHandle | None:
        """Wait for the active run, if any, and return its handle."""

        if self._task is not None:
            await asyncio.shield(self._task)
        return self._handle

    def cancel(self) -> bool:
        """Ask the active run to stop at its next check point."""

        if not self.is_searching or self._handle is None:
            return False
        logger.info("Cancelling search run %s", self._handle.id)
        self._handle.cancel()
        return True

    async def stop(self) -> None:
        """Cancel any active run and wait for it to wind down."""

        if self._task is None:
            return
        self.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def recommended(self) -> list[Movie]:
        """Return a copy of the active or last run's recommendations."""

        if self._reconciler is None:
            return []
        return list(self._reconciler.recommended)

    async def stored_recommendations(self) -> list[Movie]:
        if self._store is None:
            return []
        return await self._store.load_recommendations()

    def status(self) -> dict[str, Any]:
        if self._handle is None:
            payload = RunHandle().to_payload()
            payload["runId"] = None
        else:
            payload = self._handle.to_payload()
        payload["listExport"] = (
            {
                "listId": self._last_export.list_id,
                "added": self._last_export.added,
                "failed": self._last_export.failed,
            }
            if self._last_export
            else None
        )
        return payload

    def _build_sources(self, request: SearchRequest) -> list[LibrarySource]:
        plex_urls = request.plex_movie_urls or list(self._settings.plex_movie_urls)
        folders = request.movie_folders or list(self._settings.movie_folders)
        sources: list[LibrarySource] = [
            PlexLibrarySource(self._library_http, url) for url in plex_urls
        ]
        sources.extend(
            FolderLibrarySource(
                folder,
                extensions=self._settings.movie_extensions,
                recursive=self._settings.folder_recursive,
            )
            for folder in folders
        )
        return sources

    async def _load_known_movies(self) -> list[Movie]:
        if self._store is None:
            return []
        try:
            return await self._store.load_known_movies()
        except Exception:  # pragma: no cover - the cache is an optimisation only
            logger.exception("Unable to load the known movie cache")
            return []

    def _build_reconciler(
        self, handle: RunHandle, client: TMDBClient, known_movies: list[Movie]
    ) -> Reconciler:
        registry = MovieRegistry(known_movies)
        throttle = RequestThrottle(
            self._settings.search_delay_seconds,
            self._settings.detail_delay_seconds,
            clock=self._clock,
            sleep=self._sleep,
        )
        resolver = MetadataResolver(client, registry, throttle, handle.token)
        return Reconciler(
            handle,
            registry,
            resolver,
            events=self.events,
            store=self._store,
            today=self._today,
        )

    async def _run(
        self,
        handle: RunHandle,
        sources: list[LibrarySource],
        client: TMDBClient,
        request: SearchRequest,
    ) -> None:
        try:
            known_movies = await self._load_known_movies()
            reconciler = self._build_reconciler(handle, client, known_movies)
            self._reconciler = reconciler
            state = await reconciler.run(sources)
            if state is RunState.COMPLETED:
                self._last_export = await self._export_list(
                    client, request, reconciler.recommended
                )
        except Exception as exc:  # pragma: no cover - background safety net
            logger.exception("Search run %s crashed: %s", handle.id, exc)
            if not handle.state.is_terminal:
                handle.mark_finished(RunState.FAILED, str(exc))

    async def _export_list(
        self,
        client: TMDBClient,
        request: SearchRequest,
        movies: tuple[Movie, ...],
    ) -> ListExportResult | None:
        list_id = request.tmdb_list_id or self._settings.tmdb_list_id
        if not list_id:
            return None
        if not request.tmdb_session_id:
            logger.warning(
                "TMDB list %s configured but no session id supplied; skipping list export",
                list_id,
            )
            return None
        try:
            result = await client.add_to_list(list_id, request.tmdb_session_id, movies)
        except MetadataServiceError as exc:
            logger.warning("Unable to add movies to TMDB list %s: %s", list_id, exc)
            return None
        logger.info(
            "%s movies added to list, %s failed. List located at "
            "https://www.themoviedb.org/list/%s",
            result.added,
            result.failed,
            list_id,
        )
        return result
