"""Collection reconciliation: find the collection movies a user is missing.

A run walks every owned movie, resolves it to a TMDB record, expands the
collection it belongs to and compares the members against what the user owns
and what the run has already looked at. Anything released, unowned and not yet
seen becomes a recommendation. Results are pushed incrementally to the event
bus and the store so subscribers can follow along.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Sequence

from ..models import Movie, MovieKey, RunState, SearchEvent, SearchEventType
from ..utils import is_released
from .events import SearchEventBus
from .library import InventoryBuilder, LibrarySource, LibrarySourceError
from .registry import MovieRegistry
from .resolver import MetadataResolver, ResolutionStatus
from .storage import RecommendationStore
from .throttle import CancellationToken, RunCancelledError
from .tmdb import CollectionPart, MetadataAuthError, MetadataServiceError

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 10


@dataclass
class RunHandle:
    """Live state of one run, shared between the run task and its observers.

    Counters are only mutated on the event loop running the search. The
    cancellation token may be set from anywhere.
    """

    id: str = field(default_factory=lambda: secrets.token_hex(8))
    state: RunState = RunState.IDLE
    total_count: int = 0
    searched_count: int = 0
    recommended_count: int = 0
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        self.token.cancel()

    def mark_running(self) -> None:
        self.state = RunState.RUNNING
        self.total_count = 0
        self.searched_count = 0
        self.recommended_count = 0
        self.error = None
        self.started_at = datetime.utcnow()
        self.finished_at = None

    def mark_finished(self, state: RunState, error: str | None = None) -> None:
        self.state = state
        self.error = error
        self.finished_at = datetime.utcnow()

    def to_payload(self) -> dict[str, Any]:
        return {
            "runId": self.id,
            "state": self.state.value,
            "searching": self.state is RunState.RUNNING,
            "totalCount": self.total_count,
            "searchedCount": self.searched_count,
            "recommendedCount": self.recommended_count,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


class Reconciler:
    """Runs one reconciliation over a set of library sources."""

    def __init__(
        self,
        handle: RunHandle,
        registry: MovieRegistry,
        resolver: MetadataResolver,
        *,
        events: SearchEventBus | None = None,
        store: RecommendationStore | None = None,
        today: Callable[[], date] = date.today,
    ):
        self._handle = handle
        self._registry = registry
        self._resolver = resolver
        self._events = events
        self._store = store
        self._today = today
        self._owned: set[MovieKey] = set()
        self._searched: set[MovieKey] = set()
        self._recommended: list[Movie] = []
        self._expanded_collections: set[int] = set()

    @property
    def handle(self) -> RunHandle:
        return self._handle

    @property
    def recommended(self) -> tuple[Movie, ...]:
        return tuple(self._recommended)

    @property
    def owned(self) -> frozenset[MovieKey]:
        return frozenset(self._owned)

    @property
    def searched(self) -> frozenset[MovieKey]:
        return frozenset(self._searched)

    async def run(self, sources: Sequence[LibrarySource]) -> RunState:
        """Execute the run and return its terminal state."""

        self._reset()
        handle = self._handle
        handle.mark_running()
        await self._store_call("start_run", handle.id, handle.started_at)
        logger.info("Starting search run %s over %s library sources", handle.id, len(sources))

        builder = InventoryBuilder(self._registry, on_owned=self._count_owned)
        try:
            owned = await builder.build_owned(sources)
        except LibrarySourceError as exc:
            return await self._fail(f"No library source available: {exc}")

        self._owned = set(owned)
        logger.info("Searching for movie collections across %s owned movies", len(owned))

        try:
            for key in owned:
                if handle.cancelled:
                    return await self._finish(RunState.CANCELLED)

                self._log_progress()
                handle.searched_count += 1
                if key in self._searched:
                    continue

                movie = self._registry.get(key)
                if movie is None:
                    continue
                await self._process(movie)
        except MetadataAuthError as exc:
            return await self._fail(f"TMDB rejected the API key: {exc}")

        if handle.cancelled:
            return await self._finish(RunState.CANCELLED)
        return await self._finish(RunState.COMPLETED)

    def _reset(self) -> None:
        self._owned.clear()
        self._searched.clear()
        self._recommended.clear()
        self._expanded_collections.clear()

    def _count_owned(self, _: Movie) -> None:
        self._handle.total_count += 1

    def _log_progress(self) -> None:
        handle = self._handle
        if not handle.searched_count or handle.searched_count % PROGRESS_LOG_INTERVAL:
            return
        percent = int(handle.searched_count / handle.total_count * 100)
        logger.info(
            "%s%% Complete. Processed %s movies of %s.",
            percent,
            handle.searched_count,
            handle.total_count,
        )

    async def _process(self, movie: Movie) -> None:
        resolution = await self._resolver.resolve(movie)
        if resolution.status is ResolutionStatus.UNRESOLVED:
            # Left out of the searched set so another collection may still reach it.
            return
        if resolution.status is ResolutionStatus.CANCELLED:
            return
        if resolution.status is ResolutionStatus.NO_COLLECTION:
            self._searched.add(movie.key)
            return
        await self._expand_collection(resolution.movie)

    async def _expand_collection(self, movie: Movie) -> None:
        collection_id = movie.collection_id
        if collection_id is None:
            self._searched.add(movie.key)
            return
        if collection_id in self._expanded_collections:
            logger.debug("Collection %s already expanded, skipping %s", collection_id, movie)
            self._searched.add(movie.key)
            self._publish("progress")
            return
        if self._handle.cancelled:
            return

        try:
            collection = await self._resolver.fetch_collection(collection_id)
        except RunCancelledError:
            return
        except MetadataAuthError:
            raise
        except MetadataServiceError as exc:
            logger.error("Error getting collection for %s: %s", movie, exc)
        else:
            self._expanded_collections.add(collection_id)
            parent = self._registry.merge(
                movie.key,
                collection_id=collection.collection_id,
                collection_name=collection.name or None,
            )
            for part in collection.parts:
                if self._handle.cancelled:
                    break
                await self._reconcile_member(parent, part)

        self._searched.add(movie.key)

    async def _reconcile_member(self, parent: Movie, part: CollectionPart) -> None:
        if not part.title:
            logger.warning(
                "No title found for collection movie %s. "
                "Not adding the movie to recommended list.",
                part.tmdb_id,
            )
            return
        year = part.year
        if year is None:
            logger.warning(
                "No year found for %s. Value returned was %r. "
                "Not adding the movie to recommended list.",
                part.title,
                part.release_date,
            )
            return

        member = self._registry.resolve_or_create(part.title, year)
        member = self._registry.merge(
            member.key,
            tmdb_id=part.tmdb_id,
            collection_id=parent.collection_id,
            collection_name=parent.collection_name,
            poster_url=part.poster_url,
        )
        key = member.key

        if key in self._owned:
            self._searched.add(key)
            self._publish("progress")
            return
        if key in self._searched or not is_released(year, self._today()):
            self._publish("progress")
            return
        if self._handle.cancelled:
            return

        try:
            details = await self._resolver.fetch_details(part.tmdb_id)
        except RunCancelledError:
            return
        except MetadataAuthError:
            raise
        except MetadataServiceError as exc:
            logger.warning("Error getting details for collection movie %s: %s", member, exc)
            return

        self._registry.merge(key, imdb_id=details.imdb_id, poster_url=details.poster_url)
        recommendation = Movie(
            title=details.title or member.title,
            year=year,
            tmdb_id=details.tmdb_id,
            imdb_id=details.imdb_id,
            collection_id=parent.collection_id,
            collection_name=parent.collection_name,
            poster_url=part.poster_url or details.poster_url,
        )
        self._recommended.append(recommendation)
        self._searched.add(key)
        self._handle.recommended_count = len(self._recommended)
        logger.debug("Recommending %s from %s", recommendation, parent.collection_name)

        await self._store_call(
            "append_recommendation",
            self._handle.id,
            len(self._recommended) - 1,
            recommendation,
        )
        self._publish("movie_found", recommendation)

    async def _finish(self, state: RunState) -> RunState:
        handle = self._handle
        if state is RunState.CANCELLED:
            logger.info("Search run %s cancelled", handle.id)
            self._searched.clear()
        else:
            logger.info(
                "Search run %s finished with %s recommendations",
                handle.id,
                len(self._recommended),
            )

        await self._store_call("replace_recommendations", handle.id, self.recommended)
        await self._store_call("save_known_movies", self._registry.snapshot())
        handle.mark_finished(state)
        await self._record_run()
        self._publish("cancelled" if state is RunState.CANCELLED else "finished")
        return state

    async def _fail(self, reason: str) -> RunState:
        logger.error("Search run %s failed: %s", self._handle.id, reason)
        self._handle.mark_finished(RunState.FAILED, reason)
        await self._record_run()
        self._publish("failed", message=reason)
        return RunState.FAILED

    async def _record_run(self) -> None:
        handle = self._handle
        await self._store_call(
            "finish_run",
            handle.id,
            state=handle.state,
            total_count=handle.total_count,
            searched_count=handle.searched_count,
            error=handle.error,
            finished_at=handle.finished_at,
        )

    async def _store_call(self, method: str, *args: Any, **kwargs: Any) -> None:
        if self._store is None:
            return
        try:
            await getattr(self._store, method)(*args, **kwargs)
        except Exception:  # pragma: no cover - persistence must not end the run
            logger.exception("Unable to %s for search run %s", method, self._handle.id)

    def _publish(
        self,
        event_type: SearchEventType,
        movie: Movie | None = None,
        *,
        message: str | None = None,
    ) -> None:
        if self._events is None:
            return
        handle = self._handle
        self._events.publish(
            SearchEvent(
                type=event_type,
                run_id=handle.id,
                searched_count=handle.searched_count,
                total_count=handle.total_count,
                movie=movie,
                message=message,
            )
        )
