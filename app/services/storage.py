"""Persistence of runs, recommendations and the known-movie cache."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import KnownMovie, RecommendedMovie, SearchRun
from ..models import Movie, RunState

logger = logging.getLogger(__name__)


def _record_to_movie(record: RecommendedMovie | KnownMovie) -> Movie:
    return Movie(
        title=record.title,
        year=record.year,
        tmdb_id=record.tmdb_id,
        imdb_id=record.imdb_id,
        collection_id=record.collection_id,
        collection_name=record.collection_name,
        poster_url=record.poster_url,
    )


def _movie_columns(movie: Movie) -> dict[str, object]:
    return {
        "title": movie.title,
        "year": movie.year,
        "tmdb_id": movie.tmdb_id,
        "imdb_id": movie.imdb_id,
        "collection_id": movie.collection_id,
        "collection_name": movie.collection_name,
        "poster_url": movie.poster_url,
    }


class RecommendationStore:
    """Writes run results through an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def start_run(self, run_id: str, started_at: datetime) -> None:
        async with self._session_factory() as session:
            session.add(
                SearchRun(
                    id=run_id,
                    state=RunState.RUNNING.value,
                    started_at=started_at,
                )
            )
            await session.commit()

    async def finish_run(
        self,
        run_id: str,
        *,
        state: RunState,
        total_count: int,
        searched_count: int,
        error: str | None = None,
        finished_at: datetime | None = None,
    ) -> None:
        async with self._session_factory() as session:
            run = await session.get(SearchRun, run_id)
            if run is None:
                logger.warning("Search run %s was never recorded", run_id)
                return
            run.state = state.value
            run.total_count = total_count
            run.searched_count = searched_count
            run.error = error
            run.finished_at = finished_at or datetime.utcnow()
            await session.commit()

    async def append_recommendation(self, run_id: str, position: int, movie: Movie) -> None:
        """Persist one newly found movie while the run is still going."""

        async with self._session_factory() as session:
            session.add(
                RecommendedMovie(run_id=run_id, position=position, **_movie_columns(movie))
            )
            await session.commit()

    async def replace_recommendations(self, run_id: str, movies: Iterable[Movie]) -> None:
        """Overwrite the stored list of a run with ``movies``."""

        async with self._session_factory() as session:
            await session.execute(
                delete(RecommendedMovie).where(RecommendedMovie.run_id == run_id)
            )
            for position, movie in enumerate(movies):
                session.add(
                    RecommendedMovie(
                        run_id=run_id, position=position, **_movie_columns(movie)
                    )
                )
            await session.commit()

    async def load_recommendations(self, run_id: str | None = None) -> list[Movie]:
        """Return the stored list of ``run_id``, or of the latest run."""

        async with self._session_factory() as session:
            if run_id is None:
                stmt = select(SearchRun.id).order_by(SearchRun.started_at.desc()).limit(1)
                run_id = (await session.execute(stmt)).scalar_one_or_none()
                if run_id is None:
                    return []
            stmt = (
                select(RecommendedMovie)
                .where(RecommendedMovie.run_id == run_id)
                .order_by(RecommendedMovie.position)
            )
            records = (await session.execute(stmt)).scalars().all()
        return [_record_to_movie(record) for record in records]

    async def load_known_movies(self) -> list[Movie]:
        async with self._session_factory() as session:
            records = (await session.execute(select(KnownMovie))).scalars().all()
        return [_record_to_movie(record) for record in records]

    async def save_known_movies(self, movies: Iterable[Movie]) -> int:
        """Upsert every movie into the identity cache and return how many changed."""

        changed = 0
        async with self._session_factory() as session:
            existing = {
                (record.title_key, record.year): record
                for record in (await session.execute(select(KnownMovie))).scalars()
            }
            for movie in movies:
                key = movie.key
                columns = _movie_columns(movie)
                record = existing.get((key.title, key.year))
                if record is None:
                    record = KnownMovie(title_key=key.title, **columns)
                    session.add(record)
                    existing[(key.title, key.year)] = record
                    changed += 1
                    continue
                updated = False
                for name, value in columns.items():
                    if value is not None and getattr(record, name) != value:
                        setattr(record, name, value)
                        updated = True
                changed += int(updated)
            await session.commit()
        return changed
