from __future__ import annotations

import asyncio
from datetime import datetime

from sqlalchemy import create_engine, inspect

from app.database import Database
from app.models import Movie, RunState
from app.services.storage import RecommendationStore


def test_create_all_creates_tables(tmp_path) -> None:
    database_path = tmp_path / "gapfinder.db"
    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        tables = set(inspect(inspector_engine).get_table_names())
    finally:
        inspector_engine.dispose()

    assert {"search_runs", "recommended_movies", "known_movies"} <= tables


def test_recommendations_round_trip(tmp_path) -> None:
    """Stored lists come back in order and the latest run wins by default."""

    async def scenario() -> tuple[list[Movie], list[Movie], list[Movie]]:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
        await database.create_all()
        store = RecommendationStore(database.session_factory)
        try:
            await store.start_run("first", datetime(2024, 1, 1, 12, 0))
            await store.append_recommendation(
                "first", 0, Movie(title="Movie B", year=2002, collection_id=99)
            )
            await store.finish_run(
                "first", state=RunState.COMPLETED, total_count=1, searched_count=1
            )

            await store.start_run("second", datetime(2024, 1, 2, 12, 0))
            await store.append_recommendation("second", 0, Movie(title="Movie X", year=1990))
            await store.replace_recommendations(
                "second",
                [Movie(title="Movie C", year=2003), Movie(title="Movie D", year=2004)],
            )
            await store.finish_run(
                "second",
                state=RunState.CANCELLED,
                total_count=5,
                searched_count=2,
            )
            return (
                await store.load_recommendations(),
                await store.load_recommendations("first"),
                await store.load_recommendations("missing"),
            )
        finally:
            await database.dispose()

    latest, first, missing = asyncio.run(scenario())

    assert [movie.title for movie in latest] == ["Movie C", "Movie D"]
    assert [movie.title for movie in first] == ["Movie B"]
    assert first[0].collection_id == 99
    assert missing == []


def test_known_movies_upsert(tmp_path) -> None:
    async def scenario() -> tuple[int, int, int, list[Movie]]:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'known.db'}")
        await database.create_all()
        store = RecommendationStore(database.session_factory)
        try:
            inserted = await store.save_known_movies(
                [
                    Movie(title="The Matrix", year=1999, tmdb_id=603),
                    Movie(title="Heat", year=1995),
                ]
            )
            updated = await store.save_known_movies(
                [
                    Movie(title="The Matrix", year=1999, collection_id=2344),
                    Movie(title="Heat", year=1995),
                ]
            )
            unchanged = await store.save_known_movies(
                [Movie(title="The Matrix", year=1999, tmdb_id=603)]
            )
            return inserted, updated, unchanged, await store.load_known_movies()
        finally:
            await database.dispose()

    inserted, updated, unchanged, known = asyncio.run(scenario())

    assert inserted == 2
    assert updated == 1
    assert unchanged == 0
    matrix = next(movie for movie in known if movie.year == 1999)
    assert matrix.tmdb_id == 603
    assert matrix.collection_id == 2344
