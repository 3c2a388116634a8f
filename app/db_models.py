"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class SearchRun(Base):
    """Bookkeeping for one reconciliation run."""

    __tablename__ = "search_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(16))
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    searched_count: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    recommendations: Mapped[list["RecommendedMovie"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RecommendedMovie.position",
    )


class RecommendedMovie(Base):
    """A missing collection movie discovered by a run."""

    __tablename__ = "recommended_movies"
    __table_args__ = (
        UniqueConstraint("run_id", "position", name="uq_recommended_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("search_runs.id", ondelete="CASCADE")
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    title: Mapped[str] = mapped_column(String(255))
    year: Mapped[int] = mapped_column(Integer, default=0)
    tmdb_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    imdb_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    collection_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    collection_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    poster_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    run: Mapped[SearchRun] = relationship(back_populates="recommendations")


class KnownMovie(Base):
    """Identity cache of every movie seen, used to seed the next run."""

    __tablename__ = "known_movies"
    __table_args__ = (
        UniqueConstraint("title_key", "year", name="uq_known_movie_identity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title_key: Mapped[str] = mapped_column(String(255))
    year: Mapped[int] = mapped_column(Integer, default=0)
    title: Mapped[str] = mapped_column(String(255))
    tmdb_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    imdb_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    collection_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    collection_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    poster_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
