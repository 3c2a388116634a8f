"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_MOVIE_EXTENSIONS: tuple[str, ...] = ("avi", "mkv", "mp4", "m4v", "mov", "wmv")


def _split_list(value: object, *, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        raw_values = [part.strip() for part in value.split(",")]
    elif isinstance(value, Iterable):
        raw_values = [str(part).strip() for part in value]
    else:
        raise TypeError(f"{field_name} must be a string or iterable of strings")

    cleaned: list[str] = []
    for entry in raw_values:
        if entry and entry not in cleaned:
            cleaned.append(entry)
    return tuple(cleaned)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Gap Finder", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_authorize_url: HttpUrl = Field(
        default="https://www.themoviedb.org/authenticate", alias="TMDB_AUTHORIZE_URL"
    )
    tmdb_list_id: str | None = Field(default=None, alias="TMDB_LIST_ID")

    plex_movie_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), alias="PLEX_MOVIE_URLS"
    )
    movie_folders: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), alias="MOVIE_FOLDERS"
    )
    movie_extensions: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_MOVIE_EXTENSIONS, alias="MOVIE_EXTENSIONS"
    )
    folder_recursive: bool = Field(default=True, alias="FOLDER_RECURSIVE")

    search_delay_seconds: float = Field(
        default=0.7, alias="SEARCH_DELAY_SECONDS", ge=0, le=60
    )
    detail_delay_seconds: float = Field(
        default=0.2, alias="DETAIL_DELAY_SECONDS", ge=0, le=60
    )
    library_timeout_seconds: float = Field(
        default=180.0, alias="LIBRARY_TIMEOUT_SECONDS", gt=0
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./gapfinder.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("plex_movie_urls", "movie_folders", mode="before")
    @classmethod
    def _parse_sources(cls, value: object, info: ValidationInfo) -> tuple[str, ...]:
        """Accept comma separated environment values as well as lists."""

        return _split_list(value, field_name=info.field_name.upper())

    @field_validator("movie_extensions", mode="before")
    @classmethod
    def _parse_extensions(cls, value: object) -> tuple[str, ...]:
        """Normalise extensions to lowercase without a leading dot."""

        extensions = tuple(
            entry.lstrip(".").lower()
            for entry in _split_list(value, field_name="MOVIE_EXTENSIONS")
        )
        cleaned = tuple(dict.fromkeys(ext for ext in extensions if ext))
        return cleaned or DEFAULT_MOVIE_EXTENSIONS

    @property
    def has_library_source(self) -> bool:
        """Return whether at least one library source is configured."""

        return bool(self.plex_movie_urls or self.movie_folders)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
