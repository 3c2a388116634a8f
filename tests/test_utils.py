from __future__ import annotations

from datetime import date

import pytest

from app.utils import (
    build_image_url,
    classify_guid,
    is_released,
    normalize_title,
    parse_release_year,
    parse_year,
)


@pytest.mark.parametrize(
    ("guid", "kind", "value"),
    [
        ("com.plexapp.agents.themoviedb://603?lang=en", "tmdb", "603"),
        ("tmdb://603", "tmdb", "603"),
        ("com.plexapp.agents.imdb://tt0133093?lang=en", "imdb", "tt0133093"),
        ("imdb://tt0133093", "imdb", "tt0133093"),
        ("plex://movie/5d7768", "unknown", "plex://movie/5d7768"),
        ("com.plexapp.agents.themoviedb://abc?lang=en", "unknown", "com.plexapp.agents.themoviedb://abc?lang=en"),
        (None, "unknown", None),
    ],
)
def test_classify_guid(guid: str | None, kind: str, value: str | None) -> None:
    parsed = classify_guid(guid)

    assert parsed.kind == kind
    assert parsed.value == value


def test_classified_guid_exposes_typed_ids() -> None:
    assert classify_guid("tmdb://603").tmdb_id == 603
    assert classify_guid("tmdb://603").imdb_id is None
    assert classify_guid("imdb://tt0133093").imdb_id == "tt0133093"
    assert classify_guid("imdb://tt0133093").tmdb_id is None


def test_normalize_title_ignores_colons_case_and_spacing() -> None:
    """Titles from file names and from TMDB should compare equal."""

    assert normalize_title("Star Wars: A New Hope") == normalize_title(
        "star wars  a new hope"
    )


@pytest.mark.parametrize(
    ("value", "expected"),
    [("1999-03-31", 1999), ("", None), (None, None), ("1999", None), ("not-a-date", None)],
)
def test_parse_release_year(value: object, expected: int | None) -> None:
    assert parse_release_year(value) == expected


def test_parse_year_accepts_strings_and_rejects_garbage() -> None:
    assert parse_year("2001") == 2001
    assert parse_year(2001) == 2001
    assert parse_year("") is None
    assert parse_year("two thousand") is None
    assert parse_year(0) is None


def test_is_released_requires_a_past_year() -> None:
    today = date(2024, 6, 1)

    assert is_released(2023, today)
    assert not is_released(2024, today)
    assert not is_released(2030, today)
    assert not is_released(0, today)


def test_build_image_url() -> None:
    assert build_image_url("/abc.jpg") == "https://image.tmdb.org/t/p/w500/abc.jpg"
    assert build_image_url("https://cdn.example.com/abc.jpg") == "https://cdn.example.com/abc.jpg"
    assert build_image_url(None) is None
