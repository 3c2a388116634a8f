"""Library sources reporting owned movies and the inventory builder."""

from __future__ import annotations

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from ..models import LibraryEntry, Movie, MovieKey
from ..utils import classify_guid, parse_year
from .registry import MovieRegistry

logger = logging.getLogger(__name__)

FOLDER_NAME_RE = re.compile(r"^(?P<title>.+?)\s*\((?P<year>\d{4})\)")
TOKEN_PARAM = "X-Plex-Token"


class LibrarySourceError(RuntimeError):
    """Raised when a library source cannot be listed."""


@dataclass(slots=True)
class PlexLibrary:
    """A movie section exposed by a Plex server."""

    key: str
    title: str
    machine_identifier: str | None = None

    def to_payload(self) -> dict[str, str | None]:
        return {
            "key": self.key,
            "title": self.title,
            "machineIdentifier": self.machine_identifier,
        }


class LibrarySource:
    """Base class for anything able to list the movies a user owns."""

    name = "library"

    async def list_entries(self) -> list[LibraryEntry]:
        raise NotImplementedError


def _redact_token(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = [
        (key, "***" if key == TOKEN_PARAM else value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
    ]
    return urlunparse(parsed._replace(query=urlencode(params, safe="*")))


def _parse_xml(body: str, source: str) -> ET.Element:
    if not body or not body.strip():
        raise LibrarySourceError(f"Body returned empty from Plex: {source}")
    try:
        return ET.fromstring(body)
    except ET.ParseError as exc:
        raise LibrarySourceError(f"Error parsing XML from Plex: {source}") from exc


class PlexLibrarySource(LibrarySource):
    """Reads a Plex library listing URL (``/library/sections/<key>/all``)."""

    def __init__(self, http_client: httpx.AsyncClient, url: str):
        self._client = http_client
        self._url = url
        self.name = _redact_token(url)

    async def list_entries(self) -> list[LibraryEntry]:
        try:
            response = await self._client.get(self._url)
        except httpx.HTTPError as exc:
            raise LibrarySourceError(
                f"Error connecting to Plex to get movie list: {self.name}"
            ) from exc
        if response.status_code >= 400:
            raise LibrarySourceError(
                f"Plex returned {response.status_code} for {self.name}"
            )

        root = _parse_xml(response.text, self.name)
        entries: list[LibraryEntry] = []
        for video in root.iter("Video"):
            title = video.get("title")
            if not title:
                logger.warning("Missing title on Video element from %s", self.name)
                continue
            entries.append(
                LibraryEntry(
                    title=title,
                    year=parse_year(video.get("year")),
                    guid=self._select_guid(video),
                )
            )
        return entries

    @staticmethod
    def _select_guid(video: ET.Element) -> str | None:
        """Prefer the item guid, falling back to nested ``Guid`` ids."""

        guid = video.get("guid")
        if classify_guid(guid).kind != "unknown":
            return guid
        for child in video.iter("Guid"):
            candidate = child.get("id")
            if classify_guid(candidate).kind != "unknown":
                return candidate
        return guid


class FolderLibrarySource(LibrarySource):
    """Scans a directory for files named ``Title (Year).ext``."""

    def __init__(
        self,
        folder: str | Path,
        *,
        extensions: Iterable[str],
        recursive: bool = True,
    ):
        self._folder = Path(folder)
        self._extensions = {ext.lstrip(".").lower() for ext in extensions}
        self._recursive = recursive
        self.name = str(self._folder)

    async def list_entries(self) -> list[LibraryEntry]:
        return await asyncio.to_thread(self._scan)

    def _scan(self) -> list[LibraryEntry]:
        if not self._folder.exists():
            raise LibrarySourceError(f"Folder does not exist: {self._folder}")
        if not self._folder.is_dir():
            raise LibrarySourceError(f"Folder is not a directory: {self._folder}")

        pattern = "**/*" if self._recursive else "*"
        entries: list[LibraryEntry] = []
        for path in sorted(self._folder.glob(pattern)):
            if not path.is_file():
                continue
            if path.suffix.lstrip(".").lower() not in self._extensions:
                logger.debug("Skipping file %s", path)
                continue
            match = FOLDER_NAME_RE.match(path.stem)
            if not match:
                logger.debug("No year found in file name %s", path.name)
                entries.append(LibraryEntry(title=path.stem.strip()))
                continue
            entries.append(
                LibraryEntry(
                    title=match.group("title").strip(),
                    year=parse_year(match.group("year")),
                )
            )
        return entries


class PlexClient:
    """Discovers the movie libraries offered by a Plex server."""

    def __init__(self, http_client: httpx.AsyncClient):
        self._client = http_client

    async def list_movie_libraries(
        self, address: str, port: int, token: str
    ) -> list[PlexLibrary]:
        url = f"http://{address}:{port}/library/sections"
        try:
            response = await self._client.get(url, params={TOKEN_PARAM: token})
        except httpx.HTTPError as exc:
            raise LibrarySourceError(f"Error connecting to Plex at {address}:{port}") from exc
        if response.status_code >= 400:
            raise LibrarySourceError(
                f"Plex at {address}:{port} returned {response.status_code}"
            )

        root = _parse_xml(response.text, f"{address}:{port}")
        machine_identifier = root.get("machineIdentifier")
        libraries: list[PlexLibrary] = []
        for directory in root.iter("Directory"):
            if directory.get("type") != "movie":
                continue
            key = directory.get("key")
            if not key:
                continue
            libraries.append(
                PlexLibrary(
                    key=key,
                    title=directory.get("title") or key,
                    machine_identifier=machine_identifier,
                )
            )
        return libraries

    @staticmethod
    def build_library_url(address: str, port: int, token: str, key: str) -> str:
        """Return the listing URL consumed by :class:`PlexLibrarySource`."""

        query = urlencode({TOKEN_PARAM: token})
        return f"http://{address}:{port}/library/sections/{key}/all?{query}"


class InventoryBuilder:
    """Turns library listings into the set of owned movie identities."""

    def __init__(
        self,
        registry: MovieRegistry,
        *,
        on_owned: Callable[[Movie], None] | None = None,
    ):
        self._registry = registry
        self._on_owned = on_owned

    async def build_owned(self, sources: Sequence[LibrarySource]) -> list[MovieKey]:
        """Return owned identities in discovery order, without duplicates.

        Raises :class:`LibrarySourceError` when no source produced any entry.
        """

        owned: dict[MovieKey, None] = {}
        usable_sources = 0
        for source in sources:
            try:
                entries = await source.list_entries()
            except LibrarySourceError as exc:
                logger.warning("Skipping library source %s: %s", source.name, exc)
                continue
            if not entries:
                logger.warning("No movies found in library source %s", source.name)
                continue

            usable_sources += 1
            for entry in entries:
                movie = self._accept(entry, source.name)
                if movie is None or movie.key in owned:
                    continue
                owned[movie.key] = None
                if self._on_owned is not None:
                    self._on_owned(movie)
            logger.debug("%s movies owned after reading %s", len(owned), source.name)

        if usable_sources == 0:
            raise LibrarySourceError("No library source returned any movies")
        return list(owned)

    def _accept(self, entry: LibraryEntry, source_name: str) -> Movie | None:
        if entry.year is None:
            logger.warning("Year not found for %s in %s, skipping", entry.title, source_name)
            return None

        movie = self._registry.resolve_or_create(entry.title, entry.year)
        parsed = classify_guid(entry.guid)
        if parsed.kind == "unknown":
            if entry.guid:
                logger.warning("Cannot handle guid value of %s", entry.guid)
            return movie
        return self._registry.merge(
            movie.key, tmdb_id=parsed.tmdb_id, imdb_id=parsed.imdb_id
        )
