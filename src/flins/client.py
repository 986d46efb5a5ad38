from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import DEFAULT_DIRECTORY_URL, DEFAULT_INDEX_URL, DEFAULT_TIMEOUT_S

logger = logging.getLogger(__name__)


class FlinsError(RuntimeError):
    pass


class DirectoryError(FlinsError):
    pass


@dataclass(frozen=True)
class DirectoryHTTPError(DirectoryError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    source: str
    description: str = ""
    author: str = ""
    tags: tuple[str, ...] = ()


def _parse_directory_entry(obj: Any) -> DirectoryEntry | None:
    if not isinstance(obj, dict):
        return None
    name = obj.get("name")
    source = obj.get("source")
    if not isinstance(name, str) or not name.strip():
        return None
    if not isinstance(source, str) or not source.strip():
        return None
    tags_raw = obj.get("tags")
    tags = tuple(str(t).strip() for t in tags_raw if str(t).strip()) if isinstance(tags_raw, list) else ()
    return DirectoryEntry(
        name=name.strip(),
        source=source.strip(),
        description=str(obj.get("description") or "").strip(),
        author=str(obj.get("author") or "").strip(),
        tags=tags,
    )


def search_directory(
    entries: list[DirectoryEntry],
    *,
    query: str | None = None,
    tag: str | None = None,
) -> list[DirectoryEntry]:
    q = (query or "").strip().lower()
    t = (tag or "").strip().lower()
    out: list[DirectoryEntry] = []
    for entry in entries:
        if t and t not in (x.lower() for x in entry.tags):
            continue
        if q and not any(q in field.lower() for field in (entry.name, entry.description, entry.author)):
            continue
        out.append(entry)
    return out


class DirectoryClient:
    """
    Small HTTP client for the public skills directory and the package index.
    """

    def __init__(
        self,
        *,
        directory_url: str = DEFAULT_DIRECTORY_URL,
        index_url: str = DEFAULT_INDEX_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.directory_url = directory_url
        self.index_url = index_url
        self.timeout_s = timeout_s
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "DirectoryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _get_json(self, url: str) -> Any:
        logger.debug("GET %s", url)
        try:
            resp = self._http.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise DirectoryError(f"Request failed: {e}") from e
        if resp.status_code >= 400:
            raise DirectoryHTTPError(resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise DirectoryError(f"Invalid JSON from {url}") from e

    def list_directory(self) -> list[DirectoryEntry]:
        data = self._get_json(self.directory_url)
        if isinstance(data, dict):
            items = data.get("items") if isinstance(data.get("items"), list) else data.get("skills")
        else:
            items = data
        if not isinstance(items, list):
            raise DirectoryError(f"Unexpected directory payload from {self.directory_url}")
        entries: list[DirectoryEntry] = []
        seen: set[str] = set()
        for item in items:
            entry = _parse_directory_entry(item)
            if entry is None or entry.name.lower() in seen:
                continue
            seen.add(entry.name.lower())
            entries.append(entry)
        return entries

    def latest_version(self, package: str) -> str | None:
        data = self._get_json(self.index_url.format(package=package))
        info = data.get("info") if isinstance(data, dict) else None
        version = info.get("version") if isinstance(info, dict) else None
        if isinstance(version, str) and version.strip():
            return version.strip()
        return None
