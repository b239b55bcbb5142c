"""SteamDB patch-notes feed adapter.

Titles resolve to Steam app ids through the Steam store search API. Versions
come from SteamDB's PatchnotesRSS feed: each ``<item>`` is one published
update, its ``guid`` carries the build (``build#20196450``) and the
description usually names the version (``Update Notes V1.3.9``).
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional
from xml.etree import ElementTree as ET

from patchwatch.config import settings
from patchwatch.detect.similarity import similarity
from patchwatch.ingest.adapters.base import (
    AdapterResponseError,
    CanonicalCandidate,
    IdentityAdapter,
)
from patchwatch.normalize.version import BUILD, VersionToken, date_token, version_from_text

logger = logging.getLogger(__name__)

BUILD_GUID = re.compile(r"build#(\d+)")
DESCRIPTION_VERSION = re.compile(r"\bV?(\d+\.\d+(?:\.\d+)?)", re.IGNORECASE)

# Feed results are reused for this long
FEED_CACHE_SECONDS = 3600.0
SEARCH_MIN_SIMILARITY = 0.6


@dataclass(frozen=True)
class SteamDBUpdate:
    """One item of the patch-notes feed."""

    title: str
    link: str
    published_at: datetime
    description: str
    build: Optional[str] = None
    version: Optional[str] = None

    def to_token(self) -> VersionToken:
        if self.version:
            token = version_from_text(self.version)
            if token is not None:
                return token
        if self.build:
            return VersionToken(BUILD, f"build#{self.build}", (int(self.build),),
                                confidence=0.9, origin="external")
        return date_token(self.published_at, origin="external", confidence=0.6)


def _text(item: ET.Element, tag: str) -> Optional[str]:
    element = item.find(tag)
    if element is None or element.text is None:
        return None
    return element.text.strip()


def parse_patchnotes_rss(content: bytes | str, app_id: str = "") -> list[SteamDBUpdate]:
    """
    Parse a SteamDB PatchnotesRSS document.

    Items missing a title, link or publish date are skipped.

    Raises:
        AdapterResponseError: The document is not valid XML
    """
    if not content or not content.strip():
        return []
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise AdapterResponseError(f"Invalid patch notes feed for app {app_id}: {e}") from e

    updates = []
    for item in root.iter("item"):
        title, link, pub_date = _text(item, "title"), _text(item, "link"), _text(item, "pubDate")
        if not title or not link or not pub_date:
            logger.debug(f"Skipping feed item with missing fields (app {app_id})")
            continue

        try:
            published_at = parsedate_to_datetime(pub_date)
        except (TypeError, ValueError):
            logger.debug(f"Skipping feed item with invalid pubDate {pub_date!r} (app {app_id})")
            continue
        if published_at.tzinfo is None:
            published_at = published_at.replace(tzinfo=timezone.utc)

        description = _text(item, "description") or title
        guid = _text(item, "guid") or ""
        build_match = BUILD_GUID.search(guid)
        version_match = DESCRIPTION_VERSION.search(description)

        updates.append(SteamDBUpdate(
            title=title,
            link=link,
            published_at=published_at,
            description=description,
            build=build_match.group(1) if build_match else None,
            version=version_match.group(1) if version_match else None,
        ))

    updates.sort(key=lambda u: u.published_at, reverse=True)
    return updates


class SteamDBFeedAdapter(IdentityAdapter):
    """Steam store search plus SteamDB patch-notes feed."""

    name = "steamdb"

    def __init__(self, *args, store_url: str = settings.steam_store_url,
                 steamdb_url: str = settings.steamdb_url, **kwargs):
        super().__init__(*args, **kwargs)
        self.store_url = store_url.rstrip("/")
        self.steamdb_url = steamdb_url.rstrip("/")
        self._feed_cache: dict[str, tuple[float, list[SteamDBUpdate]]] = {}

    async def search(self, title: str) -> list[CanonicalCandidate]:
        async def call():
            client = await self._get_client()
            response = await client.get(
                f"{self.store_url}/api/storesearch/",
                params={"term": title, "l": "english", "cc": "US"},
            )
            response.raise_for_status()
            return response.json()

        body = await self._guarded("search", call)
        items = body.get("items") if isinstance(body, dict) else None
        if not isinstance(items, list):
            logger.warning(f"Steam store search for {title!r} returned no item list")
            return []

        scored = []
        for item in items:
            if not isinstance(item, dict) or item.get("type", "app") != "app":
                continue
            app_id, name = item.get("id"), item.get("name")
            if app_id is None or not name:
                continue
            score = similarity(title, name)
            if score >= SEARCH_MIN_SIMILARITY:
                scored.append((score, CanonicalCandidate(
                    adapter=self.name,
                    canonical_id=str(app_id),
                    title=name,
                    url=f"{self.store_url}/app/{app_id}",
                )))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [candidate for _, candidate in scored]

    async def fetch_updates(self, app_id: str) -> list[SteamDBUpdate]:
        """Patch-notes feed for an app, newest first. An unknown app yields an empty list."""
        cached = self._feed_cache.get(app_id)
        if cached and self.clock() < cached[0]:
            return cached[1]

        async def call():
            client = await self._get_client()
            response = await client.get(
                f"{self.steamdb_url}/api/PatchnotesRSS/",
                params={"appid": app_id},
                headers={"Accept": "application/rss+xml, application/xml, text/xml"},
            )
            if response.status_code == 404:
                return []
            response.raise_for_status()
            return parse_patchnotes_rss(response.content, app_id)

        updates = await self._guarded("latest_version", call)
        self._feed_cache[app_id] = (self.clock() + FEED_CACHE_SECONDS, updates)
        return updates

    async def latest_version(self, canonical_id: str) -> Optional[VersionToken]:
        updates = await self.fetch_updates(canonical_id)
        if not updates:
            return None
        return updates[0].to_token()
