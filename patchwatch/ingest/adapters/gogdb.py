"""GOGDB adapter.

GOGDB has no search endpoint, so the product index is downloaded once per
TTL and matched locally. The newest build for a product comes from its
builds JSON.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from patchwatch.config import settings
from patchwatch.detect.similarity import similarity
from patchwatch.ingest.adapters.base import (
    AdapterResponseError,
    CanonicalCandidate,
    IdentityAdapter,
)
from patchwatch.normalize.version import BUILD, VersionToken, date_token, version_from_text

logger = logging.getLogger(__name__)

SEARCH_MIN_SIMILARITY = 0.6
SEARCH_LIMIT = 5


def _parse_date(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def latest_build(builds: list[dict], os_name: str) -> Optional[dict]:
    """Most recently published build for one OS."""
    matching = [
        b for b in builds
        if isinstance(b, dict) and str(b.get("os", "")).lower() == os_name.lower()
    ]
    if not matching:
        return None
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return max(matching, key=lambda b: _parse_date(b.get("date_published")) or epoch)


def build_to_token(build: dict) -> Optional[VersionToken]:
    token = version_from_text(build.get("version"))
    if token is not None:
        return token

    build_id = str(build.get("build_id") or "")
    if build_id.isdigit():
        return VersionToken(BUILD, build_id, (int(build_id),), confidence=0.8, origin="external")

    published = _parse_date(build.get("date_published"))
    if published is not None:
        return date_token(published, origin="external", confidence=0.6)
    return None


class GOGDBAdapter(IdentityAdapter):
    """Search-plus-detail adapter over the GOGDB data dumps."""

    name = "gogdb"

    def __init__(self, *args, base_url: str = settings.gogdb_url,
                 index_ttl: float = settings.gogdb_index_ttl_seconds,
                 os_name: str = settings.gogdb_os, **kwargs):
        super().__init__(*args, **kwargs)
        self.data_url = f"{base_url.rstrip('/')}/data"
        self.base_url = base_url.rstrip("/")
        self.index_ttl = index_ttl
        self.os_name = os_name
        self._index: Optional[list[dict]] = None
        self._index_expires: float = 0.0

    async def _product_index(self) -> list[dict]:
        if self._index is not None and self.clock() < self._index_expires:
            return self._index

        async def call():
            client = await self._get_client()
            response = await client.get(
                f"{self.data_url}/products.json",
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, list):
                raise AdapterResponseError("GOGDB product index is not a list")
            return body

        self._index = await self._guarded("index", call)
        self._index_expires = self.clock() + self.index_ttl
        logger.info(f"Loaded GOGDB product index ({len(self._index)} products)")
        return self._index

    async def search(self, title: str) -> list[CanonicalCandidate]:
        products = await self._product_index()

        scored = []
        for product in products:
            if not isinstance(product, dict):
                continue
            product_id, name = product.get("id"), product.get("title")
            if product_id is None or not name:
                continue
            if product.get("type", "game") not in ("game", "pack"):
                continue
            score = similarity(title, name)
            if score >= SEARCH_MIN_SIMILARITY:
                scored.append((score, CanonicalCandidate(
                    adapter=self.name,
                    canonical_id=str(product_id),
                    title=name,
                    url=f"{self.base_url}/product/{product_id}",
                )))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [candidate for _, candidate in scored[:SEARCH_LIMIT]]

    async def fetch_builds(self, product_id: str) -> list[dict]:
        """All builds for a product; an unknown product yields an empty list."""

        async def call():
            client = await self._get_client()
            response = await client.get(
                f"{self.data_url}/builds/{product_id}.json",
                headers={"Accept": "application/json"},
            )
            if response.status_code == 404:
                logger.info(f"GOGDB builds not found for product {product_id}")
                return []
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, list):
                raise AdapterResponseError(f"GOGDB builds for {product_id} is not a list")
            return body

        return await self._guarded("latest_version", call)

    async def latest_version(self, canonical_id: str) -> Optional[VersionToken]:
        builds = await self.fetch_builds(canonical_id)
        build = latest_build(builds, self.os_name)
        if build is None:
            return None
        return build_to_token(build)
