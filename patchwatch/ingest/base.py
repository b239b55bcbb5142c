"""Catalog source interface for aggregator listings."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from patchwatch.normalize.title import normalize


@dataclass(frozen=True)
class CandidateListing:
    """A freshly scraped listing being evaluated against a tracked title."""

    title: str
    url: str
    source: str
    excerpt: Optional[str] = None
    published_at: Optional[datetime] = None
    size: Optional[str] = None
    source_id: Optional[str] = None

    def __post_init__(self):
        # Scrapers emit naive timestamps; they are read as UTC
        if self.published_at is not None and self.published_at.tzinfo is None:
            object.__setattr__(self, "published_at", self.published_at.replace(tzinfo=timezone.utc))

    def fingerprint(self) -> tuple:
        """Identity of the listing for change detection between sweeps."""
        published = self.published_at.isoformat() if self.published_at else ""
        return (self.url, self.title, published)


class CatalogSource(ABC):
    """Abstract base class for listing catalogs (aggregator sites)."""

    @abstractmethod
    async def search(self, query: str) -> list[CandidateListing]:
        """
        Search the catalog for listings matching a title.

        Args:
            query: Tracked title to search for

        Returns:
            Candidate listings, newest first when the source knows

        Raises:
            CatalogError: If the catalog cannot be queried
        """
        pass

    @abstractmethod
    def get_source_name(self) -> str:
        """Get the catalog name (e.g., 'aggregator')."""
        pass


class CatalogError(Exception):
    """Raised when a catalog search fails."""

    pass


class StaticCatalogSource(CatalogSource):
    """Catalog serving a fixed set of listings, for dry runs and tests."""

    def __init__(self, listings: Iterable[CandidateListing] = (), name: str = "static"):
        self.listings = list(listings)
        self.name = name

    def add(self, listing: CandidateListing) -> None:
        self.listings.append(listing)

    async def search(self, query: str) -> list[CandidateListing]:
        wanted = set(normalize(query).split())
        if not wanted:
            return []
        return [
            listing for listing in self.listings
            if wanted & set(normalize(listing.title).split())
        ]

    def get_source_name(self) -> str:
        return self.name
