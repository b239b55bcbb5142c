"""TTL cache of the last candidate set seen per tracked title.

If a sweep finds exactly the listings it scored last time (and the tracked
title's version has not moved), rescoring would only repeat the previous
decision, so the cached result is reused until the entry expires.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from patchwatch.detect.models import DetectionResult
from patchwatch.ingest.base import CandidateListing

logger = logging.getLogger(__name__)


def fingerprint(current_version: Optional[str], candidates: Sequence[CandidateListing]) -> str:
    """Order-independent digest of a candidate set and the version it was scored against."""
    parts = sorted("|".join(c.fingerprint()) for c in candidates)
    digest = hashlib.sha256()
    digest.update((current_version or "").encode("utf-8"))
    for part in parts:
        digest.update(b"\x00")
        digest.update(part.encode("utf-8"))
    return digest.hexdigest()


@dataclass
class SnapshotEntry:
    fingerprint: str
    result: DetectionResult
    expires_at: float


class SnapshotCache:
    """In-process cache keyed by entity id, cleared on restart."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, SnapshotEntry] = {}

    def get(self, entity_id: str, snapshot: str) -> Optional[DetectionResult]:
        """Cached result when the fingerprint matches and the entry is fresh."""
        entry = self._entries.get(entity_id)
        if entry is None:
            return None
        if self.clock() >= entry.expires_at:
            del self._entries[entity_id]
            return None
        if entry.fingerprint != snapshot:
            return None
        return entry.result

    def put(self, entity_id: str, snapshot: str, result: DetectionResult) -> None:
        self._entries[entity_id] = SnapshotEntry(snapshot, result, self.clock() + self.ttl_seconds)

    def invalidate(self, entity_id: str) -> None:
        self._entries.pop(entity_id, None)

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
