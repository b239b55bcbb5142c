"""Identity verification against external catalogs.

For a related-looking candidate ("Assetto Corsa" vs "Assetto Corsa Evo") the
adapters decide whether the candidate resolves to the tracked title's
canonical id or to another product. They also report the newest version the
catalog knows, which confirms or fails to confirm the candidate's version.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from patchwatch.detect.models import ExternalVerification, IdentityCheck, IdentityVerdict
from patchwatch.detect.similarity import similarity
from patchwatch.ingest.adapters.base import AdapterUnavailableError, IdentityAdapter
from patchwatch.normalize.title import normalize
from patchwatch.normalize.version import VersionToken, compare_versions
from patchwatch.tracking.models import TrackedEntity

logger = logging.getLogger(__name__)

# A candidate resolving this confidently to another catalog entry is a different product
DIFFERENT_MIN_SIMILARITY = 0.95


class IdentityVerifier:
    """Fans a verification out over all identity adapters."""

    def __init__(self, adapters: Sequence[IdentityAdapter]):
        self.adapters = list(adapters)

    async def _check_adapter(
        self,
        adapter: IdentityAdapter,
        entity: TrackedEntity,
        candidate_title: Optional[str],
        candidate_version: Optional[VersionToken],
    ) -> Optional[tuple[str, ExternalVerification]]:
        canonical_id = entity.external_ids.get(adapter.name)
        canonical_title = entity.title
        if not canonical_id:
            matches = await adapter.search(entity.title)
            if not matches:
                return None
            canonical_id, canonical_title = matches[0].canonical_id, matches[0].title

        verdict = IdentityVerdict.UNKNOWN
        if candidate_title:
            query = normalize(candidate_title)
            candidate_matches = await adapter.search(query)
            if candidate_matches:
                top = candidate_matches[0]
                if top.canonical_id == canonical_id:
                    verdict = IdentityVerdict.SAME
                elif similarity(query, top.title) >= DIFFERENT_MIN_SIMILARITY:
                    verdict = IdentityVerdict.DIFFERENT

        latest = await adapter.latest_version(canonical_id)
        comparison = compare_versions(candidate_version, latest)
        return verdict, ExternalVerification(
            adapter=adapter.name,
            canonical_id=canonical_id,
            canonical_title=canonical_title,
            latest_version=latest,
            version_matches=None if comparison is None else comparison == 0,
            checked_at=datetime.now(timezone.utc),
        )

    async def _safe_check(self, adapter, entity, candidate_title, candidate_version):
        try:
            return await self._check_adapter(adapter, entity, candidate_title, candidate_version)
        except AdapterUnavailableError as e:
            logger.info(f"Skipping {adapter.name} verification for {entity.title!r}: {e}")
            return None

    async def verify(
        self,
        entity: TrackedEntity,
        candidate_title: Optional[str] = None,
        candidate_version: Optional[VersionToken] = None,
    ) -> IdentityCheck:
        """
        Ask every adapter about the tracked title and, optionally, a candidate.

        Adapters run concurrently; an unavailable adapter contributes nothing.

        Args:
            entity: Tracked title
            candidate_title: Candidate to resolve; omit to only confirm versions
            candidate_version: Candidate version to confirm against the catalog

        Returns:
            IdentityCheck with the aggregated verdict and per-adapter snapshots
        """
        if not self.adapters:
            return IdentityCheck()

        results = await asyncio.gather(*(
            self._safe_check(adapter, entity, candidate_title, candidate_version)
            for adapter in self.adapters
        ))
        results = [r for r in results if r is not None]

        verdicts = {verdict for verdict, _ in results}
        if IdentityVerdict.SAME in verdicts and IdentityVerdict.DIFFERENT not in verdicts:
            verdict = IdentityVerdict.SAME
        elif IdentityVerdict.DIFFERENT in verdicts and IdentityVerdict.SAME not in verdicts:
            verdict = IdentityVerdict.DIFFERENT
        else:
            verdict = IdentityVerdict.UNKNOWN

        return IdentityCheck(
            verdict=verdict,
            verifications=tuple(verification for _, verification in results),
        )

    async def close(self):
        for adapter in self.adapters:
            await adapter.close()
