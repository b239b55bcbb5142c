"""Persistence interface for tracked titles and pending approvals."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from patchwatch.tracking.models import PendingApproval, TrackedEntity

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when the store cannot load or save."""

    pass


@dataclass(frozen=True)
class EntityFilter:
    """Which tracked titles to load."""

    active_only: bool = True
    user_id: Optional[str] = None
    entity_ids: Optional[frozenset[str]] = None
    checked_before: Optional[datetime] = None  # Never-checked titles always match

    def matches(self, entity: TrackedEntity) -> bool:
        if self.active_only and not entity.active:
            return False
        if self.user_id is not None and entity.user_id != self.user_id:
            return False
        if self.entity_ids is not None and entity.id not in self.entity_ids:
            return False
        if self.checked_before is not None and entity.last_checked is not None:
            if entity.last_checked >= self.checked_before:
                return False
        return True


@dataclass(frozen=True)
class ApprovalFilter:
    """Which pending approvals to load."""

    status: Optional[str] = None
    entity_id: Optional[str] = None

    def matches(self, approval: PendingApproval) -> bool:
        if self.status is not None and approval.status != self.status:
            return False
        if self.entity_id is not None and approval.entity_id != self.entity_id:
            return False
        return True


class TrackingStore(ABC):
    """Abstract persistence store."""

    @abstractmethod
    async def load_tracked_entities(self, filter: Optional[EntityFilter] = None) -> list[TrackedEntity]:
        """
        Load tracked titles.

        Raises:
            PersistenceError: If the store cannot be read
        """
        pass

    @abstractmethod
    async def get_entity(self, entity_id: str) -> Optional[TrackedEntity]:
        """Load one tracked title, or None if it does not exist."""
        pass

    @abstractmethod
    async def save_entity(self, entity: TrackedEntity) -> None:
        """
        Insert or update a tracked title, including its update history.

        Raises:
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def load_pending_approvals(self, filter: Optional[ApprovalFilter] = None) -> list[PendingApproval]:
        """Load pending approvals."""
        pass

    @abstractmethod
    async def get_pending_approval(self, approval_id: str) -> Optional[PendingApproval]:
        """Load one approval in any status, or None if it does not exist."""
        pass

    @abstractmethod
    async def save_pending_approval(self, approval: PendingApproval) -> None:
        """Insert or update a pending approval with its votes."""
        pass

    async def close(self) -> None:
        pass


class InMemoryTrackingStore(TrackingStore):
    """Process-local store. Returns detached copies so callers cannot mutate stored state."""

    def __init__(self, entities: Optional[list[TrackedEntity]] = None):
        self._entities: dict[str, TrackedEntity] = {}
        self._approvals: dict[str, PendingApproval] = {}
        for entity in entities or []:
            self._entities[entity.id] = entity.copy()

    async def load_tracked_entities(self, filter: Optional[EntityFilter] = None) -> list[TrackedEntity]:
        filter = filter or EntityFilter()
        return [e.copy() for e in self._entities.values() if filter.matches(e)]

    async def get_entity(self, entity_id: str) -> Optional[TrackedEntity]:
        entity = self._entities.get(entity_id)
        return entity.copy() if entity else None

    async def save_entity(self, entity: TrackedEntity) -> None:
        self._entities[entity.id] = entity.copy()

    async def load_pending_approvals(self, filter: Optional[ApprovalFilter] = None) -> list[PendingApproval]:
        filter = filter or ApprovalFilter()
        return [a.copy() for a in self._approvals.values() if filter.matches(a)]

    async def get_pending_approval(self, approval_id: str) -> Optional[PendingApproval]:
        approval = self._approvals.get(approval_id)
        return approval.copy() if approval else None

    async def save_pending_approval(self, approval: PendingApproval) -> None:
        self._approvals[approval.id] = approval.copy()
