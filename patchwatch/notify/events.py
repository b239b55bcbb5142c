"""Notification events emitted by the engine and the review workflow."""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class EventKind:
    UPDATE_COMMITTED = "update_committed"
    APPROVAL_OPENED = "approval_opened"
    APPROVAL_RESOLVED = "approval_resolved"
    CHECK_FAILED = "check_failed"
    SEQUEL_DETECTED = "sequel_detected"


@dataclass(frozen=True)
class NotificationEvent:
    """What happened to a tracked title, for whoever renders notifications."""

    kind: str
    entity_id: str
    title: str
    old_version: Optional[str] = None
    new_version: Optional[str] = None
    reason: str = ""
    confidence: Optional[float] = None
    approval_id: Optional[str] = None
    url: Optional[str] = None
    relation: Optional[str] = None  # sequel_detected only
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        return payload


class NotificationDispatcher(ABC):
    """Abstract notification sink."""

    @abstractmethod
    async def dispatch(self, event: NotificationEvent) -> bool:
        """
        Deliver an event.

        Returns:
            True if delivered. Implementations log failures instead of raising.
        """
        pass

    async def close(self):
        pass


class LoggingDispatcher(NotificationDispatcher):
    """Writes events to the application log."""

    async def dispatch(self, event: NotificationEvent) -> bool:
        logger.info(
            f"[{event.kind}] {event.title}: {event.old_version or '-'} -> {event.new_version or '-'} "
            f"{event.reason}",
            extra={"entity_id": event.entity_id, "approval_id": event.approval_id},
        )
        return True


async def dispatch_safely(dispatcher: Optional[NotificationDispatcher], event: NotificationEvent) -> bool:
    """Dispatch without letting a notification failure escape into a commit path."""
    if dispatcher is None:
        return False
    try:
        return await dispatcher.dispatch(event)
    except Exception as e:
        logger.warning(f"Notification dispatch failed for {event.kind} ({event.entity_id}): {e}")
        return False
