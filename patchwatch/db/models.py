"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TrackedTitle(Base):
    """A title monitored for updates. Timestamps are naive UTC."""

    __tablename__ = "tracked_titles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    current_version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_known_version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    check_frequency: Mapped[str] = mapped_column(String(16), default="daily", nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    external_ids: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    # Related titles already announced, as a JSON list
    sequel_notices: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    updates: Mapped[list["UpdateHistory"]] = relationship(
        "UpdateHistory",
        back_populates="tracked_title",
        cascade="all, delete-orphan",
        order_by="UpdateHistory.id",
        lazy="selectin",
    )


class UpdateHistory(Base):
    """One committed update of a tracked title."""

    __tablename__ = "update_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tracked_titles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    detection_method: Mapped[str] = mapped_column(String(16), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    changelog: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    size: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    tracked_title: Mapped["TrackedTitle"] = relationship("TrackedTitle", back_populates="updates")


class PendingApprovalRow(Base):
    """A detection awaiting reviewer consensus."""

    __tablename__ = "pending_approvals"
    __table_args__ = (
        Index("ix_pending_approvals_entity_status", "entity_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    entity_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tracked_titles.id", ondelete="CASCADE"), nullable=False
    )
    candidate_url: Mapped[str] = mapped_column(Text, nullable=False)
    candidate: Mapped[dict] = mapped_column(JSON, nullable=False)
    result: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="open", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    votes: Mapped[list["ApprovalVote"]] = relationship(
        "ApprovalVote",
        back_populates="approval",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ApprovalVote(Base):
    """A reviewer's vote; one row per reviewer per approval."""

    __tablename__ = "approval_votes"
    __table_args__ = (
        UniqueConstraint("approval_id", "reviewer_id", name="uq_approval_votes_reviewer"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    approval_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("pending_approvals.id", ondelete="CASCADE"), nullable=False
    )
    reviewer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    approve: Mapped[bool] = mapped_column(Boolean, nullable=False)

    approval: Mapped["PendingApprovalRow"] = relationship("PendingApprovalRow", back_populates="votes")
