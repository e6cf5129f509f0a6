from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.campusvoice.models import Base


class Issue(Base):
    __tablename__ = "issues"
    __table_args__ = (
        Index("idx_issues_status", "status"),
        Index("idx_issues_category", "category"),
        Index("idx_issues_created_by", "created_by"),
        Index("idx_issues_assigned_to", "assigned_to"),
        Index("idx_issues_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="submitted")
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="student")

    # Reporter is kept for "mine" filters and abuse review; never serialized.
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_to: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Denormalized; kept equal to the number of IssueVote rows.
    upvotes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assignee = relationship("User", foreign_keys=[assigned_to], lazy="joined")

    updates: Mapped[list["IssueUpdate"]] = relationship(
        "IssueUpdate",
        back_populates="issue",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="IssueUpdate.created_at",
        lazy="selectin",
    )
    votes: Mapped[list["IssueVote"]] = relationship(
        "IssueVote",
        back_populates="issue",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="select",
    )
    flags: Mapped[list["IssueFlag"]] = relationship(
        "IssueFlag",
        back_populates="issue",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="select",
    )
    attachments: Mapped[list["IssueAttachment"]] = relationship(
        "IssueAttachment",
        back_populates="issue",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="IssueAttachment.uploaded_at",
        lazy="selectin",
    )


class IssueUpdate(Base):
    __tablename__ = "issue_updates"
    __table_args__ = (Index("idx_issue_updates_issue", "issue_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    issue_id: Mapped[int] = mapped_column(ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    update_type: Mapped[str] = mapped_column(String(16), nullable=False, default="update")  # system/assign/comment/update/critical
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    issue: Mapped[Issue] = relationship("Issue", back_populates="updates")
    author = relationship("User", foreign_keys=[created_by], lazy="joined")


class IssueVote(Base):
    __tablename__ = "issue_votes"
    __table_args__ = (Index("idx_issue_votes_user", "user_id"),)

    issue_id: Mapped[int] = mapped_column(ForeignKey("issues.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    issue: Mapped[Issue] = relationship("Issue", back_populates="votes")


class IssueFlag(Base):
    __tablename__ = "issue_flags"
    __table_args__ = (
        UniqueConstraint("issue_id", "flagged_by", name="uq_issue_flags_issue_user"),
        Index("idx_issue_flags_issue", "issue_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    issue_id: Mapped[int] = mapped_column(ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    flagged_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    issue: Mapped[Issue] = relationship("Issue", back_populates="flags", lazy="joined")


class IssueAttachment(Base):
    __tablename__ = "issue_attachments"
    __table_args__ = (Index("idx_issue_attachments_issue", "issue_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    issue_id: Mapped[int] = mapped_column(ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="evidence")  # evidence/resolution

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    uploaded_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    issue: Mapped[Issue] = relationship("Issue", back_populates="attachments")
