from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.campusvoice.models import Base


class Location(Base):
    """Node in the campus location hierarchy (campus > block > lab/facility)."""

    __tablename__ = "locations"
    __table_args__ = (
        UniqueConstraint("parent_id", "name", name="uq_locations_parent_name"),
        Index("idx_locations_parent", "parent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)  # campus/block/lab/hostel/facility
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="CASCADE"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    parent: Mapped["Location | None"] = relationship("Location", remote_side=[id], back_populates="children")
    children: Mapped[list["Location"]] = relationship(
        "Location",
        back_populates="parent",
        cascade="all, delete-orphan",
        order_by="Location.name",
    )
