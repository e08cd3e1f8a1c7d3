"""One contested time window for one owner (e.g. a restaurant's table at 20:00), watched until it frees up."""
from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base


class WaitlistSlot(Base):
    __tablename__ = "waitlist_slots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False, index=True)
    slot_start = Column(DateTime(timezone=True), nullable=False)
    slot_end = Column(DateTime(timezone=True), nullable=True)  # NULL = start + 1h
    status = Column(String(16), nullable=False, default="pending", index=True)  # pending | monitoring | available | expired
    check_interval_minutes = Column(Integer, nullable=False, default=30)
    last_check_at = Column(DateTime(timezone=True), nullable=True)
    next_check_at = Column(DateTime(timezone=True), nullable=True)
    label = Column(String(255), nullable=True)  # resource description shown in messages (business name, table)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    entries = relationship(
        "WaitlistEntry",
        back_populates="slot",
        order_by="WaitlistEntry.priority",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_waitlist_slots_owner_start", "owner_id", "slot_start"),)
