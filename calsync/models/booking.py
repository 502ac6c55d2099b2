import enum
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from calsync.db.base import Base


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    BOOKED = "booked"
    CANCELED = "canceled"
    COMPLETED = "completed"
    FAILED = "failed"


class Booking(Base):
    """
    Canonical internal appointment record.

    Rows are never hard-deleted. Cancellation and provider-side deletion both
    set ``status``/``deleted_at`` so a later re-appearance of the same external
    id is recognized as a new event instead of a silent duplicate.
    """

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=True)

    # Customer identity
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    address = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    # Null only while pending and unscheduled
    slot_start = Column(DateTime, nullable=True, index=True)
    slot_end = Column(DateTime, nullable=True)

    status = Column(Enum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
    source = Column(String, nullable=True)

    # Identity bridge to the external calendar
    external_provider = Column(String, nullable=True)
    external_account_id = Column(
        Integer,
        ForeignKey("external_calendar_accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    external_event_id = Column(String, nullable=True)
    external_uid = Column(String, nullable=True, index=True)
    external_modified_at = Column(DateTime, nullable=True)

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    project = relationship("Project", back_populates="bookings")
    technician = relationship("Technician", back_populates="bookings")

    __table_args__ = (
        # Final backstop against duplicate imports from concurrent pulls
        Index(
            "uq_bookings_live_external_event",
            "project_id",
            "external_provider",
            "external_event_id",
            unique=True,
            sqlite_where=deleted_at.is_(None),
            postgresql_where=deleted_at.is_(None),
        ),
    )

    @property
    def is_scheduled(self) -> bool:
        return self.slot_start is not None and self.slot_end is not None
