# calsync/schemas/booking.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from calsync.models.booking import BookingStatus


# Base Schema
class BookingBase(BaseModel):
    project_id: int
    technician_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    slot_start: Optional[datetime] = None
    slot_end: Optional[datetime] = None


# Create Schema
class BookingCreate(BookingBase):
    source: str = "manual"
    # Token of the hold the caller placed on this slot, if any
    hold_token: Optional[str] = None

    @model_validator(mode="after")
    def check_window(self):
        if (self.slot_start is None) != (self.slot_end is None):
            raise ValueError("slot_start and slot_end must be given together")
        if self.slot_start and self.slot_end and self.slot_end <= self.slot_start:
            raise ValueError("slot_end must be after slot_start")
        return self


# DB Schema for response
class Booking(BookingBase):
    id: int
    status: BookingStatus
    source: Optional[str] = None
    external_provider: Optional[str] = None
    external_event_id: Optional[str] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
