# calsync/schemas/hold.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class HoldCreate(BaseModel):
    project_id: int
    start: datetime
    end: datetime
    capacity: int = Field(default=1, ge=1)
    ttl_seconds: Optional[int] = Field(default=None, ge=1, le=3600)
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None

    @model_validator(mode="after")
    def check_window(self):
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class HoldResponse(BaseModel):
    token: str
    project_id: int
    start: datetime
    end: datetime
    capacity: int
    expires_at: datetime

    class Config:
        from_attributes = True


class HoldReleaseResponse(BaseModel):
    released: bool
