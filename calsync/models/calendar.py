import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from calsync.db.base import Base


class CalendarProvider(str, enum.Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    ICS = "ics"


class MappingDirection(str, enum.Enum):
    IMPORT = "import"
    EXPORT = "export"
    TWO_WAY = "two-way"


class EventVisibility(str, enum.Enum):
    BUSY_ONLY = "busy_only"
    DETAILS = "details"


class ExternalCalendarAccount(Base):
    """
    One connected third-party calendar identity.

    Revoked accounts are soft-invalidated (``revoked_at``) rather than deleted;
    ``needs_reauth`` stops background sync until a human reconnects.
    """

    __tablename__ = "external_calendar_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider = Column(Enum(CalendarProvider), nullable=False)
    account_email = Column(String, nullable=True)
    ics_url = Column(String, nullable=True)

    access_token_encrypted = Column(Text, nullable=True)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    webhook_channel_id = Column(String, nullable=True, index=True)
    webhook_resource_id = Column(String, nullable=True)
    webhook_expires_at = Column(DateTime, nullable=True)
    webhook_client_state = Column(String, nullable=True)

    needs_reauth = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    last_sync_status = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="calendar_accounts")
    mappings = relationship(
        "CalendarMapping", back_populates="account", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index(
            "uq_calendar_accounts_live_identity",
            user_id,
            provider,
            func.coalesce(account_email, ""),
            func.coalesce(ics_url, ""),
            unique=True,
            sqlite_where=revoked_at.is_(None),
            postgresql_where=revoked_at.is_(None),
        ),
    )

    @property
    def identity(self) -> str:
        return self.account_email or self.ics_url or f"account-{self.id}"

    @property
    def is_live(self) -> bool:
        return self.revoked_at is None


class CalendarMapping(Base):
    """Binds an account (optionally one calendar in it) to a project or technician."""

    __tablename__ = "calendar_mappings"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(
        Integer,
        ForeignKey("external_calendar_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=True)
    provider_calendar_id = Column(String, nullable=True)
    direction = Column(
        Enum(MappingDirection), default=MappingDirection.IMPORT, nullable=False
    )
    visibility = Column(
        Enum(EventVisibility), default=EventVisibility.DETAILS, nullable=False
    )
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    account = relationship("ExternalCalendarAccount", back_populates="mappings")

    @property
    def imports(self) -> bool:
        return self.direction in (MappingDirection.IMPORT, MappingDirection.TWO_WAY)

    @property
    def exports(self) -> bool:
        return self.direction in (MappingDirection.EXPORT, MappingDirection.TWO_WAY)


class IcsFeed(Base):
    """
    Published, token-authenticated read-only view of bookings.

    Token possession is the sole access control. Feeds are disabled or have
    their token rotated, never deleted.
    """

    __tablename__ = "ics_feeds"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True)
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=True)
    token = Column(String, unique=True, index=True, nullable=False)
    include_notes = Column(Boolean, default=False, nullable=False)
    include_phone = Column(Boolean, default=False, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    rotated_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="ics_feeds")


class SyncLog(Base):
    """Audit row for each reconciliation pass or export attempt."""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    account_id = Column(Integer, nullable=True, index=True)
    project_id = Column(Integer, nullable=True)
    source = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    status = Column(String, nullable=False)
    summary = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
