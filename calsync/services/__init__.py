"""
Service registry module.

This module registers all request-scoped services with the dependency
injection system.
"""
from calsync.services.booking_service import BookingService
from calsync.services.calendar_account_service import CalendarAccountService
from calsync.services.ics_feed import IcsFeedService
from calsync.services.sync_service import SyncService


def register_services():
    """Register all services with the dependency injection system."""
    # Import register_service inside the function to avoid circular imports
    from calsync.utils.dependencies import register_service

    register_service(BookingService, lambda db: BookingService(db))
    register_service(CalendarAccountService, lambda db: CalendarAccountService(db))
    register_service(IcsFeedService, lambda db: IcsFeedService(db))
    register_service(SyncService, lambda db: SyncService(db))
