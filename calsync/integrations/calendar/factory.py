# calsync/integrations/calendar/factory.py
from typing import Dict, Type, Union

from calsync.integrations.calendar.base import ProviderAdapter
from calsync.integrations.google.calendar import GoogleCalendarAdapter
from calsync.integrations.ics.feed import IcsFeedAdapter
from calsync.integrations.microsoft.graph import MicrosoftCalendarAdapter
from calsync.models.calendar import CalendarProvider


class CalendarAdapterFactory:
    """
    Factory class to create the adapter for a provider
    """

    _adapters: Dict[CalendarProvider, Type[ProviderAdapter]] = {
        CalendarProvider.GOOGLE: GoogleCalendarAdapter,
        CalendarProvider.MICROSOFT: MicrosoftCalendarAdapter,
        CalendarProvider.ICS: IcsFeedAdapter,
    }

    @classmethod
    def create(cls, provider: Union[CalendarProvider, str]) -> ProviderAdapter:
        try:
            key = CalendarProvider(provider)
        except ValueError:
            raise ValueError(f"Unknown calendar provider: {provider}")
        return cls._adapters[key]()


def get_adapter(provider: Union[CalendarProvider, str]) -> ProviderAdapter:
    return CalendarAdapterFactory.create(provider)
