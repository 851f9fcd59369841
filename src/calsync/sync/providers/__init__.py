"""Calendar provider layer -- pluggable adapter pattern for event sync.

Provides the abstract CalendarProvider interface with concrete implementations:
- GoogleCalendarProvider: Google Calendar API v3 via google-api-python-client
- ProviderRegistry: Lookup table from ProviderType to adapter factory
"""

from src.calsync.sync.providers.base import CalendarProvider
from src.calsync.sync.providers.google_calendar import GoogleCalendarProvider
from src.calsync.sync.providers.registry import ProviderRegistry, build_default_registry

__all__ = [
    "CalendarProvider",
    "GoogleCalendarProvider",
    "ProviderRegistry",
    "build_default_registry",
]
