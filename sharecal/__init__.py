"""
sharecal - shared calendar engine

This package provides the core functionality for shared calendars:
- Configuration parsing (config.py)
- Event store interface and local stores (event_storage.py)
- PostgREST/Supabase store (rest_store.py)
- Occurrence materializer (materializer.py) - expansion with recurring_ical_events
- Sharing state machine (sharing.py)
- Date index reconciler (date_index.py)
- Calendar store (event_store.py) - loading and mutations for one user
- ICS import (ics_subscription.py)
"""

from .config import Config
from .context import EngineContext
from .date_index import DateIndex, build_index
from .errors import (
    CalendarError, StoreError, StoreUnavailable, StoreAuthError, NotFound,
    PermissionDenied, InvalidTransition,
)
from .event_storage import EventStorageBackend, MemoryEventStorage, JsonEventStorage
from .event_store import CalendarStore, PendingShare
from .event_wrapper import (
    CanonicalEvent, SharedEvent, Occurrence, Category, CustomTime, RepeatOption, SharingStatus,
)
from .ics_subscription import ICSSubscription
from .materializer import materialize

__all__ = [
    'Config',
    'EngineContext',
    'DateIndex',
    'build_index',
    'CalendarError',
    'StoreError',
    'StoreUnavailable',
    'StoreAuthError',
    'NotFound',
    'PermissionDenied',
    'InvalidTransition',
    'EventStorageBackend',
    'MemoryEventStorage',
    'JsonEventStorage',
    'CalendarStore',
    'PendingShare',
    'CanonicalEvent',
    'SharedEvent',
    'Occurrence',
    'Category',
    'CustomTime',
    'RepeatOption',
    'SharingStatus',
    'ICSSubscription',
    'materialize',
]
