"""
Audis: a multi-index audit log, built atop Redis.

An audit log consists of zero or more events, each indexed against one
or more subjects. Each audit log inhabits precisely one Redis database.
"""

from audis.audit_log import AuditLog
from audis.config import AudisConfig, load_config
from audis.errors import (
    AudisError,
    BoundaryNotFound,
    ChannelClosed,
    ConnectionFailure,
    DuplicateEvent,
    StoreProtocolError,
    TransactionContention,
)
from audis.events import AuditRecord, Event
from audis.ingestion import BackgroundLogger

__version__ = "0.3.0"

__all__ = [
    "AuditLog",
    "AuditRecord",
    "AudisConfig",
    "AudisError",
    "BackgroundLogger",
    "BoundaryNotFound",
    "ChannelClosed",
    "ConnectionFailure",
    "DuplicateEvent",
    "Event",
    "StoreProtocolError",
    "TransactionContention",
    "load_config",
]
