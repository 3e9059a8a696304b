"""
Audit events.

An Event is what callers hand to the audit log: an id, an opaque data
blob (usually JSON, but the log never looks inside), and the subjects it
should be indexed under. An AuditRecord is what comes back out of a
subject's history.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Event:
    """
    A single audit event.

    Events are immutable once written. The same id logged again with the
    same data is a re-submission; logged again with different data it is
    rejected as a duplicate.
    """
    data: str
    subjects: list[str] = field(default_factory=list)

    # Set automatically when left blank
    id: str = ""

    def __post_init__(self):
        """Generate an event ID if not provided."""
        if not self.id:
            self.id = uuid.uuid4().hex


@dataclass(frozen=True)
class AuditRecord:
    """
    One entry of a subject's history, as returned by retrieve().

    data is None when the event was pruned by a concurrent truncate/purge
    between reading the index and reading the blob.
    """
    subject: str
    id: str
    data: Optional[str]

    @property
    def tombstoned(self) -> bool:
        return self.data is None
