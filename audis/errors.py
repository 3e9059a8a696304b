"""
Exception hierarchy for the audit log.

Every failure the library surfaces is an AudisError subclass. Each one
carries a short machine-readable code and the exit code the command-line
tool uses when it terminates because of it.

Redis exceptions never escape the library untranslated:
- redis.ConnectionError / redis.TimeoutError -> ConnectionFailure
- redis.ResponseError / redis.DataError      -> StoreProtocolError
- exhausted WATCH retries                    -> TransactionContention
"""

from typing import Optional


class AudisError(Exception):
    """Base class for all audit log errors."""

    code: str = "AUDIS_ERROR"
    exit_code: int = 1

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ConnectionFailure(AudisError):
    """The Redis store could not be reached (or timed out)."""

    code = "CONNECTION_FAILURE"
    exit_code = 3


class TransactionContention(AudisError):
    """
    An optimistic transaction kept conflicting with concurrent writers.

    This is transient: the caller may safely retry the whole operation.
    """

    code = "TRANSACTION_CONTENTION"
    exit_code = 4

    def __init__(self, keys: list[str], attempts: int):
        super().__init__(
            f"transaction on {', '.join(keys) or '(no keys)'} still conflicting "
            f"after {attempts} attempts"
        )
        self.keys = keys
        self.attempts = attempts


class DuplicateEvent(AudisError):
    """An event id is already stored with different content."""

    code = "DUPLICATE_EVENT"
    exit_code = 5

    def __init__(self, event_id: str):
        super().__init__(f"event '{event_id}' already exists with different data")
        self.event_id = event_id


class BoundaryNotFound(AudisError):
    """
    A purge boundary id does not appear in the subject's index.

    Attributes:
        subject: The subject that was purged.
        event_id: The boundary id that was not found.
        removed: Ids drained anyway (only non-empty when draining on a miss).
    """

    code = "BOUNDARY_NOT_FOUND"
    exit_code = 6

    def __init__(self, subject: str, event_id: str, removed: Optional[list[str]] = None):
        removed = removed or []
        message = f"event '{event_id}' not found in subject '{subject}'"
        if removed:
            message += f" (drained {len(removed)} events)"
        super().__init__(message)
        self.subject = subject
        self.event_id = event_id
        self.removed = removed


class StoreProtocolError(AudisError):
    """Redis answered with an error or a value of the wrong type."""

    code = "STORE_PROTOCOL_ERROR"
    exit_code = 7


class ChannelClosed(AudisError):
    """An event was sent to a background channel that is already closed."""

    code = "CHANNEL_CLOSED"
