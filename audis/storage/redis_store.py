"""
Redis store adapter for the audit log.

Redis holds the whole audit log:
- Event blobs (one string key per event)
- Reference counts (one integer key per event)
- Subject indices (one list per subject, oldest event first)
- The subject registry (one set)

One Redis database houses exactly one audit log. The key layout is
shared with any external reader of the raw store, so it must not change.
"""

from contextlib import contextmanager
from typing import Iterator, Optional
import structlog

import redis

from audis.errors import ConnectionFailure, StoreProtocolError

logger = structlog.get_logger(__name__)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate redis-py exceptions raised inside the block."""
    try:
        yield
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.error("redis_unreachable", operation=operation, error=str(e))
        raise ConnectionFailure(f"{operation}: {e}") from e
    except (redis.ResponseError, redis.DataError) as e:
        logger.error("redis_protocol_error", operation=operation, error=str(e))
        raise StoreProtocolError(f"{operation}: {e}") from e


class RedisStore:
    """
    Redis connection plus the audit log's key naming convention.

    Key naming convention:
    - audit:{id}      - Event blob
    - audit:{id}:ref  - Reference count for the event
    - subjects        - Set of every subject ever logged against
    - {subject}       - List of event ids indexed under the subject
    """

    # Key prefixes
    EVENT_PREFIX = "audit"
    SUBJECTS_KEY = "subjects"

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        socket_timeout: float = 5.0,
    ):
        """
        Initialize Redis connection.

        Args:
            url: Redis URL (redis://host:port/db, unix:///path/to/redis.sock)
            client: Existing Redis client (takes precedence over url)
            socket_timeout: Socket timeout in seconds
        """
        if client is None:
            if not url:
                raise ValueError("either url or client is required")
            try:
                client = redis.Redis.from_url(
                    url,
                    socket_timeout=socket_timeout,
                    decode_responses=True,  # Return strings, not bytes
                )
            except ValueError as e:
                raise ConnectionFailure(f"invalid redis url {url!r}: {e}") from e

        self.client = client
        self.url = url

        # Test connection
        with store_errors("connect"):
            self.client.ping()
        logger.info("redis_connected", url=url)

    # =========================================================================
    # Key naming
    # =========================================================================

    def event_key(self, event_id: str) -> str:
        return f"{self.EVENT_PREFIX}:{event_id}"

    def ref_key(self, event_id: str) -> str:
        return f"{self.EVENT_PREFIX}:{event_id}:ref"

    def is_reserved(self, key: str) -> bool:
        """Check whether a name would collide with the log's own keys."""
        return key == self.SUBJECTS_KEY or key.startswith(f"{self.EVENT_PREFIX}:")

    def is_reserved_id(self, event_id: str) -> bool:
        """Check whether an event id would put its blob on another event's count."""
        return event_id.endswith(":ref")

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def ping(self) -> bool:
        """Check if Redis is responding."""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
        logger.info("redis_connection_closed", url=self.url)
