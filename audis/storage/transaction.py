"""
Optimistic multi-key transactions over Redis.

A transaction body runs against a pipeline that is WATCHing the keys it
reads. Reads execute immediately; once the body calls pipe.multi(), every
further command is queued and sent as one MULTI/EXEC block. If any watched
key changed in the meantime Redis refuses the EXEC, and the whole body is
run again from scratch against fresh data.

Body contract:
- Read only through the pipeline it is given
- WATCH any key it discovers while reading, before reading it
- Call pipe.multi() before queueing writes, and never read after that
- Be free of side effects outside Redis (it may run several times)
"""

import time
from typing import Callable, TypeVar
import structlog

import redis
from redis.client import Pipeline

from audis.errors import TransactionContention
from audis.storage.redis_store import store_errors

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Transaction:
    """
    Runs transaction bodies with WATCH/MULTI/EXEC and bounded retries.

    Contention is retried here; connection failures are not, they surface
    immediately as ConnectionFailure.
    """

    def __init__(
        self,
        client: redis.Redis,
        max_retries: int = 16,
        backoff_seconds: float = 0.002,
    ):
        """
        Args:
            client: Redis client to open pipelines on
            max_retries: Attempts before giving up with TransactionContention
            backoff_seconds: Sleep before retry N is N * backoff_seconds
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.client = client
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    def run(self, body: Callable[[Pipeline], T], *keys: str) -> T:
        """
        Execute body atomically with respect to the watched keys.

        Args:
            body: Transaction body, called with a WATCHing pipeline
            *keys: Keys to WATCH before the body starts reading

        Returns:
            Whatever the body returned on the attempt that committed
        """
        pipe = self.client.pipeline(transaction=True)

        try:
            for attempt in range(1, self.max_retries + 1):
                try:
                    with store_errors("transaction"):
                        if keys:
                            pipe.watch(*keys)
                        result = body(pipe)
                        pipe.execute()
                    return result
                except redis.WatchError:
                    logger.debug(
                        "transaction_conflict",
                        keys=list(keys),
                        attempt=attempt,
                    )
                    pipe.reset()
                    if attempt < self.max_retries and self.backoff_seconds:
                        time.sleep(attempt * self.backoff_seconds)
        finally:
            pipe.reset()

        logger.warning(
            "transaction_contention",
            keys=list(keys),
            attempts=self.max_retries,
        )
        raise TransactionContention(list(keys), self.max_retries)
