"""
Multi-index audit log.

The audit log is built from four kinds of Redis objects:
A) the events themselves, as opaque blobs at audit:{id}
B) a reference count per event at audit:{id}:ref
C) one list per subject holding event ids in insertion order
D) the `subjects` set, listing every subject ever logged against

An event is shared by every subject index that lists it. The reference
count tracks how many of those indices still do, and the blob is deleted
together with its count the moment the last index lets go of it.

Every multi-key update (log, truncate, purge) runs as one optimistic
transaction, so concurrent writers can never double-decrement a count,
delete an event that is still indexed, or leak one forever.
"""

from collections import Counter
from typing import Optional
import structlog

from redis.client import Pipeline

from audis.config import AudisConfig, DEFAULT_CONFIG
from audis.errors import BoundaryNotFound, DuplicateEvent
from audis.events import AuditRecord, Event
from audis.ingestion import BackgroundLogger
from audis.storage.redis_store import RedisStore, store_errors
from audis.storage.transaction import Transaction

logger = structlog.get_logger(__name__)


class AuditLog:
    """
    A single Redis endpoint housing an audit log.

    Holds no state besides the connection pool, so one instance can be
    shared by any number of threads.

    Usage:
        audit = AuditLog.connect("redis://127.0.0.1:6379")
        audit.log(Event(data='{"some":"data"}', subjects=["system", "user:42"]))

        for subject in audit.subjects():
            for record in audit.retrieve(subject):
                print(record.id, record.data)
    """

    def __init__(self, store: RedisStore, config: AudisConfig = DEFAULT_CONFIG):
        """
        Initialize the audit log on top of a connected store.

        Args:
            store: Connected Redis store
            config: Retry and channel settings
        """
        self.store = store
        self.config = config
        self.transaction = Transaction(
            store.client,
            max_retries=config.max_retries,
            backoff_seconds=config.retry_backoff_seconds,
        )

    @classmethod
    def connect(cls, url: Optional[str] = None, config: Optional[AudisConfig] = None) -> "AuditLog":
        """
        Connect to a Redis instance, by URL.

        Understands the URL formats redis-py does, e.g.
        redis://127.0.0.1:6379, redis://localhost/2, unix:///path/to/redis.sock

        Raises:
            ConnectionFailure: if the server cannot be reached
        """
        config = config or DEFAULT_CONFIG
        store = RedisStore(url or config.host, socket_timeout=config.socket_timeout)
        return cls(store, config)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "AuditLog":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # =========================================================================
    # Logging
    # =========================================================================

    def log(self, event: Event) -> list[str]:
        """
        Log an event to the audit log.

        Logging is idempotent per (id, subject) pair: re-logging an event
        never appends it twice to the same subject, and re-logging it with
        additional subjects indexes it under those as well.

        Returns:
            The subjects that newly indexed the event (empty on a pure
            re-submission)

        Raises:
            ValueError: if the event is malformed
            DuplicateEvent: if the id is already stored with different data
        """
        subjects = self._validate(event)
        event_key = self.store.event_key(event.id)
        ref_key = self.store.ref_key(event.id)

        def _log(pipe: Pipeline) -> list[str]:
            existing = pipe.get(event_key)
            if existing is not None and existing != event.data:
                raise DuplicateEvent(event.id)

            fresh = [s for s in subjects if pipe.lpos(s, event.id) is None]

            pipe.multi()
            pipe.set(event_key, event.data, nx=True)
            pipe.sadd(self.store.SUBJECTS_KEY, *subjects)
            for subject in fresh:
                pipe.rpush(subject, event.id)
            if fresh:
                pipe.incrby(ref_key, len(fresh))
            return fresh

        fresh = self.transaction.run(_log, event_key, ref_key, *subjects)

        logger.info(
            "event_logged",
            event_id=event.id,
            subjects=subjects,
            new_references=len(fresh),
        )
        return fresh

    def _validate(self, event: Event) -> list[str]:
        """Check an event and return its subjects without duplicates."""
        if not event.id:
            raise ValueError("event id must not be empty")
        if self.store.is_reserved_id(event.id):
            raise ValueError(f"event id '{event.id}' collides with a reserved key")
        if not isinstance(event.data, str):
            raise ValueError(f"event data must be a string, got {type(event.data).__name__}")
        if not event.subjects:
            raise ValueError(f"event '{event.id}' has no subjects")

        subjects = list(dict.fromkeys(event.subjects))
        for subject in subjects:
            if not subject:
                raise ValueError(f"event '{event.id}' has an empty subject")
            if self.store.is_reserved(subject):
                raise ValueError(f"subject '{subject}' collides with a reserved key")
        return subjects

    # =========================================================================
    # Retrieval
    # =========================================================================

    def retrieve(self, subject: str) -> list[AuditRecord]:
        """
        Retrieve the full list of events for the given subject, oldest first.

        Events pruned by a concurrent truncate/purge between the index read
        and the blob read come back tombstoned (data is None).
        """
        with store_errors("retrieve"):
            ids = self.store.client.lrange(subject, 0, -1)
            if not ids:
                return []
            blobs = self.store.client.mget([self.store.event_key(i) for i in ids])

        records = [AuditRecord(subject=subject, id=i, data=d) for i, d in zip(ids, blobs)]

        tombstones = sum(1 for r in records if r.tombstoned)
        if tombstones:
            logger.warning("retrieve_tombstones", subject=subject, count=tombstones)
        return records

    def subjects(self) -> set[str]:
        """Return the set of all known subjects."""
        with store_errors("subjects"):
            return set(self.store.client.smembers(self.store.SUBJECTS_KEY))

    def references(self, event_id: str) -> int:
        """Return how many subject indices currently list the event."""
        with store_errors("references"):
            value = self.store.client.get(self.store.ref_key(event_id))
        return int(value) if value is not None else 0

    # =========================================================================
    # Pruning
    # =========================================================================

    def truncate(self, subject: str, keep: int) -> list[str]:
        """
        Truncate a subject so that it only contains its `keep` newest events.

        Measuring the index and removing from it happen in the same
        transaction, so a concurrent log() cannot skew the count.

        Returns:
            The removed event ids, oldest first
        """
        if keep < 0:
            raise ValueError(f"keep must be non-negative, got {keep}")

        def _truncate(pipe: Pipeline) -> list[str]:
            excess = pipe.llen(subject) - keep
            if excess <= 0:
                return []
            ids = pipe.lrange(subject, 0, excess - 1)
            self._release(pipe, subject, ids)
            return ids

        removed = self.transaction.run(_truncate, subject)

        if removed:
            logger.info("subject_truncated", subject=subject, keep=keep, removed=len(removed))
        return removed

    def purge(self, subject: str, upto_id: str, drain_on_miss: bool = False) -> list[str]:
        """
        Delete the event `upto_id` and all prior events from a subject.

        Args:
            subject: Subject to purge
            upto_id: Last event id to remove (inclusive)
            drain_on_miss: Empty the whole index when upto_id is absent

        Returns:
            The removed event ids, oldest first

        Raises:
            BoundaryNotFound: if upto_id is not in the index. The index is
                left untouched unless drain_on_miss is set, in which case
                the drained ids are attached to the exception.
        """
        def _purge(pipe: Pipeline) -> tuple[list[str], bool]:
            position = pipe.lpos(subject, upto_id)
            if position is None:
                if not drain_on_miss:
                    return [], False
                ids = pipe.lrange(subject, 0, -1)
                self._release(pipe, subject, ids)
                return ids, False

            ids = pipe.lrange(subject, 0, position)
            self._release(pipe, subject, ids)
            return ids, True

        removed, found = self.transaction.run(_purge, subject)

        if not found:
            logger.warning(
                "purge_boundary_not_found",
                subject=subject,
                upto_id=upto_id,
                drained=len(removed),
            )
            raise BoundaryNotFound(subject, upto_id, removed)

        logger.info("subject_purged", subject=subject, upto_id=upto_id, removed=len(removed))
        return removed

    def _release(self, pipe: Pipeline, subject: str, ids: list[str]) -> None:
        """
        Queue removal of `ids` from the head of a subject's index.

        Must be called while the pipeline is still in immediate mode: it
        watches and reads the reference counts, then switches to MULTI.
        Each removed reference is released; an event whose count drops to
        zero is deleted together with its count.
        """
        if not ids:
            return

        dropped = Counter(ids)
        ref_keys = [self.store.ref_key(i) for i in dropped]
        pipe.watch(*ref_keys)
        counts = pipe.mget(ref_keys)

        pipe.multi()
        pipe.ltrim(subject, len(ids), -1)
        for (event_id, n), count in zip(dropped.items(), counts):
            remaining = int(count or 0) - n
            if remaining > 0:
                pipe.decrby(self.store.ref_key(event_id), n)
                continue
            if remaining < 0:
                logger.warning(
                    "reference_count_underflow",
                    event_id=event_id,
                    subject=subject,
                    count=count,
                    released=n,
                )
            pipe.delete(self.store.event_key(event_id), self.store.ref_key(event_id))

    # =========================================================================
    # Background delegation
    # =========================================================================

    def background(self, capacity: int = 0) -> BackgroundLogger:
        """
        Delegate event logging to a background thread.

        Args:
            capacity: Queue size; 0 uses the configured default

        Returns:
            A started BackgroundLogger. Close it to drain and stop the worker.
        """
        channel = BackgroundLogger(self.log, capacity or self.config.queue_capacity)
        channel.start()
        return channel
