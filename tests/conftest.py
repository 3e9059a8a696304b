"""
Pytest configuration and fixtures.

Shared fixtures for all tests. By default the audit log runs against an
in-process fakeredis server; set TEST_REDIS_URL to run against a real
Redis instead (the selected database is flushed before every test).
"""

import os
import uuid

import fakeredis
import pytest
import redis
import structlog

from audis.audit_log import AuditLog
from audis.config import AudisConfig
from audis.events import Event
from audis.storage.redis_store import RedisStore

# Keep a developer's own .env / shell from leaking into tests
for _var in ("AUDIS_HOST", "AUDIS_MAX_RETRIES", "AUDIS_LOG_LEVEL"):
    os.environ.pop(_var, None)


@pytest.fixture(autouse=True, scope="session")
def structured_logging():
    """Route structlog through stdlib logging so pytest captures it."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture
def redis_client():
    """Redis client with decoded responses, backed by a fresh database."""
    url = os.environ.get("TEST_REDIS_URL")
    if url:
        client = redis.Redis.from_url(url, decode_responses=True)
        client.flushdb()
    else:
        client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)

    yield client

    client.close()


@pytest.fixture
def store(redis_client):
    """Connected store on the test database."""
    return RedisStore(client=redis_client)


@pytest.fixture
def audit(store):
    """Audit log with a retry budget big enough for thread-heavy tests."""
    return AuditLog(store, AudisConfig(max_retries=200, retry_backoff_seconds=0.0005))


@pytest.fixture
def new_id():
    """Factory for random event ids."""
    return lambda: uuid.uuid4().hex


@pytest.fixture
def log_events(audit, new_id):
    """Log one event per id to the given subjects, returning the ids in order."""
    def _log(count: int, subjects: list[str]) -> list[str]:
        ids = [new_id() for _ in range(count)]
        for event_id in ids:
            audit.log(Event(id=event_id, data=f"[{event_id} data]", subjects=subjects))
        return ids
    return _log


@pytest.fixture
def assert_consistent(audit):
    """
    Check the reference-count invariant across the given subject indices.

    Every indexed event has a blob and a count equal to the number of
    indices listing it; no blob or count exists for unindexed events.
    """
    client = audit.store.client

    def _check(subjects) -> None:
        listed: dict[str, int] = {}
        for subject in subjects:
            for event_id in client.lrange(subject, 0, -1):
                listed[event_id] = listed.get(event_id, 0) + 1

        for event_id, count in listed.items():
            assert client.exists(audit.store.event_key(event_id)), event_id
            assert audit.references(event_id) == count, event_id

        for key in client.scan_iter(match="audit:*"):
            event_id = key[len("audit:"):]
            if event_id.endswith(":ref"):
                event_id = event_id[: -len(":ref")]
            assert event_id in listed, f"orphaned key {key}"

    return _check
