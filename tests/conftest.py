"""Root conftest: suite markers and the session-scoped Redis container.

Unit and scenario tests run against the in-memory substrate.  Integration
tests use a Redis 7 testcontainer shared across the session and are
skipped when Docker is not available.
"""

from __future__ import annotations

import logging
from pathlib import Path
import time

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Load repository-root .env for test opt-ins (existing env vars stay authoritative).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env", override=False)


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Attach suite markers from test path.

    - `tests/unit/*` -> `unit`
    - `tests/integration/*` -> `integration`
    - `tests/scenarios/*` -> `scenario`
    """
    root = Path(__file__).resolve().parents[1]
    for item in items:
        item_path = Path(str(item.fspath)).resolve()
        try:
            rel = item_path.relative_to(root)
        except ValueError:
            continue

        parts = rel.parts
        if len(parts) < 2 or parts[0] != "tests":
            continue
        if parts[1] == "unit":
            item.add_marker(pytest.mark.unit)
        elif parts[1] == "integration":
            item.add_marker(pytest.mark.integration)
        elif parts[1] == "scenarios":
            item.add_marker(pytest.mark.scenario)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def redis_container():
    """Spin up a Redis 7 container and yield its URL.

    Session-scoped: one container for the entire test run.
    """
    try:
        from testcontainers.core.container import DockerContainer

        container = DockerContainer("redis:7-alpine").with_exposed_ports(6379)
        container.start()
    except Exception as exc:
        pytest.skip(f"Docker is not available for Redis tests: {exc}")

    try:
        host = container.get_container_host_ip()
        port = container.get_exposed_port(6379)
        url = f"redis://{host}:{port}"

        # Wait for Redis readiness
        r = sync_redis.Redis(host=host, port=int(port))
        max_attempts = 30
        for attempt in range(max_attempts):
            try:
                r.ping()
                r.close()
                break
            except Exception as exc:
                if attempt == max_attempts - 1:
                    r.close()
                    raise
                logger.debug(
                    "Redis not ready (attempt %d/%d): %s",
                    attempt + 1,
                    max_attempts,
                    exc,
                )
                time.sleep(1)

        yield url
    finally:
        container.stop()


@pytest.fixture()
async def redis_client(redis_container):
    """Yield an async Redis client connected to the test container."""
    client = Redis.from_url(redis_container)
    await client.flushdb()
    yield client
    await client.aclose()


# ---------------------------------------------------------------------------
# In-memory service graph
# ---------------------------------------------------------------------------


@pytest.fixture()
def kv():
    from omnireflect.storage import InMemoryKeyValueStore

    return InMemoryKeyValueStore()


@pytest.fixture()
def audit_logger(tmp_path: Path):
    from omnireflect.audit import AuditLogger
    from omnireflect.config import AuditConfig

    return AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))


@pytest.fixture()
def fact_store(kv, audit_logger):
    from omnireflect.facts import FactStore

    return FactStore(kv, audit_logger=audit_logger)


@pytest.fixture()
def aggregator(fact_store):
    from omnireflect.facts import FactAggregator

    return FactAggregator(fact_store)


@pytest.fixture()
def entities(kv):
    from omnireflect.entities import EntityRepository

    return EntityRepository(kv)


@pytest.fixture()
def reflections(kv):
    from omnireflect.proposals import ReflectionStore

    return ReflectionStore(kv)


@pytest.fixture()
def reconciler(fact_store, entities, reflections, audit_logger):
    from omnireflect.proposals import Reconciler

    return Reconciler(fact_store, entities, reflections, audit_logger=audit_logger)


@pytest.fixture()
def inbox(reflections, entities, audit_logger):
    from omnireflect.proposals import Inbox

    return Inbox(reflections, entities, audit_logger=audit_logger)


@pytest.fixture()
def scanner(fact_store, entities):
    from omnireflect.maintenance import MaintenanceScanner

    return MaintenanceScanner(fact_store, entities)


@pytest.fixture()
def make_reflection(reflections):
    """Factory saving a reflection built from proposal dicts.

    Proposal dicts use the author's camelCase keys; every proposal starts
    pending with a fresh id unless the dict says otherwise.
    """
    from omnireflect.proposals import Proposal
    from omnireflect.proposals import Reflection

    async def _make(
        proposals: list[dict],
        *,
        conversation_id: str = "conv-1",
        conversation_preview: str = "Tavern talk",
        character_id: str = "char-1",
        character_name: str = "Boris",
        timestamp=None,
        thoughts: str = "The user keeps mentioning the harbor.",
    ):
        fields = {
            "conversation_id": conversation_id,
            "conversation_preview": conversation_preview,
            "character_id": character_id,
            "character_name": character_name,
            "thoughts": thoughts,
            "proposals": [Proposal.model_validate(p) for p in proposals],
        }
        if timestamp is not None:
            fields["timestamp"] = timestamp
        return await reflections.save_reflection(Reflection(**fields))

    return _make
