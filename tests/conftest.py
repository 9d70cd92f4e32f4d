"""Shared test fixtures."""

import asyncio
import os

from cryptography.fernet import Fernet

# Settings are read at import time
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SYNC_SCHEDULER_ENABLED", "false")
os.environ.setdefault("SYNC_RECORD_DELAY_SECONDS", "0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rangesync.database.database import Base
from rangesync.models import ContainerState, CurrentStatus, HostNode
from rangesync.services.runtime_driver import (
    ActionResult,
    RuntimeAction,
    RuntimeDriver,
    RuntimeDriverError,
)

# Status each action leaves a container in when nothing goes wrong
ACTION_OUTCOMES = {
    RuntimeAction.START: CurrentStatus.RUNNING,
    RuntimeAction.STOP: CurrentStatus.STOPPED,
    RuntimeAction.PAUSE: CurrentStatus.PAUSED,
    RuntimeAction.UNPAUSE: CurrentStatus.RUNNING,
    RuntimeAction.RESTART: CurrentStatus.RUNNING,
    RuntimeAction.START_AND_PAUSE: CurrentStatus.PAUSED,
    RuntimeAction.CREATE: CurrentStatus.STOPPED,
    RuntimeAction.CREATE_AND_START: CurrentStatus.RUNNING,
    RuntimeAction.CREATE_AND_PAUSE: CurrentStatus.PAUSED,
}


class FakeRuntimeDriver(RuntimeDriver):
    """In-memory runtime driver that records every call."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.result_status = None
        self.delay = 0
        self.created_id = "created-container"
        self.on_apply = None
        self.containers = {}
        self.probe_errors = {}

    async def apply_desired_state(self, host, container, action):
        self.calls.append((host.id, container, RuntimeAction(action)))
        if self.on_apply:
            self.on_apply()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise self.fail_with
        return ActionResult(
            container_id=container.container_id or self.created_id,
            status=self.result_status or ACTION_OUTCOMES[RuntimeAction(action)],
        )

    async def probe_containers(self, host):
        if host.id in self.probe_errors:
            raise RuntimeDriverError(self.probe_errors[host.id])
        return list(self.containers.get(host.id, []))


@pytest.fixture
def engine():
    """Create an in-memory database shared by every session of a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_driver():
    return FakeRuntimeDriver()


@pytest.fixture
def host(db_session):
    """Create an active host node."""
    node = HostNode(name="node-1", docker_api_url="http://10.0.0.5:2375", scope_id="lab")
    db_session.add(node)
    db_session.commit()
    return node


@pytest.fixture
def make_state(db_session, host):
    """Factory for persisted container state records."""

    def _make_state(**kwargs):
        kwargs.setdefault("asset_id", 1)
        kwargs.setdefault("host_node_id", host.id)
        kwargs.setdefault("container_id", "abc123")
        kwargs.setdefault("container_name", "web")
        kwargs.setdefault("image_name", "nginx:1.25")
        kwargs.setdefault("desired_status", "RUNNING")
        kwargs.setdefault("current_status", "STOPPED")
        state = ContainerState(**kwargs)
        db_session.add(state)
        db_session.commit()
        return state

    return _make_state
