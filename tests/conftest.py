"""Shared test fixtures for cloud-session."""

import httpx
import pytest

from cloud_session.api.client import InteractiveClient
from cloud_session.config import ApiConfig, SessionConfig
from cloud_session.core.session import SessionController
from cloud_session.services.connectivity import ConnectivityMonitor
from cloud_session.services.sync import SyncCoordinator
from cloud_session.storage.database import MemoryKeyValueStore
from cloud_session.storage.offline_queue import OfflineQueue
from cloud_session.storage.session_store import SessionStore
from tests.helpers import FakeBackend, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def store(kv, clock):
    return SessionStore(kv, clock=clock)


@pytest.fixture
def queue(kv, clock):
    return OfflineQueue(kv, clock=clock)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend):
    return InteractiveClient(
        ApiConfig(base_url="http://backend.test"),
        SessionConfig(),
        transport=httpx.MockTransport(backend),
    )


@pytest.fixture
def make_controller(kv, store, queue, client, clock):
    """Build a controller; returns (controller, connectivity, sync)."""

    def _make(online: bool = True, request_timeout: float = 5.0, sync_on_reconnect: bool = False):
        connectivity = ConnectivityMonitor(initially_online=online)
        sync = SyncCoordinator(queue, connectivity, kv, sync_on_reconnect=sync_on_reconnect, clock=clock)
        controller = SessionController(
            client, store, queue, sync, request_timeout=request_timeout, clock=clock
        )
        return controller, connectivity, sync

    return _make
