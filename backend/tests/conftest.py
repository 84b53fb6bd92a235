"""Shared fixtures: isolated in-memory queue store and a fake hosted backend."""
import json

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import all models so their tables are registered on Base.metadata
from herdsync.models.base import Base
import herdsync.models.queue_item  # noqa: F401
import herdsync.models.conflict  # noqa: F401
from herdsync.services.conflict_detection import ConflictDetector
from herdsync.services.connectivity import ConnectivityMonitor
from herdsync.services.offline_queue import OfflineQueue
from herdsync.services.remote_client import RemoteClient
from herdsync.services.sync_processor import SyncProcessor
from herdsync.services.sync_telemetry import SyncTelemetry

BACKEND_URL = "http://backend.test"


class FakeBackend:
    """
    httpx MockTransport handler standing in for the hosted backend.

    Routes registered with ``on`` are answered in order (the last one repeats).
    Unrouted table inserts echo the rows back with server ids, selects return
    no rows and everything else answers ``{}``.
    """

    def __init__(self):
        self.requests = []
        self.routes = {}

    def on(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body, request))

        responses = self.routes.get((request.method, request.url.path))
        if responses:
            response = responses.pop(0) if len(responses) > 1 else responses[0]
            if callable(response):
                return response(request, body)
            # Fresh copy so a repeated route never hands out a consumed response
            return httpx.Response(
                response.status_code, headers=response.headers, content=response.content
            )

        path = request.url.path
        if request.method == "POST" and path.startswith("/rest/v1/") and "/rpc/" not in path:
            rows = body if isinstance(body, list) else [body]
            return httpx.Response(
                201, json=[{"id": f"srv-{i}", **row} for i, row in enumerate(rows)]
            )
        if request.method == "GET":
            return httpx.Response(200, json=[])
        if request.method == "PATCH":
            return httpx.Response(200, json=[body])
        return httpx.Response(200, json={})

    def calls(self, method, path):
        return [body for m, p, body, _ in self.requests if m == method and p == path]


class SleepRecorder:
    """Async stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def unique_violation(column="client_generated_id"):
    return httpx.Response(
        409,
        json={
            "code": "23505",
            "message": f'duplicate key value violates unique constraint "{column}_key"',
        },
    )


@pytest.fixture()
def session_factory():
    """Provide an isolated in-memory SQLite database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def queue(session_factory):
    return OfflineQueue(session_factory=session_factory, max_size=50)


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
def remote(backend):
    return RemoteClient(
        base_url=BACKEND_URL, api_key="test-key", transport=httpx.MockTransport(backend)
    )


@pytest.fixture()
def detector(remote, session_factory):
    return ConflictDetector(remote, session_factory=session_factory)


@pytest.fixture()
def connectivity(remote):
    return ConnectivityMonitor(remote, online=True)


@pytest.fixture()
def sleeps():
    return SleepRecorder()


@pytest.fixture()
def processor(queue, remote, connectivity, detector, sleeps):
    return SyncProcessor(
        queue,
        remote,
        connectivity,
        conflicts=detector,
        telemetry=SyncTelemetry(remote),
        sleep=sleeps,
        max_retries=3,
        retry_delays=[1.0, 2.0, 4.0],
        audio_delay=0.5,
        remove_completed=False,
    )
