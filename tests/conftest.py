"""
Shared fixtures for the load test suite.

HTTP is faked with httpx.MockTransport so nothing leaves the process.
"""

import json
import random
import threading
from collections import defaultdict
from typing import Callable, Optional

import httpx
import pytest

from loadgen import RequestSettings, RetryPolicy, WorkerContext, WorkSource
from metrics import MetricsAggregator

TEST_URL = "http://loadtest.invalid/skiers"


class ScriptedServer:
    """Answers each POST with whatever ``respond(skier_id, attempt)`` returns.

    ``respond`` returns a status code, or None to simulate a refused
    connection. Attempts are tracked per skier id.
    """

    def __init__(self, respond: Callable[[int, int], Optional[int]]):
        self.respond = respond
        self.attempts: dict[int, int] = defaultdict(int)
        self.bodies: list[dict] = []
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        skier_id = int(body["skierID"])
        with self._lock:
            self.attempts[skier_id] += 1
            attempt = self.attempts[skier_id]
            self.bodies.append(body)
        status = self.respond(skier_id, attempt)
        if status is None:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status, json={"skierID": skier_id})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class MemorySink:
    """Sink that keeps records in a list, optionally failing some writes."""

    def __init__(self, fail_for: Optional[set] = None):
        self.records = []
        self.fail_for = fail_for or set()
        self._lock = threading.Lock()

    def write(self, record) -> None:
        if record.skier_id in self.fail_for:
            raise OSError("disk full")
        with self._lock:
            self.records.append(record)


@pytest.fixture
def scripted_server():
    def _make(respond: Callable[[int, int], Optional[int]]) -> ScriptedServer:
        return ScriptedServer(respond)

    return _make


@pytest.fixture
def make_context():
    clients: list[httpx.Client] = []

    def _make(
        server: ScriptedServer,
        total: int = 1,
        policy: Optional[RetryPolicy] = None,
        sink: Optional[MemorySink] = None,
    ) -> WorkerContext:
        client = httpx.Client(transport=server.transport)
        clients.append(client)
        return WorkerContext(
            work_source=WorkSource(total),
            policy=policy or RetryPolicy(),
            aggregator=MetricsAggregator(),
            sink=sink if sink is not None else MemorySink(),
            client=client,
            settings=RequestSettings(url=TEST_URL, timeout_s=5.0),
        )

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def rng():
    return random.Random(1234)
