"""
Test Configuration
==================
Pytest fixtures for gcemeta tests.
"""

import logging
import sys
from collections.abc import AsyncGenerator, Callable
from typing import Optional, Union

import httpx
import pytest
import structlog

from gcemeta.client import MetadataClient
from gcemeta.config import MetadataSettings
from gcemeta.retry import RetryPolicy

ROOT = "/computeMetadata/v1/"

Responder = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


def meta_response(
    text: str = "",
    status: int = 200,
    etag: Optional[str] = None,
    flavor: bool = True,
    json: bool = False,
) -> httpx.Response:
    """Build a response the way the metadata server sends it."""
    headers = {}
    if flavor:
        headers["Metadata-Flavor"] = "Google"
    if etag is not None:
        headers["ETag"] = etag
    headers["Content-Type"] = "application/json" if json else "application/text"
    return httpx.Response(status, text=text, headers=headers)


class FakeMetadataServer:
    """
    In-memory stand-in for the metadata server.

    Each path has a queue of responders consumed in order; the last one
    repeats. Unknown paths answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Responder]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, path: str, *responders: Responder) -> None:
        if not path.startswith("/"):
            path = ROOT + path
        self.routes[path] = list(responders)

    def requests_for(self, path: str) -> list[httpx.Request]:
        if not path.startswith("/"):
            path = ROOT + path
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return meta_response("not found", status=404)
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(responder, Exception):
            raise responder
        if callable(responder):
            return responder(request)
        return responder


@pytest.fixture(autouse=True, scope="session")
def quiet_logging() -> None:
    """Keep library logs off stdout so CLI output can be asserted."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


@pytest.fixture
def server() -> FakeMetadataServer:
    return FakeMetadataServer()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays passed to the injected sleep, in call order."""
    return []


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        base_delay=0.5,
        multiplier=2.0,
        jitter=0.0,
        max_delay=10.0,
        max_elapsed=60.0,
    )


@pytest.fixture
def settings(policy: RetryPolicy) -> MetadataSettings:
    return MetadataSettings(host="metadata.test", timeout=2.0, retry=policy)


@pytest.fixture
async def http_client(server: FakeMetadataServer) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(server.handler)) as http:
        yield http


@pytest.fixture
def client(
    settings: MetadataSettings,
    http_client: httpx.AsyncClient,
    sleeps: list[float],
) -> MetadataClient:
    """Client wired to the fake server with a recording sleep."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return MetadataClient(settings, http_client=http_client, sleep=fake_sleep)
