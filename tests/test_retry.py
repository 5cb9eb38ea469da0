"""
Retry Policy Tests
==================
Tests for backoff timing, the retryable-status table and retry behaviour.
"""

import httpx
import pytest
from pydantic import ValidationError

from gcemeta.client import MetadataClient
from gcemeta.config import MetadataSettings
from gcemeta.exceptions import (
    DeadlineError,
    DecodeError,
    NotFoundError,
    TransportError,
    UnexpectedStatusError,
)
from gcemeta.retry import (
    RETRYABLE_STATUS_TABLE,
    RetryPolicy,
    is_retryable_error,
    is_retryable_status,
)

from tests.conftest import FakeMetadataServer, meta_response


class TestRetryableStatusTable:
    """Tests for the status classification table."""

    def test_table_has_no_gaps_or_overlaps(self):
        """Ranges are sorted, contiguous and cover 100-599."""
        expected_start = 100
        for first, last, _ in RETRYABLE_STATUS_TABLE:
            assert first == expected_start
            assert last >= first
            expected_start = last + 1
        assert expected_start == 600

    @pytest.mark.parametrize("status", range(100, 600))
    def test_every_status(self, status: int):
        """Only 429 and 5xx are retried."""
        assert is_retryable_status(status) == (status == 429 or status >= 500)

    def test_unknown_status_not_retried(self):
        assert not is_retryable_status(99)
        assert not is_retryable_status(600)

    def test_error_classification(self):
        assert is_retryable_error(TransportError("reset"))
        assert is_retryable_error(DeadlineError("slow"))
        assert is_retryable_error(UnexpectedStatusError(503, "busy"))
        assert not is_retryable_error(UnexpectedStatusError(403, "denied"))
        assert not is_retryable_error(NotFoundError("http://x/"))
        assert not is_retryable_error(DecodeError("bad"))


class TestRetryPolicy:
    """Tests for RetryPolicy delays and validation."""

    def test_delay_grows_exponentially(self):
        policy = RetryPolicy(base_delay=0.5, multiplier=3.0, jitter=0.0, max_delay=100.0)

        assert [policy.delay(k) for k in (1, 2, 3)] == [0.5, 1.5, 4.5]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=10.0, jitter=0.0, max_delay=5.0)

        assert policy.delay(4) == 5.0

    def test_delay_uncapped_by_default(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=3.0, jitter=0.0, max_attempts=6)

        assert policy.max_delay is None
        assert policy.delay(4) == 27.0

    def test_jitter_bounds(self):
        """Jitter only ever adds up to the configured bound."""
        policy = RetryPolicy(base_delay=0.2, multiplier=2.0, jitter=0.25, max_delay=10.0)

        for attempt in range(1, 6):
            floor = 0.2 * 2.0 ** (attempt - 1)
            for _ in range(50):
                assert floor <= policy.delay(attempt) <= floor + 0.25

    def test_max_delay_below_base_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(base_delay=2.0, max_delay=1.0)

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)


class TestClientRetries:
    """Tests for retry behaviour of client requests."""

    async def test_transport_failure_then_success(
        self, client: MetadataClient, server: FakeMetadataServer, sleeps: list[float]
    ):
        """A failed attempt is retried after the base delay."""
        server.add(
            "instance/id",
            httpx.ConnectError("connection reset"),
            meta_response("42"),
        )

        assert await client.get("instance/id") == "42"
        assert len(server.requests) == 2
        assert sleeps == [0.5]

    async def test_backoff_delays_per_attempt(self, client, server, sleeps):
        """The wait after attempt K is at least base_delay * multiplier^(K-1)."""
        server.add(
            "instance/id",
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("slow"),
            meta_response("42"),
        )

        assert await client.get("instance/id") == "42"
        assert sleeps == [0.5, 1.0]

    async def test_exhausted_attempts_raise_last_error(self, client, server, sleeps):
        """After max attempts the last observed failure surfaces."""
        server.add(
            "instance/id",
            httpx.ConnectError("refused"),
            httpx.ConnectError("refused"),
            meta_response("unavailable", status=503),
        )

        with pytest.raises(UnexpectedStatusError) as exc_info:
            await client.get("instance/id")

        assert exc_info.value.status_code == 503
        assert exc_info.value.body == "unavailable"
        assert len(server.requests) == 3
        assert len(sleeps) == 2

    async def test_exhausted_transport_failures(self, client, server):
        server.add("instance/id", httpx.ConnectError("refused"))

        with pytest.raises(TransportError):
            await client.get("instance/id")
        assert len(server.requests) == 3

    async def test_timeouts_surface_as_deadline(self, client, server):
        server.add("instance/id", httpx.ReadTimeout("slow"))

        with pytest.raises(DeadlineError):
            await client.get("instance/id")

    async def test_not_found_is_not_retried(self, client, server, sleeps):
        """A 404 surfaces immediately."""
        with pytest.raises(NotFoundError):
            await client.get("instance/attributes/missing")

        assert len(server.requests) == 1
        assert sleeps == []

    async def test_client_error_is_not_retried(self, client, server, sleeps):
        server.add("instance/id", meta_response("denied", status=403))

        with pytest.raises(UnexpectedStatusError) as exc_info:
            await client.get("instance/id")

        assert exc_info.value.status_code == 403
        assert len(server.requests) == 1
        assert sleeps == []

    async def test_server_error_is_retried(self, client, server, sleeps):
        server.add(
            "instance/id",
            meta_response("busy", status=500),
            meta_response("42"),
        )

        assert await client.get("instance/id") == "42"
        assert sleeps == [0.5]

    async def test_elapsed_limit_stops_retrying(
        self, http_client: httpx.AsyncClient, server: FakeMetadataServer
    ):
        """Retries end once max_elapsed has passed, long before max_attempts."""
        server.add("instance/id", httpx.ConnectError("refused"))
        policy = RetryPolicy(
            max_attempts=1000, base_delay=0.02, multiplier=1.0, jitter=0.0, max_elapsed=0.1
        )
        client = MetadataClient(
            MetadataSettings(host="metadata.test", retry=policy), http_client=http_client
        )

        with pytest.raises(TransportError):
            await client.get("instance/id")

        assert 1 < len(server.requests) < 1000
