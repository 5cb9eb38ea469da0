"""
Metadata Watch
==============
Long-poll a metadata path and deliver every change to a callback.
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

import structlog

from gcemeta.exceptions import DecodeError, MetadataError, NotFoundError
from gcemeta.models import decode_json
from gcemeta.retry import Sleep, is_retryable_error

if TYPE_CHECKING:
    from gcemeta.client import MetadataClient

logger = structlog.get_logger()

# Seconds to wait before re-polling when the change token came back unchanged
UNCHANGED_POLL_DELAY = 1.0


class WatchState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    DELIVERING = "delivering"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class WatchAction(str, Enum):
    """Returned by a watch callback to continue or end the watch."""

    CONTINUE = "continue"
    STOP = "stop"


class WatchOutcome(str, Enum):
    """Why a watch ended without raising."""

    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass(frozen=True)
class WatchEvent:
    """
    One observation of a watched path.

    Attributes:
        path: The watched path
        value: Raw text, or the decoded JSON value; None when removed
        etag: Change token the server returned with the value
        removed: The path no longer exists (the server answered 404)
    """

    path: str
    value: Any
    etag: Optional[str]
    removed: bool = False


WatchResult = Union[WatchAction, bool, None]
WatchCallback = Callable[[WatchEvent], Union[WatchResult, Awaitable[WatchResult]]]


class MetadataWatcher:
    """
    State machine behind ``MetadataClient.watch``.

    POLLING sends ``wait_for_change=true`` with the last change token. A new
    token moves to DELIVERING. An unchanged token (the server's wait timed
    out) polls again after a short pause. A 404 delivers a removal event and
    stops. Transient failures move to BACKOFF, which waits per the retry
    policy and polls again until attempts or elapsed time run out.
    """

    def __init__(
        self,
        client: "MetadataClient",
        path: str,
        *,
        recursive: bool = False,
        type_: Any = None,
        timeout_sec: int = 60,
        sleep: Optional[Sleep] = None,
    ):
        self.client = client
        self.path = path
        self.recursive = recursive
        self.type_ = type_
        self.timeout_sec = timeout_sec
        self.policy = client.settings.retry
        self._sleep = sleep or asyncio.sleep

        self.state = WatchState.IDLE
        self.etag: Optional[str] = None
        self.failures = 0
        self._failing_since: Optional[float] = None
        self._outcome = WatchOutcome.STOPPED

    def _params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "wait_for_change": "true",
            "timeout_sec": self.timeout_sec,
        }
        if self.etag is not None:
            params["last_etag"] = self.etag
        if self.recursive:
            params["recursive"] = "true"
        if self.type_ is not None:
            params["alt"] = "json"
        return params

    async def run(self, callback: WatchCallback) -> WatchOutcome:
        """Drive the state machine until it stops."""
        self.state = WatchState.POLLING
        pending: Any = None
        logger.info("Watching metadata", path=self.path)
        try:
            while self.state is not WatchState.STOPPED:
                if self.state is WatchState.POLLING:
                    self.state, pending = await self._poll()
                elif self.state is WatchState.DELIVERING:
                    self.state = await self._deliver(callback, pending)
                elif self.state is WatchState.BACKOFF:
                    self.state = await self._backoff(pending)
        finally:
            self.state = WatchState.STOPPED
        logger.info("Watch stopped", path=self.path, outcome=self._outcome.value)
        return self._outcome

    async def _poll(self) -> tuple[WatchState, Any]:
        """
        Send one long-poll request.

        Returns:
            The next state and what it acts on: the ``WatchEvent`` to deliver,
            the error to back off from, or None
        """
        try:
            response = await self.client.fetch(
                self.path,
                params=self._params(),
                timeout=self.timeout_sec + self.client.settings.timeout,
            )
        except NotFoundError:
            self._outcome = WatchOutcome.REMOVED
            return WatchState.DELIVERING, WatchEvent(self.path, None, None, removed=True)
        except MetadataError as e:
            if not is_retryable_error(e):
                raise
            return WatchState.BACKOFF, e

        self.failures = 0
        self._failing_since = None

        etag = response.headers.get("ETag")
        if not etag:
            raise DecodeError(f"watch response for {self.path} carried no ETag")
        if etag == self.etag:
            # The server's wait elapsed; pace servers that answer immediately
            logger.debug("Watch wait elapsed without change", path=self.path)
            await self._sleep(UNCHANGED_POLL_DELAY)
            return WatchState.POLLING, None

        if self.type_ is None:
            try:
                value: Any = response.text
            except UnicodeDecodeError as e:
                raise DecodeError(f"watch value for {self.path} is not valid UTF-8") from e
        else:
            value = decode_json(response.body, self.type_, self.path)
        return WatchState.DELIVERING, WatchEvent(self.path, value, etag)

    async def _deliver(self, callback: WatchCallback, event: WatchEvent) -> WatchState:
        result = callback(event)
        if inspect.isawaitable(result):
            result = await result

        if event.removed:
            return WatchState.STOPPED
        self.etag = event.etag
        if result is WatchAction.STOP or result is False:
            self._outcome = WatchOutcome.STOPPED
            return WatchState.STOPPED
        return WatchState.POLLING

    async def _backoff(self, error: MetadataError) -> WatchState:
        self.failures += 1
        now = time.monotonic()
        if self._failing_since is None:
            self._failing_since = now

        if (
            self.failures >= self.policy.max_attempts
            or now - self._failing_since >= self.policy.max_elapsed
        ):
            logger.error(
                "Watch giving up", path=self.path, attempts=self.failures, error=str(error)
            )
            raise error

        delay = self.policy.delay(self.failures)
        logger.warning(
            "Watch poll failed, backing off",
            path=self.path,
            attempt=self.failures,
            wait=round(delay, 3),
            error=str(error),
        )
        await self._sleep(delay)
        return WatchState.POLLING
