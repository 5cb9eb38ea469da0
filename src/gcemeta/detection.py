"""
Platform Detection
==================
Decide whether this process runs on Google Compute Engine.
"""

import asyncio
import socket
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Optional

import structlog

from gcemeta.once import AsyncOnce
from gcemeta.transport import MetadataTransport

logger = structlog.get_logger()

Resolver = Callable[[str], Awaitable[list[str]]]


class DetectionResult(str, Enum):
    """Outcome of platform detection."""

    ON_GCE = "on_gce"
    NOT_ON_GCE = "not_on_gce"
    UNDETERMINED = "undetermined"


async def resolve_host(hostname: str) -> list[str]:
    """Resolve a hostname to its addresses using the event loop resolver."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except socket.gaierror:
        return []
    return sorted({info[4][0] for info in infos})


class PlatformDetector:
    """
    Runs the GCE detection probes at most once and caches the result.

    Two probes race, each bounded by ``detect_timeout``:
    - an HTTP GET of the metadata IP root that must answer with the
      ``Metadata-Flavor: Google`` header
    - a DNS lookup of the metadata hostname

    Either succeeding means we are on GCE.
    """

    def __init__(self, transport: MetadataTransport, resolver: Optional[Resolver] = None):
        self.transport = transport
        self._resolver = resolver or resolve_host
        self._result: AsyncOnce[DetectionResult] = AsyncOnce()

    @property
    def cached(self) -> Optional[DetectionResult]:
        return self._result.peek()

    async def detect(self) -> DetectionResult:
        return await self._result.get(self._run)

    async def _run(self) -> DetectionResult:
        settings = self.transport.settings
        if settings.host_overridden:
            logger.info("Metadata host overridden, assuming GCE", host=settings.host)
            return DetectionResult.ON_GCE

        probes = [
            asyncio.ensure_future(self._probe_http()),
            asyncio.ensure_future(self._probe_dns()),
        ]
        failures = 0
        try:
            for next_done in asyncio.as_completed(probes):
                try:
                    if await next_done:
                        logger.info("Detected GCE metadata service")
                        return DetectionResult.ON_GCE
                except Exception as e:
                    failures += 1
                    logger.debug("Detection probe failed", error=str(e) or type(e).__name__)
        finally:
            for probe in probes:
                probe.cancel()
            await asyncio.gather(*probes, return_exceptions=True)

        if failures == len(probes):
            logger.info("GCE detection inconclusive")
            return DetectionResult.UNDETERMINED
        logger.info("Not running on GCE")
        return DetectionResult.NOT_ON_GCE

    async def _probe_http(self) -> bool:
        settings = self.transport.settings
        response = await self.transport.request(
            settings.probe_url,
            timeout=settings.detect_timeout,
        )
        found = 200 <= response.status < 400 and response.has_metadata_flavor
        logger.debug("HTTP detection probe", status=response.status, flavor=found)
        return found

    async def _probe_dns(self) -> bool:
        settings = self.transport.settings
        addrs = await asyncio.wait_for(
            self._resolver(settings.hostname),
            timeout=settings.detect_timeout,
        )
        logger.debug("DNS detection probe", hostname=settings.hostname, addrs=addrs)
        return bool(addrs)
