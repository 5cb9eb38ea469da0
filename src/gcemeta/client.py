"""
Metadata Client
===============
Async client for the Google Compute Engine metadata service.
"""

import asyncio
from typing import Any, Optional, Union

import httpx
import structlog

from gcemeta.config import MetadataSettings
from gcemeta.detection import DetectionResult, PlatformDetector, Resolver
from gcemeta.exceptions import (
    DecodeError,
    DetectionError,
    MissingFlavorError,
    NotFoundError,
    UnexpectedStatusError,
)
from gcemeta.models import AccessToken, ServiceAccountInfo, decode_json
from gcemeta.once import AsyncOnce
from gcemeta.retry import Sleep
from gcemeta.transport import MetadataTransport, RawResponse
from gcemeta.watch import MetadataWatcher, WatchCallback, WatchOutcome

logger = structlog.get_logger()

DEFAULT_SERVICE_ACCOUNT = "default"


class MetadataClient:
    """
    Client for the GCE metadata service.

    Features:
    - Platform detection, probed once and cached
    - Raw text and JSON fetches with retry and exponential backoff
    - Accessors for well-known project, instance and service-account paths
    - Long-poll watching of a metadata path

    Usage:
        async with MetadataClient() as client:
            if await client.on_gce():
                print(await client.project_id())
    """

    def __init__(
        self,
        settings: Optional[MetadataSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        resolver: Optional[Resolver] = None,
        sleep: Optional[Sleep] = None,
    ):
        """
        Initialize the metadata client.

        Args:
            settings: Client settings (loaded from the environment if omitted)
            http_client: Preconfigured ``httpx.AsyncClient``
            resolver: DNS resolver used by platform detection
            sleep: Coroutine used for backoff waits
        """
        self.settings = settings or MetadataSettings()
        self.transport = MetadataTransport(self.settings, http_client=http_client)
        self.detector = PlatformDetector(self.transport, resolver=resolver)
        self._sleep = sleep or asyncio.sleep

        self._project_id: AsyncOnce[str] = AsyncOnce()
        self._numeric_project_id: AsyncOnce[str] = AsyncOnce()
        self._instance_id: AsyncOnce[str] = AsyncOnce()

    # Detection

    async def detect(self) -> DetectionResult:
        """Run platform detection once and return the cached result."""
        return await self.detector.detect()

    async def on_gce(self) -> bool:
        """Report whether this process is running on Google Compute Engine."""
        return await self.detect() is DetectionResult.ON_GCE

    async def ensure_on_gce(self) -> bool:
        """
        Like ``on_gce`` but refuses to guess.

        Raises:
            DetectionError: Every detection probe failed with an error
        """
        result = await self.detect()
        if result is DetectionResult.UNDETERMINED:
            raise DetectionError("could not determine whether running on GCE")
        return result is DetectionResult.ON_GCE

    # Requests

    @staticmethod
    def _build_params(
        params: Optional[dict[str, Any]],
        recursive: bool = False,
        alt_json: bool = False,
    ) -> dict[str, Any]:
        query = dict(params or {})
        if recursive:
            query["recursive"] = "true"
        if alt_json:
            query["alt"] = "json"
        return query

    async def fetch(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> RawResponse:
        """
        Perform a single request and classify its status.

        Raises:
            NotFoundError: Status 404
            UnexpectedStatusError: Any other non-2xx status
            MissingFlavorError: A 2xx without the Metadata-Flavor header
            DeadlineError: Timeout
            TransportError: Network failure
        """
        response = await self.transport.request(path, params=params, timeout=timeout)
        if response.status == 404:
            raise NotFoundError(response.url)
        if not response.ok:
            raise UnexpectedStatusError(
                response.status,
                response.body.decode("utf-8", errors="replace"),
                url=response.url,
            )
        if not response.has_metadata_flavor:
            raise MissingFlavorError(
                response.status,
                response.body.decode("utf-8", errors="replace"),
                url=response.url,
            )
        return response

    async def _request(self, path: str, params: dict[str, Any]) -> RawResponse:
        async for attempt in self.settings.retry.retrying(sleep=self._sleep):
            with attempt:
                response = await self.fetch(path, params=params)
        return response

    async def get(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        *,
        recursive: bool = False,
    ) -> str:
        """
        Fetch a metadata value as raw text.

        Args:
            path: Path relative to ``/computeMetadata/v1/``, e.g. ``instance/id``
            params: Extra query parameters
            recursive: Fetch a whole directory

        Returns:
            The response body
        """
        response = await self._request(path, self._build_params(params, recursive))
        try:
            return response.text
        except UnicodeDecodeError as e:
            raise DecodeError(f"response for {path} is not valid UTF-8") from e

    async def get_as(
        self,
        path: str,
        type_: Any = Any,
        params: Optional[dict[str, Any]] = None,
        *,
        recursive: bool = False,
    ) -> Any:
        """
        Fetch a metadata value as JSON and validate it into ``type_``.

        Args:
            path: Path relative to ``/computeMetadata/v1/``
            type_: Target type (pydantic model, ``list[str]``, ``dict``, ...);
                ``Any`` returns the parsed JSON document
            params: Extra query parameters
            recursive: Fetch a whole directory

        Raises:
            DecodeError: The body is not JSON or does not match ``type_``
        """
        response = await self._request(
            path, self._build_params(params, recursive, alt_json=True)
        )
        return decode_json(response.body, type_, path)

    # Accessors

    async def _get_trimmed(self, path: str) -> str:
        return (await self.get(path)).strip()

    async def project_id(self) -> str:
        """Current project's ID string (cached)."""
        return await self._project_id.get(lambda: self._get_trimmed("project/project-id"))

    async def numeric_project_id(self) -> str:
        """Current project's numeric ID (cached)."""
        return await self._numeric_project_id.get(
            lambda: self._get_trimmed("project/numeric-project-id")
        )

    async def instance_id(self) -> str:
        """Current VM's numeric instance ID (cached)."""
        return await self._instance_id.get(lambda: self._get_trimmed("instance/id"))

    async def internal_ip(self) -> str:
        return await self._get_trimmed("instance/network-interfaces/0/ip")

    async def external_ip(self) -> str:
        return await self._get_trimmed(
            "instance/network-interfaces/0/access-configs/0/external-ip"
        )

    async def hostname(self) -> str:
        """Instance hostname, of the form ``<instance>.c.<project>.internal``."""
        return await self._get_trimmed("instance/hostname")

    async def instance_name(self) -> str:
        return parse_instance_name(await self.hostname())

    async def zone(self) -> str:
        """Instance zone, such as ``us-central1-b``."""
        return parse_zone(await self._get_trimmed("instance/zone"))

    async def instance_tags(self) -> list[str]:
        return await self.get_as("instance/tags", list[str])

    async def instance_attributes(self) -> list[str]:
        """Names of the user-defined attributes of this VM."""
        return split_lines(await self.get("instance/attributes/"))

    async def project_attributes(self) -> list[str]:
        """Names of the user-defined attributes of the project."""
        return split_lines(await self.get("project/attributes/"))

    async def instance_attribute(self, name: str) -> Optional[str]:
        """Value of a VM attribute, or ``None`` if it is not set."""
        return await self._get_optional(f"instance/attributes/{name}")

    async def project_attribute(self, name: str) -> Optional[str]:
        """Value of a project attribute, or ``None`` if it is not set."""
        return await self._get_optional(f"project/attributes/{name}")

    async def _get_optional(self, path: str) -> Optional[str]:
        try:
            return await self.get(path)
        except NotFoundError:
            logger.debug("Metadata attribute not set", path=path)
            return None

    async def email(self, service_account: Optional[str] = None) -> str:
        """Email of the given service account (``default`` if omitted)."""
        account = service_account or DEFAULT_SERVICE_ACCOUNT
        return await self._get_trimmed(f"instance/service-accounts/{account}/email")

    async def scopes(self, service_account: Optional[str] = None) -> list[str]:
        """OAuth scopes granted to the given service account."""
        account = service_account or DEFAULT_SERVICE_ACCOUNT
        return split_lines(await self.get(f"instance/service-accounts/{account}/scopes"))

    async def service_account_info(
        self, service_account: Optional[str] = None
    ) -> ServiceAccountInfo:
        account = service_account or DEFAULT_SERVICE_ACCOUNT
        return await self.get_as(
            f"instance/service-accounts/{account}/",
            ServiceAccountInfo,
            recursive=True,
        )

    async def token(
        self,
        service_account: Optional[str] = None,
        scopes: Optional[Union[str, list[str]]] = None,
    ) -> AccessToken:
        """
        Fetch an OAuth 2.0 access token for a service account.

        Args:
            service_account: Account email or ``default``
            scopes: Optional scope or list of scopes to request

        Returns:
            The token with its fetch time; callers decide when to refetch
        """
        account = service_account or DEFAULT_SERVICE_ACCOUNT
        params = None
        if scopes:
            if not isinstance(scopes, str):
                scopes = ",".join(scopes)
            params = {"scopes": scopes}
        return await self.get_as(
            f"instance/service-accounts/{account}/token", AccessToken, params
        )

    # Watch

    async def watch(
        self,
        path: str,
        callback: WatchCallback,
        *,
        recursive: bool = False,
        type_: Any = None,
        timeout_sec: Optional[int] = None,
    ) -> WatchOutcome:
        """
        Long-poll ``path`` and call ``callback`` on every change.

        The first poll returns immediately with the current value, so the
        callback always sees the initial state.

        Args:
            path: Metadata path to watch
            callback: Sync or async callable receiving a ``WatchEvent``;
                returning ``WatchAction.STOP`` or ``False`` ends the watch
            recursive: Watch a whole directory
            type_: Decode each value as JSON into this type; raw text if None
            timeout_sec: Server-side wait per poll (defaults to settings)

        Returns:
            Why the watch ended
        """
        watcher = MetadataWatcher(
            self,
            path,
            recursive=recursive,
            type_=type_,
            timeout_sec=timeout_sec or self.settings.watch_timeout,
            sleep=self._sleep,
        )
        return await watcher.run(callback)

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> "MetadataClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def split_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_instance_name(hostname: str) -> str:
    name = hostname.split(".", 1)[0]
    if not name:
        raise DecodeError(f"cannot parse instance name from {hostname!r}")
    return name


def parse_zone(zone: str) -> str:
    """Take the last segment of ``projects/<num>/zones/<zone>``."""
    name = zone.rsplit("/", 1)[-1]
    if not name:
        raise DecodeError(f"cannot parse zone from {zone!r}")
    return name


# Global client instance
_global_client: Optional[MetadataClient] = None


def get_client() -> MetadataClient:
    """Get or create the process-wide client instance."""
    global _global_client
    if _global_client is None:
        _global_client = MetadataClient()
    return _global_client


async def on_gce() -> bool:
    """Report whether this process runs on GCE, using the global client."""
    return await get_client().on_gce()
