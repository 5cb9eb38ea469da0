"""
HTTP Transport
==============
Single-request access to the metadata host over ``httpx``.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from gcemeta import __version__
from gcemeta.config import METADATA_FLAVOR_HEADER, METADATA_FLAVOR_VALUE, MetadataSettings
from gcemeta.exceptions import DeadlineError, TransportError

logger = structlog.get_logger()

USER_AGENT = f"gcemeta-python/{__version__}"


@dataclass(frozen=True)
class RawResponse:
    """Status, headers and body of one metadata exchange."""

    status: int
    headers: httpx.Headers
    body: bytes
    url: str

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def has_metadata_flavor(self) -> bool:
        return self.headers.get(METADATA_FLAVOR_HEADER) == METADATA_FLAVOR_VALUE


class MetadataTransport:
    """
    Issues GET requests against the metadata service.

    Relative paths are resolved under ``settings.base_url``; absolute URLs
    are sent as-is. Status codes are returned, never interpreted.
    """

    def __init__(
        self,
        settings: Optional[MetadataSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the transport.

        Args:
            settings: Client settings (loaded from the environment if omitted)
            http_client: Preconfigured client, mainly for tests; the transport
                will not close a client it did not create
        """
        self.settings = settings or MetadataSettings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.settings.timeout)

    def _get_headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            METADATA_FLAVOR_HEADER: METADATA_FLAVOR_VALUE,
        }
        if extra:
            headers.update(extra)
        # The flavor header cannot be overridden by callers
        headers[METADATA_FLAVOR_HEADER] = METADATA_FLAVOR_VALUE
        return headers

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return self.settings.base_url + path.lstrip("/")

    async def request(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> RawResponse:
        """
        Send one GET request.

        Args:
            path: Path relative to the metadata root, or an absolute URL
            params: Query parameters
            headers: Extra request headers
            timeout: Overrides the configured request timeout

        Returns:
            The raw response

        Raises:
            DeadlineError: The request timed out
            TransportError: Connection or protocol failure
        """
        url = self.url_for(path)
        try:
            response = await self._client.get(
                url,
                params=params,
                headers=self._get_headers(headers),
                timeout=timeout if timeout is not None else self.settings.timeout,
            )
        except httpx.TimeoutException as e:
            raise DeadlineError(f"request to {url} timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"request to {url} failed: {e!r}") from e

        logger.debug("Metadata response", url=str(response.url), status=response.status_code)
        return RawResponse(
            status=response.status_code,
            headers=response.headers,
            body=response.content,
            url=str(response.url),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MetadataTransport":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
