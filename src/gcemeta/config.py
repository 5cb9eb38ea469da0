"""
Client Configuration
====================
Settings for the metadata client, loaded from ``GCE_METADATA_*`` variables.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gcemeta.retry import RetryPolicy

METADATA_IP = "169.254.169.254"
METADATA_HOSTNAME = "metadata.google.internal"
METADATA_FLAVOR_HEADER = "Metadata-Flavor"
METADATA_FLAVOR_VALUE = "Google"


class MetadataSettings(BaseSettings):
    """
    Metadata client settings.

    Attributes:
        host: Overrides the metadata authority (``GCE_METADATA_HOST``), e.g.
            ``localhost:8080`` for a mock server
        ip: Link-local address probed during platform detection
        hostname: DNS name resolved during platform detection
        timeout: Per-request timeout in seconds
        detect_timeout: Timeout in seconds for each detection probe
        watch_timeout: Seconds the server may hold a watch request open
        retry: Backoff policy applied to every request
    """

    model_config = SettingsConfigDict(
        env_prefix="GCE_METADATA_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    host: Optional[str] = None
    ip: str = METADATA_IP
    hostname: str = METADATA_HOSTNAME
    timeout: float = Field(default=5.0, gt=0)
    detect_timeout: float = Field(default=3.0, gt=0)
    watch_timeout: int = Field(default=60, ge=1)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("host")
    @classmethod
    def _strip_host(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if value.lower().startswith("https://"):
            raise ValueError("the metadata service is only served over plain HTTP")
        # Accept "http://host:port/" as well as a bare authority
        value = value.removeprefix("http://").rstrip("/")
        return value or None

    @property
    def host_overridden(self) -> bool:
        return self.host is not None

    @property
    def authority(self) -> str:
        return self.host or self.ip

    @property
    def base_url(self) -> str:
        """Root of the v1 metadata tree."""
        return f"http://{self.authority}/computeMetadata/v1/"

    @property
    def probe_url(self) -> str:
        return f"http://{self.ip}/"
