"""
gcemeta
=======
Async client for the Google Compute Engine metadata service.
"""

__version__ = "0.3.0"

from gcemeta.client import MetadataClient, get_client, on_gce
from gcemeta.config import MetadataSettings
from gcemeta.detection import DetectionResult
from gcemeta.exceptions import (
    DeadlineError,
    DecodeError,
    DetectionError,
    MetadataError,
    MissingFlavorError,
    NotFoundError,
    TransportError,
    UnexpectedStatusError,
)
from gcemeta.models import AccessToken, ServiceAccountInfo
from gcemeta.retry import RetryPolicy
from gcemeta.watch import WatchAction, WatchEvent, WatchOutcome

__all__ = [
    "MetadataClient",
    "MetadataSettings",
    "RetryPolicy",
    "DetectionResult",
    "WatchAction",
    "WatchEvent",
    "WatchOutcome",
    "AccessToken",
    "ServiceAccountInfo",
    "MetadataError",
    "TransportError",
    "DeadlineError",
    "NotFoundError",
    "UnexpectedStatusError",
    "DecodeError",
    "DetectionError",
    "MissingFlavorError",
    "get_client",
    "on_gce",
]
