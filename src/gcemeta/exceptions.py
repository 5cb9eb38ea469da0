"""
Exceptions
==========
Error taxonomy for metadata service access.
"""

from typing import Optional


class MetadataError(Exception):
    """Base class for metadata service errors."""


class TransportError(MetadataError):
    """The request could not be sent or the response could not be read."""


class DeadlineError(MetadataError):
    """The request did not complete within its timeout."""


class NotFoundError(MetadataError):
    """The metadata service answered 404 for the requested path."""

    status_code = 404

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"metadata path not found: {url}")


class UnexpectedStatusError(MetadataError):
    """The metadata service answered with a non-2xx status other than 404."""

    def __init__(self, status_code: int, body: str, url: Optional[str] = None) -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"metadata service returned {status_code} for {url}: {body[:200]}")


class DecodeError(MetadataError):
    """The response body could not be parsed into the expected shape."""


class DetectionError(MetadataError):
    """Platform detection was inconclusive because every probe failed."""


class MissingFlavorError(UnexpectedStatusError):
    """A successful response lacked the ``Metadata-Flavor: Google`` header."""

    def __init__(self, status_code: int, body: str, url: Optional[str] = None) -> None:
        super().__init__(status_code, body, url=url)
        self.args = (f"response from {url} is missing the Metadata-Flavor header",)
