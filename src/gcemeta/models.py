"""
Data Models
===========
Pydantic models for structured metadata responses.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from gcemeta.exceptions import DecodeError


def decode_json(body: bytes, type_: Any, path: str) -> Any:
    """Parse a JSON body and validate it into ``type_``."""
    try:
        return TypeAdapter(type_).validate_json(body)
    except ValidationError as e:
        raise DecodeError(f"invalid JSON for {path}: {e}") from e


class ServiceAccountInfo(BaseModel):
    """Recursive listing of ``instance/service-accounts/{account}/``."""

    email: str
    scopes: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)


class AccessToken(BaseModel):
    """OAuth 2.0 access token issued to a service account."""

    access_token: str
    expires_in: int = Field(ge=0)
    token_type: str = "Bearer"
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        return self.fetched_at + timedelta(seconds=self.expires_in)

    def expired(self, now: Optional[datetime] = None, leeway: float = 0.0) -> bool:
        """Check whether the token expires within ``leeway`` seconds of ``now``."""
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=leeway) >= self.expires_at
