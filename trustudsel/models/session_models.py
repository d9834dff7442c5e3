"""
Session Models.

Pydantic models for the authoritative session state, the cached session
snapshot and the ephemeral registration draft.
"""

from __future__ import annotations

import json
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field, model_validator

from trustudsel.models.auth_models import ErrorInfo

T = TypeVar("T")

_TRUTHY: frozenset[str] = frozenset({"true", "1", "yes"})


def _parse_categories(raw: Optional[str]) -> list[str]:
    """Parse a stored category list (JSON array or comma-separated)."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [str(item) for item in parsed if str(item).strip()]
    return [part.strip() for part in raw.split(",") if part.strip()]


class UserStats(BaseModel):
    """Marketplace counters shown on the profile."""

    sold: int = 0
    purchased: int = 0

    model_config = {"frozen": True}


class UserSession(BaseModel):
    """Denormalised profile projection of an authenticated identity."""

    username: str
    email: str
    name: Optional[str] = None
    university: Optional[str] = None
    city: Optional[str] = None
    zipcode: Optional[str] = None
    interested_categories: list[str] = Field(default_factory=list)
    is_verified: bool = False
    profile_image_ref: Optional[str] = None
    stats: UserStats = Field(default_factory=UserStats)
    raw_attributes: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @classmethod
    def from_provider(cls, username: str, attributes: dict[str, str]) -> "UserSession":
        """Project provider attributes into a ``UserSession``.

        Email falls back to the username when it looks like an address;
        the display name falls back through ``name``, ``custom:name`` and
        finally the username.
        """
        email = attributes.get("email") or ""
        if not email and "@" in username:
            email = username

        return cls(
            username=username,
            email=email,
            name=attributes.get("name") or attributes.get("custom:name") or username,
            university=attributes.get("custom:university") or None,
            city=attributes.get("city") or None,
            zipcode=attributes.get("zipcode") or None,
            interested_categories=_parse_categories(
                attributes.get("custom:interestedCategories"),
            ),
            is_verified=str(attributes.get("email_verified", "")).lower() in _TRUTHY,
            profile_image_ref=attributes.get("picture") or None,
            raw_attributes=dict(attributes),
        )


class SessionState(BaseModel):
    """The single authoritative authentication state.

    ``error`` has exactly two inhabited states: an ``ErrorInfo`` or
    ``None``.
    """

    is_authenticated: bool = False
    user: Optional[UserSession] = None
    loading: bool = True
    error: Optional[ErrorInfo] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _authenticated_requires_user(self) -> "SessionState":
        if self.is_authenticated and self.user is None:
            raise ValueError("is_authenticated=True requires a user")
        return self

    @classmethod
    def signed_out(cls) -> "SessionState":
        """The reset shape published after sign-out."""
        return cls(is_authenticated=False, user=None, loading=False, error=None)


class CacheEntry(BaseModel, Generic[T]):
    """A cached value and the epoch-ms time it was written."""

    data: T
    timestamp: int


class RegistrationDraft(BaseModel):
    """In-memory registration data passed between flow stages.

    Never persisted.  The flow controller drops its reference when the
    flow completes or is torn down.
    """

    email: str
    name: str
    phone_number: str
    temporary_credential: Optional[str] = Field(default=None, repr=False)
    verification_code: Optional[str] = Field(default=None, repr=False)
    password_set: bool = False


class ProfileSubmission(BaseModel):
    """Attributes collected on the final registration stage."""

    university: str
    city: str
    zipcode: str
    interested_categories: list[str] = Field(default_factory=list)
    photo_path: Optional[str] = None

    def to_attributes(self, photo_ref: Optional[str] = None) -> dict[str, str]:
        """Render the submission as provider attribute strings."""
        attributes: dict[str, str] = {
            "custom:university": self.university.strip(),
            "city": self.city.strip(),
            "zipcode": self.zipcode.strip(),
            "custom:interestedCategories": json.dumps(self.interested_categories),
        }
        if photo_ref:
            attributes["picture"] = photo_ref
        return attributes
