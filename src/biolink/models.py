"""
Pydantic models for the bio-link documents stored through the sync manager.

The sync core treats documents as opaque dicts; these models give the domain
services typed access and validation on the way in and out.
"""

import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


PROFILES = "profiles"
LINKS = "links"
ANALYTICS = "analytics"

# Fields assigned by the remote store on every write
SERVER_FIELDS = {"id", "created_at", "updated_at"}

USERNAME_PATTERN = re.compile(r"[^a-z0-9_]")


def normalize_username(username: str) -> str:
    """Lowercase a username and strip everything but letters, digits and underscores."""
    return USERNAME_PATTERN.sub("", username.strip().lower())


class Profile(BaseModel):
    """
    A user's public bio page.

    Attributes:
        id: Document id (the owning user's id)
        user_id: Identity provider id of the owner
        username: Normalized handle used in the public URL
        display_name: Name shown on the page
        bio: Free-text description
        avatar_url: Avatar image reference, if any
        theme: Theme identifier
        is_public: Whether the page is visible to anonymous visitors
        created_at: Server timestamp of creation (None until synced)
        updated_at: Server timestamp of the last write (None until synced)
    """
    id: str
    user_id: str
    username: str
    display_name: str
    bio: str = ""
    avatar_url: Optional[str] = None
    theme: str = "default"
    is_public: bool = True
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    @field_validator("username")
    @classmethod
    def _normalize(cls, value: str) -> str:
        normalized = normalize_username(value)
        if not normalized:
            raise ValueError("username must contain at least one letter, digit or underscore")
        return normalized

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude=SERVER_FIELDS)

    @classmethod
    def from_document(cls, doc_id: str, document: Dict[str, Any]) -> "Profile":
        return cls(**{**document, "id": doc_id})


class Link(BaseModel):
    """
    One link shown on a profile page.

    Attributes:
        id: Document id
        profile_id: Owning profile
        title: Link label
        url: Target URL
        description: Optional subtitle
        position: Sort order on the page (ascending)
        is_active: Hidden from visitors when False
        clicks: Click counter, maintained by increments
    """
    id: str
    profile_id: str
    title: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    description: Optional[str] = None
    position: int = 0
    is_active: bool = True
    clicks: int = 0
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    @field_validator("url")
    @classmethod
    def _ensure_scheme(cls, value: str) -> str:
        value = value.strip()
        if "://" not in value and not value.startswith("mailto:"):
            value = f"https://{value}"
        return value

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude=SERVER_FIELDS)

    @classmethod
    def from_document(cls, doc_id: str, document: Dict[str, Any]) -> "Link":
        return cls(**{**document, "id": doc_id})


class AnalyticsCounters(BaseModel):
    """Aggregated view and click counts for one profile."""
    profile_id: str
    views: int = 0
    clicks: int = 0
    updated_at: Optional[float] = None

    @classmethod
    def from_document(cls, profile_id: str, document: Optional[Dict[str, Any]]) -> "AnalyticsCounters":
        document = document or {}
        return cls(
            profile_id=profile_id,
            views=document.get("views", 0),
            clicks=document.get("clicks", 0),
            updated_at=document.get("updated_at"),
        )
