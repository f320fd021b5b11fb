"""Profile, link and analytics operations built on the data sync manager."""

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .models import (
    ANALYTICS, LINKS, PROFILES, AnalyticsCounters, Link, Profile, normalize_username
)
from .sync.exceptions import InvalidOperationError
from .sync.manager import DataSyncManager
from .sync.models import WriteOperation, make_key

logger = logging.getLogger(__name__)


def _validated(model, **data):
    try:
        return model(**data)
    except ValidationError as e:
        raise InvalidOperationError(f"invalid {model.__name__.lower()}: {e.errors()[0]['msg']}",
                                    {"errors": e.errors(include_url=False)})


class ProfileService:
    """Profiles are stored under ``profiles:{user_id}``."""

    def __init__(self, manager: DataSyncManager):
        self._manager = manager

    async def create_profile(self, user_id: str, username: str, display_name: str,
                             bio: str = "", avatar_url: Optional[str] = None,
                             theme: str = "default", is_public: bool = True,
                             sync_immediately: bool = False) -> Profile:
        profile = _validated(
            Profile, id=user_id, user_id=user_id, username=username, display_name=display_name,
            bio=bio, avatar_url=avatar_url, theme=theme, is_public=is_public
        )
        await self._manager.create(PROFILES, user_id, profile.to_document(),
                                   sync_immediately=sync_immediately)
        logger.info(f"Created profile {profile.username} for user {user_id}")
        return await self.get_profile(user_id) or profile

    async def get_profile(self, profile_id: str, force_refresh: bool = False) -> Optional[Profile]:
        document = await self._manager.get(make_key(PROFILES, profile_id), force_refresh=force_refresh)
        return Profile.from_document(profile_id, document) if document else None

    async def get_profile_by_user(self, user_id: str) -> Optional[Profile]:
        """Find a profile by owner, including profiles not keyed by the user id."""
        profile = await self.get_profile(user_id)
        if profile is not None:
            return profile
        results = await self._manager.query(PROFILES, [("user_id", "==", user_id)], limit=1)
        return Profile.from_document(results[0]["id"], results[0]) if results else None

    async def get_public_profile(self, username: str) -> Optional[Profile]:
        """Look up a public profile by username; private profiles are not returned."""
        normalized = normalize_username(username)
        if not normalized:
            return None
        results = await self._manager.query(
            PROFILES, [("username", "==", normalized), ("is_public", "==", True)], limit=1
        )
        return Profile.from_document(results[0]["id"], results[0]) if results else None

    async def update_profile(self, profile_id: str, sync_immediately: bool = False,
                             **fields: Any) -> Optional[Profile]:
        if "username" in fields:
            fields["username"] = normalize_username(fields["username"])
            if not fields["username"]:
                raise InvalidOperationError("username must contain at least one letter, digit or underscore")
        for name in ("id", "user_id", "created_at", "updated_at"):
            fields.pop(name, None)

        document = await self._manager.update(make_key(PROFILES, profile_id), fields,
                                              sync_immediately=sync_immediately)
        return Profile.from_document(profile_id, document) if document else None


class LinkService:
    """Links are stored under ``links:{link_id}`` and carry their ``profile_id``."""

    def __init__(self, manager: DataSyncManager):
        self._manager = manager

    async def list_links(self, profile_id: str, active_only: bool = False) -> List[Link]:
        filters = [("profile_id", "==", profile_id)]
        if active_only:
            filters.append(("is_active", "==", True))
        results = await self._manager.query(LINKS, filters, order_by="position")
        return [Link.from_document(doc["id"], doc) for doc in results]

    async def create_link(self, profile_id: str, title: str, url: str,
                          description: Optional[str] = None, position: int = 0,
                          is_active: bool = True, sync_immediately: bool = False) -> Link:
        link = _validated(
            Link, id=uuid.uuid4().hex, profile_id=profile_id, title=title, url=url,
            description=description, position=position, is_active=is_active
        )
        await self._manager.create(LINKS, link.id, link.to_document(),
                                   sync_immediately=sync_immediately)
        return link

    async def get_link(self, link_id: str) -> Optional[Link]:
        document = await self._manager.get(make_key(LINKS, link_id))
        return Link.from_document(link_id, document) if document else None

    async def update_link(self, link_id: str, sync_immediately: bool = False,
                          **fields: Any) -> Optional[Link]:
        for name in ("id", "profile_id", "clicks", "created_at", "updated_at"):
            fields.pop(name, None)
        document = await self._manager.update(make_key(LINKS, link_id), fields,
                                              sync_immediately=sync_immediately)
        return Link.from_document(link_id, document) if document else None

    async def delete_link(self, link_id: str, sync_immediately: bool = False) -> None:
        await self._manager.delete(make_key(LINKS, link_id), sync_immediately=sync_immediately)

    async def reorder_links(self, link_ids: Sequence[str], sync_immediately: bool = False) -> None:
        """Set each link's position to its index in ``link_ids``, as one batch."""
        if len(set(link_ids)) != len(link_ids):
            raise InvalidOperationError("link ids must be unique")
        operations = [
            WriteOperation("update", make_key(LINKS, link_id), {"position": position})
            for position, link_id in enumerate(link_ids)
        ]
        await self._manager.batch_write(operations, sync_immediately=sync_immediately)


class AnalyticsService:
    """View and click counters, kept as increments so offline replays add up."""

    def __init__(self, manager: DataSyncManager):
        self._manager = manager

    async def track_profile_view(self, profile_id: str) -> None:
        await self._manager.increment(make_key(ANALYTICS, profile_id), "views")

    async def track_link_click(self, link_id: str, profile_id: str) -> None:
        """Count a click on the link and on its profile's totals together."""
        await self._manager.batch_write([
            WriteOperation("increment", make_key(LINKS, link_id), {"clicks": 1}),
            WriteOperation("increment", make_key(ANALYTICS, profile_id), {"clicks": 1}),
        ])

    async def get_counters(self, profile_id: str, force_refresh: bool = False) -> AnalyticsCounters:
        document: Optional[Dict[str, Any]] = await self._manager.get(
            make_key(ANALYTICS, profile_id), force_refresh=force_refresh
        )
        return AnalyticsCounters.from_document(profile_id, document)
