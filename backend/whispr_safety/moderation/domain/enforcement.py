"""Collaborator contracts for acting on content and accounts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from whispr_safety.moderation.domain.models import ContentType

logger = logging.getLogger(__name__)


class ContentOwnerResolver(Protocol):
    async def resolve_owner(self, content_type: ContentType, content_id: str) -> Optional[str]:
        ...


class EnforcementHooks(Protocol):
    """Side effects requested by the report engine.

    ``suspend_user`` receives ``expires_at=None`` for a permanent suspension.
    """

    async def remove_content(self, content_type: ContentType, content_id: str, *, reason: str) -> None:
        ...

    async def suspend_user(self, user_id: str, *, reason: str, expires_at: datetime | None) -> None:
        ...


class NoopHooks(EnforcementHooks):
    async def remove_content(self, content_type: ContentType, content_id: str, *, reason: str) -> None:
        logger.info("content removal requested", extra={"content_type": content_type.value, "content_id": content_id})

    async def suspend_user(self, user_id: str, *, reason: str, expires_at: datetime | None) -> None:
        logger.info("suspension requested", extra={"user_id": user_id, "permanent": expires_at is None})


@dataclass(frozen=True, slots=True)
class EnforcementCall:
    action: str
    target: str
    reason: str
    content_type: ContentType | None = None
    expires_at: datetime | None = None


class RecordingHooks(EnforcementHooks):
    """Keeps every requested action; used by tests and dry runs."""

    def __init__(self) -> None:
        self.calls: list[EnforcementCall] = []

    async def remove_content(self, content_type: ContentType, content_id: str, *, reason: str) -> None:
        self.calls.append(EnforcementCall("remove_content", content_id, reason, content_type=content_type))

    async def suspend_user(self, user_id: str, *, reason: str, expires_at: datetime | None) -> None:
        self.calls.append(EnforcementCall("suspend_user", user_id, reason, expires_at=expires_at))

    def actions(self, action: str) -> list[EnforcementCall]:
        return [call for call in self.calls if call.action == action]


class InMemoryContentOwnerResolver(ContentOwnerResolver):
    def __init__(self) -> None:
        self.owners: dict[tuple[ContentType, str], str] = {}

    def register(self, content_type: ContentType, content_id: str, owner_id: str) -> None:
        self.owners[(content_type, content_id)] = owner_id

    async def resolve_owner(self, content_type: ContentType, content_id: str) -> Optional[str]:
        return self.owners.get((content_type, content_id))
