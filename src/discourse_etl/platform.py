"""discourse_etl.platform

The seam between the importer and the forum it writes into.

The importer never touches storage directly; it calls a Platform:
  - lookups:   category_exists, find_user_by_email, existing_tag_names
  - creation:  create_tag, create_topic, tag_topic, create_post
  - rollback:  destroy_tag, destroy_topic, untag_topic, destroy_post

Creation failures are reported by raising PlatformError carrying the
platform's error messages. Lookups that find nothing return None / empty.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PlatformError(Exception):
    """Raised when the platform refuses or fails to create/destroy a record."""

    def __init__(self, messages: list[str] | str) -> None:
        if isinstance(messages, str):
            messages = [messages]
        self.messages = list(messages)
        super().__init__(", ".join(self.messages))


# ---------------------------------------------------------------------------
# Records returned by the platform
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlatformUser:
    id: int
    username: str
    email: str


@dataclass(frozen=True)
class CreatedTopic:
    id: int
    title: str
    user_id: int
    category_id: int


@dataclass(frozen=True)
class CreatedPost:
    id: int
    topic_id: int
    post_number: int
    user_id: int


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Single-thread write pacer with jitter and an on/off switch.

    While enabled, each sleep() blocks for base_delay ± jitter seconds.
    While disabled, sleep() returns immediately. Bulk imports disable it
    for the whole run (see shared.rate_limits_suspended).
    """

    base_delay: float = 0.5
    jitter: float = 0.1
    enabled: bool = True
    _sleeps: int = field(default=0, init=False, repr=False)

    def sleep(self) -> None:
        if not self.enabled:
            return
        delay = self.base_delay + random.uniform(-self.jitter, self.jitter)
        self._sleeps += 1
        time.sleep(max(0.0, delay))

    def disable(self) -> None:
        self.enabled = False

    def enable(self) -> None:
        self.enabled = True

    @property
    def sleeps(self) -> int:
        return self._sleeps


# ---------------------------------------------------------------------------
# Platform protocol
# ---------------------------------------------------------------------------

class Platform(Protocol):
    rate_limiter: RateLimiter

    def category_exists(self, category_id: int) -> bool:
        ...

    def find_user_by_email(self, email: str | None) -> PlatformUser | None:
        """Return the user owning this email address, or None."""
        ...

    def existing_tag_names(self, names: list[str]) -> list[str]:
        """Return the subset of names that already exist as tags."""
        ...

    def create_tag(self, name: str) -> None:
        ...

    def destroy_tag(self, name: str) -> None:
        ...

    def create_topic(
        self,
        user: PlatformUser,
        *,
        title: str,
        raw: str,
        category_id: int,
        created_at: datetime,
        import_mode: bool = False,
    ) -> CreatedTopic:
        ...

    def destroy_topic(self, topic: CreatedTopic) -> None:
        ...

    def tag_topic(self, topic: CreatedTopic, user: PlatformUser, names: list[str]) -> list[str]:
        """Attach tags by name. Returns the names that could not be attached."""
        ...

    def untag_topic(self, topic: CreatedTopic) -> None:
        ...

    def create_post(
        self,
        user: PlatformUser,
        *,
        topic: CreatedTopic,
        raw: str,
        created_at: datetime,
    ) -> CreatedPost:
        ...

    def destroy_post(self, post: CreatedPost) -> None:
        ...
