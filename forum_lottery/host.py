"""Contracts for the forum the lottery engine runs on.

The core never talks to a forum directly; it receives an object that
implements :class:`ForumHost`.  :mod:`forum_lottery.discourse` provides the
Discourse implementation and the test-suite uses an in-memory fake.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from .models import Reply


@dataclass(slots=True)
class TopicInfo:
    id: int
    title: str
    slug: str
    category_id: int | None
    first_post_id: int | None
    first_post_raw: str
    author_id: int
    first_post_version: int | None = None


@dataclass(frozen=True, slots=True)
class HostUser:
    id: int
    username: str
    active: bool = True
    suspended: bool = False

    @property
    def eligible(self) -> bool:
        return self.active and not self.suspended


class ForumHost(Protocol):
    base_url: str

    def get_topic(self, topic_id: int) -> TopicInfo | None: ...

    def list_replies(self, topic_id: int) -> list[Reply]: ...

    def get_users(self, user_ids: Iterable[int]) -> dict[int, HostUser]: ...

    def get_group_member_ids(self, group: str) -> set[int]: ...

    def list_new_topic_ids(self, after_topic_id: int) -> list[int]: ...

    def create_post(self, topic_id: int, raw: str) -> None: ...

    def send_private_message(self, username: str, title: str, raw: str) -> None: ...

    def set_topic_tags(
        self, topic_id: int, *, add: Iterable[str] = (), remove: Iterable[str] = ()
    ) -> None: ...

    def lock_post(self, post_id: int) -> None: ...

    def close_topic(self, topic_id: int) -> None: ...

    def publish(self, topic_id: int, payload: Mapping[str, object]) -> None: ...


def topic_url(base_url: str, topic_id: int, slug: str | None = None) -> str:
    base = base_url.rstrip("/")
    if slug:
        return f"{base}/t/{slug}/{topic_id}"
    return f"{base}/t/{topic_id}"


__all__ = ["ForumHost", "HostUser", "TopicInfo", "topic_url"]
