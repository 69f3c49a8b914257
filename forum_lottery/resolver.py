"""Eligible-participant computation from a topic's reply stream."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .config import LotterySettings
from .errors import DegradedResolution
from .host import ForumHost
from .models import Lottery, Participant, Reply

log = logging.getLogger("forum-lottery.resolver")


@dataclass(slots=True)
class Resolution:
    participants: list[Participant] = field(default_factory=list)
    degraded: DegradedResolution | None = None

    @property
    def is_degraded(self) -> bool:
        return self.degraded is not None


def eligible_replies(replies: Iterable[Reply], creator_id: int) -> list[Reply]:
    """Filters that only need the reply itself."""

    return [
        reply
        for reply in replies
        if reply.position > 1
        and reply.author_id != creator_id
        and not reply.deleted
        and not reply.hidden
    ]


def first_reply_per_author(replies: Iterable[Reply]) -> list[Participant]:
    """Keep each author's earliest reply, ordered by participation time."""

    ordered = sorted(replies, key=lambda reply: (reply.created_at, reply.position))
    participants: dict[int, Participant] = {}
    for reply in ordered:
        if reply.author_id in participants:
            continue
        participants[reply.author_id] = Participant(
            user_id=reply.author_id,
            username=reply.author_username,
            position=reply.position,
            participated_at=reply.created_at,
        )
    return list(participants.values())


class ParticipantResolver:
    def __init__(self, host: ForumHost, settings: LotterySettings) -> None:
        self.host = host
        self.settings = settings

    def resolve(self, lottery: Lottery) -> Resolution:
        try:
            return Resolution(self._full_pass(lottery))
        except Exception as exc:  # pylint: disable=broad-except
            degraded = DegradedResolution(
                f"lottery {lottery.id}: participant lookup failed ({exc})"
            )
            log.warning("%s; using simplified participant filter", degraded)

        try:
            participants = self._simplified_pass(lottery)
        except Exception:  # pylint: disable=broad-except
            log.exception(
                "Simplified participant filter failed for lottery %s", lottery.id
            )
            participants = []
        return Resolution(participants, degraded=degraded)

    def _full_pass(self, lottery: Lottery) -> list[Participant]:
        replies = eligible_replies(
            self.host.list_replies(lottery.topic_id), lottery.creator_id
        )
        users = self.host.get_users({reply.author_id for reply in replies})
        excluded = self._excluded_user_ids()
        kept = [
            reply
            for reply in replies
            if reply.author_id in users
            and users[reply.author_id].eligible
            and reply.author_id not in excluded
        ]
        participants = first_reply_per_author(kept)
        log.debug(
            "Lottery %s: %s replies, %s eligible participants",
            lottery.id,
            len(replies),
            len(participants),
        )
        return participants

    def _excluded_user_ids(self) -> set[int]:
        excluded: set[int] = set()
        for group in self.settings.excluded_groups:
            excluded |= self.host.get_group_member_ids(group)
        return excluded

    def _simplified_pass(self, lottery: Lottery) -> list[Participant]:
        replies = eligible_replies(
            self.host.list_replies(lottery.topic_id), lottery.creator_id
        )
        eligible_authors: set[int] = set()
        for author_id in {reply.author_id for reply in replies}:
            try:
                user = self.host.get_users([author_id]).get(author_id)
            except Exception as exc:  # pylint: disable=broad-except
                log.warning("User lookup failed for %s: %s", author_id, exc)
                continue
            if user is not None and user.eligible:
                eligible_authors.add(author_id)
        return first_reply_per_author(
            reply for reply in replies if reply.author_id in eligible_authors
        )


__all__ = [
    "ParticipantResolver",
    "Resolution",
    "eligible_replies",
    "first_reply_per_author",
]
