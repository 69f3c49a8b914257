from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from . import announcements
from .config import LotterySettings
from .errors import DrawExecutionError, InvalidTransition
from .host import ForumHost, topic_url
from .models import (
    BackupStrategy,
    Lottery,
    LotteryStatus,
    LotteryType,
    Participant,
    utc_now,
)
from .repository import LotteryRepository
from .resolver import ParticipantResolver

log = logging.getLogger("forum-lottery.draw")


@dataclass(slots=True)
class DrawOutcome:
    status: LotteryStatus
    eligible_count: int
    winners: list[Participant] = field(default_factory=list)
    insufficient: bool = False
    reason: str | None = None
    valid_positions: list[int] | None = None


@dataclass(slots=True)
class DrawReport:
    lottery_id: str
    executed: bool
    status: LotteryStatus | None = None
    reason: str | None = None
    winners: list[Participant] = field(default_factory=list)
    eligible_count: int = 0
    insufficient: bool = False
    degraded: bool = False
    draw_time: datetime | None = None


def select_random_winners(
    participants: Sequence[Participant], count: int, rng: random.Random
) -> list[Participant]:
    """Uniform sample without replacement of ``min(count, len)`` participants."""

    if not participants or count <= 0:
        return []
    return rng.sample(list(participants), min(count, len(participants)))


def select_specified_winners(
    participants: Sequence[Participant], positions: Sequence[int]
) -> tuple[list[Participant], list[int]]:
    """Match declared reply positions against participants' first replies.

    Positions without an eligible participant are skipped.  Returns the
    winners and the positions that produced them, in declared order.
    """

    by_position = {participant.position: participant for participant in participants}
    winners: list[Participant] = []
    valid_positions: list[int] = []
    for position in positions:
        participant = by_position.get(position)
        if participant is None:
            log.debug("Specified position %s has no eligible participant", position)
            continue
        winners.append(participant)
        valid_positions.append(position)
    return winners, valid_positions


def decide_outcome(
    lottery: Lottery, participants: Sequence[Participant], rng: random.Random
) -> DrawOutcome:
    eligible_count = len(participants)

    if lottery.lottery_type == LotteryType.RANDOM and eligible_count == 0:
        return DrawOutcome(
            LotteryStatus.CANCELLED, eligible_count, reason="no_participants"
        )

    insufficient = eligible_count < lottery.min_participants
    if insufficient and lottery.backup_strategy == BackupStrategy.CANCEL:
        return DrawOutcome(
            LotteryStatus.CANCELLED,
            eligible_count,
            insufficient=True,
            reason="insufficient_participants",
        )

    if lottery.lottery_type == LotteryType.SPECIFIED:
        winners, valid_positions = select_specified_winners(
            participants, lottery.specified_post_numbers
        )
        if not winners:
            return DrawOutcome(
                LotteryStatus.CANCELLED,
                eligible_count,
                insufficient=insufficient,
                reason="all_specified_invalid",
            )
        return DrawOutcome(
            LotteryStatus.FINISHED,
            eligible_count,
            winners=winners,
            insufficient=insufficient,
            valid_positions=valid_positions,
        )

    winners = select_random_winners(participants, lottery.winners_count, rng)
    return DrawOutcome(
        LotteryStatus.FINISHED,
        eligible_count,
        winners=winners,
        insufficient=insufficient,
    )


class LotteryDrawer:
    """Runs a lottery's draw against its live state."""

    def __init__(
        self,
        repository: LotteryRepository,
        resolver: ParticipantResolver,
        host: ForumHost,
        settings: LotterySettings,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.host = host
        self.settings = settings
        self.rng = rng or random.SystemRandom()
        self._clock = clock

    def execute(self, lottery_id: str) -> DrawReport:
        lottery = self.repository.get(lottery_id)
        if lottery is None:
            log.warning("Draw requested for unknown lottery %s", lottery_id)
            return DrawReport(lottery_id, executed=False, reason="missing")
        if not lottery.is_running:
            log.info("Lottery %s is %s; skipping draw", lottery_id, lottery.status)
            return DrawReport(
                lottery_id, executed=False, status=lottery.status, reason="not_running"
            )
        if self._clock() < lottery.draw_time:
            return DrawReport(
                lottery_id,
                executed=False,
                status=lottery.status,
                reason="not_due",
                draw_time=lottery.draw_time,
            )

        log.info("Starting draw for lottery %s", lottery_id)
        try:
            outcome, degraded, final = self._draw(lottery)
        except DrawExecutionError as exc:
            log.exception("Draw failed for lottery %s: %s", lottery_id, exc)
            return self._fail(lottery)

        if final is None:
            return DrawReport(lottery_id, executed=False, reason="not_running")

        if outcome.status == LotteryStatus.FINISHED:
            self._announce_winners(final, outcome)
        else:
            self._announce_cancellation(final, outcome)

        return DrawReport(
            lottery_id,
            executed=True,
            status=outcome.status,
            reason=outcome.reason,
            winners=outcome.winners,
            eligible_count=outcome.eligible_count,
            insufficient=outcome.insufficient,
            degraded=degraded,
        )

    def _draw(self, lottery: Lottery) -> tuple[DrawOutcome, bool, Lottery | None]:
        try:
            resolution = self.resolver.resolve(lottery)
            outcome = decide_outcome(lottery, resolution.participants, self.rng)
            log.info(
                "Lottery %s: %s eligible (required %s), outcome %s%s",
                lottery.id,
                outcome.eligible_count,
                lottery.min_participants,
                outcome.status,
                f" ({outcome.reason})" if outcome.reason else "",
            )
            final = self.repository.transition(
                lottery,
                outcome.status,
                winner_user_ids=[winner.user_id for winner in outcome.winners],
                specified_post_numbers=outcome.valid_positions,
            )
        except InvalidTransition:
            raise
        except Exception as exc:
            raise DrawExecutionError(f"lottery {lottery.id}: {exc}") from exc
        return outcome, resolution.is_degraded, final

    def _fail(self, lottery: Lottery) -> DrawReport:
        try:
            final = self.repository.transition(lottery, LotteryStatus.CANCELLED)
        except Exception:
            # still running; the draw job stays queued and is retried
            log.exception("Failed to cancel lottery %s after draw failure", lottery.id)
            raise
        if final is None:
            return DrawReport(lottery.id, executed=False, reason="not_running")

        self._best_effort(
            "post failure announcement",
            lottery,
            lambda: self.host.create_post(
                lottery.topic_id, announcements.failure_announcement()
            ),
        )
        self._publish(lottery, "lottery_cancelled", reason="execution_error")
        return DrawReport(
            lottery.id,
            executed=True,
            status=LotteryStatus.CANCELLED,
            reason="execution_error",
        )

    def _announce_winners(self, lottery: Lottery, outcome: DrawOutcome) -> None:
        tz = self.settings.tzinfo
        text = announcements.winner_announcement(
            lottery,
            outcome.winners,
            eligible_count=outcome.eligible_count,
            insufficient=outcome.insufficient,
            tz=tz,
        )
        self._best_effort(
            "post winner announcement",
            lottery,
            lambda: self.host.create_post(lottery.topic_id, text),
        )
        self._notify_winners(lottery, outcome.winners)
        self._best_effort(
            "close topic", lottery, lambda: self.host.close_topic(lottery.topic_id)
        )
        self._publish(
            lottery,
            "lottery_completed",
            winner_user_ids=[winner.user_id for winner in outcome.winners],
            insufficient=outcome.insufficient,
        )

    def _notify_winners(self, lottery: Lottery, winners: Sequence[Participant]) -> None:
        creator_username: str | None = None
        try:
            creator = self.host.get_users([lottery.creator_id]).get(lottery.creator_id)
            creator_username = creator.username if creator else None
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Failed to look up creator %s: %s", lottery.creator_id, exc)

        url = topic_url(self.host.base_url, lottery.topic_id)
        for winner in winners:
            body = announcements.winner_notification(
                lottery,
                winner,
                creator_username=creator_username,
                url=url,
                tz=self.settings.tzinfo,
            )
            try:
                self.host.send_private_message(
                    winner.username, announcements.WINNER_NOTIFICATION_TITLE, body
                )
            except Exception as exc:  # pylint: disable=broad-except
                log.error(
                    "Failed to notify winner %s of lottery %s: %s",
                    winner.username,
                    lottery.id,
                    exc,
                )

    def _announce_cancellation(self, lottery: Lottery, outcome: DrawOutcome) -> None:
        text = announcements.cancellation_announcement(
            lottery,
            eligible_count=outcome.eligible_count,
            reason=outcome.reason or "insufficient_participants",
            cancelled_at=self._clock(),
            tz=self.settings.tzinfo,
        )
        self._best_effort(
            "post cancellation announcement",
            lottery,
            lambda: self.host.create_post(lottery.topic_id, text),
        )
        self._publish(lottery, "lottery_cancelled", reason=outcome.reason)

    def _publish(self, lottery: Lottery, event: str, **extra: object) -> None:
        payload: dict[str, object] = {"type": event, "lottery_id": lottery.id}
        payload.update(extra)
        self._best_effort(
            f"publish {event}",
            lottery,
            lambda: self.host.publish(lottery.topic_id, payload),
        )

    @staticmethod
    def _best_effort(action: str, lottery: Lottery, call: Callable[[], object]) -> None:
        try:
            call()
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Failed to %s for lottery %s: %s", action, lottery.id, exc)


__all__ = [
    "DrawOutcome",
    "DrawReport",
    "LotteryDrawer",
    "decide_outcome",
    "select_random_winners",
    "select_specified_winners",
]
