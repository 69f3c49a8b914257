from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import ClassVar


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(raw: object) -> datetime | None:
    """Parse stored ISO timestamps into aware datetimes."""

    if not raw:
        return None
    try:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _join_ints(values: list[int] | tuple[int, ...]) -> str:
    return ",".join(str(value) for value in values)


def _split_ints(raw: object) -> list[int]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        return [int(value) for value in raw]
    values: list[int] = []
    for part in str(raw).split(","):
        part = part.strip()
        if part.isdigit():
            values.append(int(part))
    return values


class LotteryStatus(StrEnum):
    RUNNING = "running"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class LotteryType(StrEnum):
    RANDOM = "random"
    SPECIFIED = "specified"


class BackupStrategy(StrEnum):
    CONTINUE = "continue"
    CANCEL = "cancel"


ALLOWED_TRANSITIONS: dict[LotteryStatus, frozenset[LotteryStatus]] = {
    LotteryStatus.RUNNING: frozenset(
        {LotteryStatus.FINISHED, LotteryStatus.CANCELLED}
    ),
    LotteryStatus.FINISHED: frozenset(),
    LotteryStatus.CANCELLED: frozenset(),
}


@dataclass(slots=True)
class LotteryIntent:
    """Loosely typed values read from a ``[lottery]`` block."""

    prize_name: str | None = None
    prize_details: str | None = None
    draw_time: str | None = None
    winners_count: str | None = None
    specified_posts: str | None = None
    min_participants: str | None = None
    backup_strategy: str | None = None
    additional_notes: str | None = None
    prize_image: str | None = None


@dataclass(frozen=True, slots=True)
class LotteryParams:
    prize_name: str
    prize_details: str
    draw_time: datetime
    winners_count: int
    min_participants: int
    backup_strategy: BackupStrategy = BackupStrategy.CONTINUE
    specified_post_numbers: tuple[int, ...] = ()
    additional_notes: str | None = None
    prize_image: str | None = None

    @property
    def lottery_type(self) -> LotteryType:
        if self.specified_post_numbers:
            return LotteryType.SPECIFIED
        return LotteryType.RANDOM


@dataclass(slots=True)
class Reply:
    """One post of the host topic's reply stream."""

    reply_id: int
    author_id: int
    author_username: str
    position: int
    created_at: datetime
    deleted: bool = False
    hidden: bool = False


@dataclass(frozen=True, slots=True)
class Participant:
    user_id: int
    username: str
    position: int
    participated_at: datetime


@dataclass(slots=True)
class Lottery:
    id: str
    topic_id: int
    post_id: int
    creator_id: int
    prize_name: str
    prize_details: str
    draw_time: datetime
    winners_count: int
    min_participants: int
    backup_strategy: BackupStrategy = BackupStrategy.CONTINUE
    specified_post_numbers: list[int] = field(default_factory=list)
    additional_notes: str | None = None
    prize_image: str | None = None
    status: LotteryStatus = LotteryStatus.RUNNING
    winner_user_ids: list[int] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    post_version: int | None = None

    PK_TEMPLATE: ClassVar[str] = "LOTTERY#%s"
    SK_VALUE: ClassVar[str] = "META"

    @classmethod
    def key(cls, lottery_id: str) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % lottery_id, "sk": cls.SK_VALUE}

    @classmethod
    def from_params(
        cls,
        lottery_id: str,
        *,
        topic_id: int,
        post_id: int,
        creator_id: int,
        params: LotteryParams,
        created_at: datetime,
        post_version: int | None = None,
    ) -> Lottery:
        lottery = cls(
            id=lottery_id,
            topic_id=topic_id,
            post_id=post_id,
            creator_id=creator_id,
            prize_name=params.prize_name,
            prize_details=params.prize_details,
            draw_time=params.draw_time,
            winners_count=params.winners_count,
            min_participants=params.min_participants,
            created_at=created_at,
            updated_at=created_at,
            post_version=post_version,
        )
        lottery.apply_params(params)
        return lottery

    @property
    def lottery_type(self) -> LotteryType:
        if self.specified_post_numbers:
            return LotteryType.SPECIFIED
        return LotteryType.RANDOM

    @property
    def is_running(self) -> bool:
        return self.status == LotteryStatus.RUNNING

    @property
    def specified_posts_text(self) -> str:
        return _join_ints(self.specified_post_numbers)

    def in_regret_period(self, now: datetime, regret_delay: timedelta) -> bool:
        return self.is_running and now <= self.created_at + regret_delay

    def apply_params(self, params: LotteryParams) -> None:
        """Overwrite the declared parameters, leaving status and winners alone."""

        self.prize_name = params.prize_name
        self.prize_details = params.prize_details
        self.draw_time = params.draw_time
        self.winners_count = params.winners_count
        self.min_participants = params.min_participants
        self.backup_strategy = BackupStrategy(params.backup_strategy)
        self.specified_post_numbers = list(params.specified_post_numbers)
        self.additional_notes = params.additional_notes
        self.prize_image = params.prize_image

    def param_attributes(self) -> dict[str, object]:
        """Attributes written when the declared parameters change."""

        return {
            "prize_name": self.prize_name,
            "prize_details": self.prize_details,
            "draw_time": self.draw_time.isoformat(),
            "winners_count": self.winners_count,
            "min_participants": self.min_participants,
            "backup_strategy": str(self.backup_strategy),
            "lottery_type": str(self.lottery_type),
            "specified_post_numbers": self.specified_posts_text,
            "additional_notes": self.additional_notes or "",
            "prize_image": self.prize_image or "",
        }

    def to_item(self) -> dict[str, object]:
        item: dict[str, object] = self.key(self.id)
        item.update(self.param_attributes())
        item.update(
            {
                "lottery_id": self.id,
                "topic_id": self.topic_id,
                "post_id": self.post_id,
                "creator_id": self.creator_id,
                "status": str(self.status),
                "winner_user_ids": _join_ints(self.winner_user_ids),
                "created_at": self.created_at.isoformat(),
                "updated_at": self.updated_at.isoformat(),
            }
        )
        if self.post_version is not None:
            item["post_version"] = self.post_version
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> Lottery:
        lottery_id = str(item.get("lottery_id") or str(item["pk"]).split("#", 1)[1])
        created_at = parse_timestamp(item.get("created_at")) or utc_now()
        post_version_raw = item.get("post_version")
        return cls(
            id=lottery_id,
            topic_id=int(item["topic_id"]),
            post_id=int(item["post_id"]),
            creator_id=int(item["creator_id"]),
            prize_name=str(item.get("prize_name", "")),
            prize_details=str(item.get("prize_details", "")),
            draw_time=parse_timestamp(item.get("draw_time")) or created_at,
            winners_count=int(item.get("winners_count", 1)),
            min_participants=int(item.get("min_participants", 1)),
            backup_strategy=BackupStrategy(
                str(item.get("backup_strategy") or BackupStrategy.CONTINUE)
            ),
            specified_post_numbers=_split_ints(item.get("specified_post_numbers")),
            additional_notes=str(item.get("additional_notes") or "") or None,
            prize_image=str(item.get("prize_image") or "") or None,
            status=LotteryStatus(str(item.get("status") or LotteryStatus.RUNNING)),
            winner_user_ids=_split_ints(item.get("winner_user_ids")),
            created_at=created_at,
            updated_at=parse_timestamp(item.get("updated_at")) or created_at,
            post_version=(
                int(post_version_raw) if post_version_raw is not None else None
            ),
        )


class JobKind(StrEnum):
    DRAW = "draw"
    LOCK = "lock"


@dataclass(frozen=True, slots=True)
class ScheduledJob:
    """A task persisted until it is picked up at or after ``run_at``."""

    kind: JobKind
    lottery_id: str
    run_at: datetime

    PK_VALUE: ClassVar[str] = "JOB"

    @property
    def sort_key(self) -> str:
        return f"{format_sort_timestamp(self.run_at)}#{self.kind}#{self.lottery_id}"

    def key(self) -> dict[str, str]:
        return {"pk": self.PK_VALUE, "sk": self.sort_key}

    def to_item(self) -> dict[str, object]:
        item: dict[str, object] = self.key()
        item.update(
            {
                "kind": str(self.kind),
                "lottery_id": self.lottery_id,
                "run_at": self.run_at.isoformat(),
            }
        )
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> ScheduledJob:
        run_at = parse_timestamp(item.get("run_at"))
        if run_at is None:
            run_at = parse_timestamp(str(item["sk"]).split("#", 1)[0]) or utc_now()
        return cls(
            kind=JobKind(str(item["kind"])),
            lottery_id=str(item["lottery_id"]),
            run_at=run_at,
        )


SORT_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_sort_timestamp(value: datetime) -> str:
    """UTC timestamp that orders lexicographically, for DynamoDB sort keys."""

    return value.astimezone(UTC).strftime(SORT_TIMESTAMP_FORMAT)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "BackupStrategy",
    "JobKind",
    "ScheduledJob",
    "format_sort_timestamp",
    "Lottery",
    "LotteryIntent",
    "LotteryParams",
    "LotteryStatus",
    "LotteryType",
    "Participant",
    "Reply",
    "parse_timestamp",
    "utc_now",
]
