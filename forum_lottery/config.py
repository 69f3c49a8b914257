"""Configuration helpers for the lottery runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from zoneinfo import ZoneInfo

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def env_int(name: str, *, default: int | None = None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_list(name: str, *, separator: str = "|") -> list[str]:
    raw = os.getenv(name) or ""
    return [part.strip() for part in raw.split(separator) if part.strip()]


def _category_ids(values: list[str]) -> frozenset[int]:
    ids: set[int] = set()
    for value in values:
        try:
            category_id = int(value)
        except ValueError:
            continue
        if category_id > 0:
            ids.add(category_id)
    return frozenset(ids)


@dataclass(frozen=True)
class LotterySettings:
    enabled: bool = True
    allowed_category_ids: frozenset[int] = frozenset()
    excluded_groups: tuple[str, ...] = ()
    min_participants_global: int = 5
    lock_delay_minutes: int = 30
    regret_delay_minutes: int = 30
    max_specified_posts: int = 20
    max_random_winners: int = 100
    timezone: str = "UTC"

    @property
    def lock_delay(self) -> timedelta:
        return timedelta(minutes=max(self.lock_delay_minutes, 0))

    @property
    def regret_delay(self) -> timedelta:
        return timedelta(minutes=max(self.regret_delay_minutes, 0))

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def read_lottery_settings() -> LotterySettings:
    lock_delay = env_int("LOTTERY_POST_LOCK_DELAY_MINUTES", default=30)
    return LotterySettings(
        enabled=env_bool("LOTTERY_ENABLED", default=True),
        allowed_category_ids=_category_ids(env_list("LOTTERY_ALLOWED_CATEGORIES")),
        excluded_groups=tuple(env_list("LOTTERY_EXCLUDED_GROUPS")),
        min_participants_global=env_int("LOTTERY_MIN_PARTICIPANTS_GLOBAL", default=5),
        lock_delay_minutes=lock_delay,
        regret_delay_minutes=env_int(
            "LOTTERY_REGRET_DELAY_MINUTES", default=lock_delay
        ),
        max_specified_posts=env_int("LOTTERY_MAX_SPECIFIED_POSTS", default=20),
        max_random_winners=env_int("LOTTERY_MAX_RANDOM_WINNERS", default=100),
        timezone=os.getenv("LOTTERY_TIMEZONE") or "UTC",
    )


@dataclass(slots=True)
class EnvironmentConfig:
    discourse_url: str
    discourse_api_key: str
    discourse_api_username: str
    table_name: str
    aws_region: str
    poll_minutes: int
    event_webhook_url: str | None

    @classmethod
    def load(cls) -> EnvironmentConfig:
        missing: list[str] = []

        def need(name: str) -> str:
            value = os.getenv(name)
            if not value:
                missing.append(name)
                return ""
            return value

        discourse_url = need("DISCOURSE_URL")
        discourse_api_key = need("DISCOURSE_API_KEY")
        table_name = need("LOTTERY_TABLE_NAME")

        if missing:
            raise RuntimeError("Missing env vars: " + ", ".join(sorted(set(missing))))

        return cls(
            discourse_url=discourse_url.rstrip("/"),
            discourse_api_key=discourse_api_key,
            discourse_api_username=os.getenv("DISCOURSE_API_USERNAME") or "system",
            table_name=table_name,
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            poll_minutes=max(env_int("LOTTERY_POLL_MINUTES", default=1), 1),
            event_webhook_url=os.getenv("LOTTERY_EVENT_WEBHOOK_URL") or None,
        )


__all__ = [
    "EnvironmentConfig",
    "LotterySettings",
    "env_bool",
    "env_int",
    "env_list",
    "read_lottery_settings",
]
