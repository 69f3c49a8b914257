"""Parsing of ``[lottery]`` blocks authored in forum posts.

The block body is a list of ``key：value`` lines separated by a full-width
colon.  Keys are looked up in :data:`FIELD_GRAMMAR`; anything else is
ignored so authors can add free-form lines without breaking the lottery.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Final

from .models import BackupStrategy, LotteryIntent

log = logging.getLogger("forum-lottery.parser")

SEPARATOR: Final[str] = "："

_BLOCK_PATTERN = re.compile(r"\[lottery\](.*?)\[/lottery\]", re.DOTALL | re.IGNORECASE)
_DIGITS_PATTERN = re.compile(r"\d+")


def _text(value: str) -> str | None:
    value = value.strip()
    return value or None


def _digits(value: str) -> str | None:
    match = _DIGITS_PATTERN.search(value)
    return match.group(0) if match else None


def _backup_strategy(value: str) -> str:
    lowered = value.strip().lower()
    if "取消" in lowered or "cancel" in lowered:
        return BackupStrategy.CANCEL.value
    return BackupStrategy.CONTINUE.value


Coercion = Callable[[str], str | None]

FIELD_GRAMMAR: Final[tuple[tuple[str, str, Coercion], ...]] = (
    ("活动名称", "prize_name", _text),
    ("奖品说明", "prize_details", _text),
    ("开奖时间", "draw_time", _text),
    ("获奖人数", "winners_count", _text),
    ("指定楼层", "specified_posts", _text),
    ("参与门槛", "min_participants", _digits),
    ("后备策略", "backup_strategy", _backup_strategy),
    ("补充说明", "additional_notes", _text),
    ("奖品图片", "prize_image", _text),
)

_FIELDS_BY_LABEL: Final[dict[str, tuple[str, Coercion]]] = {
    label: (attribute, coercion) for label, attribute, coercion in FIELD_GRAMMAR
}


def extract_lottery_block(raw: str | None) -> str | None:
    """Return the body of the first ``[lottery]`` block, if any."""

    if not raw:
        return None
    match = _BLOCK_PATTERN.search(raw)
    if not match:
        return None
    return match.group(1)


def parse_lottery_content(text: str | None) -> LotteryIntent | None:
    """Turn a block body into a :class:`LotteryIntent`.

    Returns ``None`` when no recognised key is present.  Later lines win
    over earlier ones for the same key.
    """

    if not text:
        return None

    intent = LotteryIntent()
    recognised = False
    for line in text.splitlines():
        line = line.strip()
        if SEPARATOR not in line:
            continue
        label, value = line.split(SEPARATOR, 1)
        field = _FIELDS_BY_LABEL.get(label.strip())
        if field is None:
            continue
        attribute, coercion = field
        setattr(intent, attribute, coercion(value))
        recognised = True

    if not recognised:
        return None

    if intent.backup_strategy is None:
        intent.backup_strategy = BackupStrategy.CONTINUE.value
    log.debug("Parsed lottery intent: %s", intent)
    return intent


def parse_lottery_post(raw: str | None) -> LotteryIntent | None:
    return parse_lottery_content(extract_lottery_block(raw))


__all__ = [
    "FIELD_GRAMMAR",
    "extract_lottery_block",
    "parse_lottery_content",
    "parse_lottery_post",
]
