from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Final

from .config import LotterySettings
from .errors import FieldError, ValidationError
from .models import BackupStrategy, LotteryIntent, LotteryParams, utc_now


class InvalidValueError(ValueError):
    """Base exception for a single invalid value."""


PRIZE_NAME_MAX: Final[int] = 100
PRIZE_DETAILS_MAX: Final[int] = 500
ADDITIONAL_NOTES_MAX: Final[int] = 300
PRIZE_IMAGE_MAX: Final[int] = 500
MIN_PARTICIPANTS_RANGE: Final[tuple[int, int]] = (1, 1000)
MIN_LEAD_TIME: Final[timedelta] = timedelta(minutes=5)
MAX_HORIZON: Final[timedelta] = timedelta(days=365)

_DRAW_TIME_FORMATS: Final[tuple[str, ...]] = (
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y年%m月%d日 %H:%M",
)
_POSITION_SPLIT = re.compile(r"[,，]")
_IMAGE_URL_PATTERN = re.compile(
    r"^https?://\S+\.(?:jpe?g|png|gif|webp|bmp|svg)(?:\?\S*)?$", re.IGNORECASE
)


def parse_draw_time(raw: str, tz: tzinfo = UTC) -> datetime:
    """Parse a draw time, interpreting naive values in ``tz``; returns UTC."""

    value = raw.strip()
    if not value:
        raise InvalidValueError("开奖时间不能为空")

    parsed: datetime | None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _DRAW_TIME_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
            except ValueError:
                continue
            break
    if parsed is None:
        raise InvalidValueError(
            f"开奖时间格式无效：{value}（示例：2025-08-20 18:00）"
        )

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(UTC)


def parse_specified_posts(raw: str, *, max_count: int) -> tuple[int, ...]:
    """Parse ``3,5,9`` into reply positions.

    Tokens that are not integers greater than one are dropped; the rest must
    be non-empty, unique and no more than ``max_count``.
    """

    positions: list[int] = []
    for token in _POSITION_SPLIT.split(raw):
        token = token.strip()
        if not token.isdigit():
            continue
        number = int(token)
        if number > 1:
            positions.append(number)

    if not positions:
        raise InvalidValueError("指定楼层格式错误，请使用逗号分隔的大于1的楼层号")
    if len(positions) != len(set(positions)):
        raise InvalidValueError("指定楼层不能包含重复数字")
    if len(positions) > max_count:
        raise InvalidValueError(f"指定楼层数量不能超过{max_count}个")
    return tuple(positions)


def parse_winners_count(raw: str | None, *, max_count: int) -> int:
    try:
        count = int(str(raw).strip()) if raw is not None else 1
    except ValueError:
        count = 1
    return min(max(count, 1), max(max_count, 1))


def is_valid_image_url(url: str) -> bool:
    return bool(_IMAGE_URL_PATTERN.match(url.strip()))


@dataclass(slots=True)
class ValidationResult:
    params: LotteryParams | None = None
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.params is not None and not self.errors

    def unwrap(self) -> LotteryParams:
        if self.errors or self.params is None:
            raise ValidationError(self.errors)
        return self.params


def validate_intent(
    intent: LotteryIntent,
    settings: LotterySettings,
    *,
    now: datetime | None = None,
) -> ValidationResult:
    """Validate a parsed intent, collecting every violation."""

    now = now or utc_now()
    errors: list[FieldError] = []

    def fail(field_name: str, message: str) -> None:
        errors.append(FieldError(field_name, message))

    prize_name = (intent.prize_name or "").strip()
    prize_details = (intent.prize_details or "").strip()
    draw_time_raw = (intent.draw_time or "").strip()
    additional_notes = (intent.additional_notes or "").strip() or None
    prize_image = (intent.prize_image or "").strip() or None

    if not prize_name:
        fail("prize_name", "缺少必填字段：活动名称")
    elif len(prize_name) > PRIZE_NAME_MAX:
        fail("prize_name", f"活动名称不能超过{PRIZE_NAME_MAX}个字符")

    if not prize_details:
        fail("prize_details", "缺少必填字段：奖品说明")
    elif len(prize_details) > PRIZE_DETAILS_MAX:
        fail("prize_details", f"奖品说明不能超过{PRIZE_DETAILS_MAX}个字符")

    if additional_notes and len(additional_notes) > ADDITIONAL_NOTES_MAX:
        fail("additional_notes", f"补充说明不能超过{ADDITIONAL_NOTES_MAX}个字符")

    if prize_image:
        if len(prize_image) > PRIZE_IMAGE_MAX:
            fail("prize_image", f"奖品图片地址不能超过{PRIZE_IMAGE_MAX}个字符")
        elif not is_valid_image_url(prize_image):
            fail("prize_image", "奖品图片必须是以图片扩展名结尾的 http(s) 地址")

    draw_time: datetime | None = None
    if not draw_time_raw:
        fail("draw_time", "缺少必填字段：开奖时间")
    else:
        try:
            draw_time = parse_draw_time(draw_time_raw, settings.tzinfo)
        except InvalidValueError as exc:
            fail("draw_time", str(exc))
        else:
            if draw_time <= now:
                fail("draw_time", "开奖时间必须是未来时间")
            elif draw_time < now + MIN_LEAD_TIME:
                fail("draw_time", "开奖时间至少需要在5分钟之后")
            if draw_time > now + MAX_HORIZON:
                fail("draw_time", "开奖时间不能超过一年")

    low, high = MIN_PARTICIPANTS_RANGE
    min_participants = 0
    try:
        min_participants = int(str(intent.min_participants).strip())
    except ValueError:
        min_participants = 0
    if min_participants < low:
        fail("min_participants", f"参与门槛必须至少为{low}人")
    elif min_participants > high:
        fail("min_participants", f"参与门槛不能超过{high}人")
    elif min_participants < settings.min_participants_global:
        fail(
            "min_participants",
            f"参与门槛不能低于全局设置的{settings.min_participants_global}人",
        )

    specified: tuple[int, ...] = ()
    specified_raw = (intent.specified_posts or "").strip()
    if specified_raw:
        try:
            specified = parse_specified_posts(
                specified_raw, max_count=settings.max_specified_posts
            )
        except InvalidValueError as exc:
            fail("specified_posts", str(exc))
        winners_count = len(specified)
    else:
        winners_count = parse_winners_count(
            intent.winners_count, max_count=settings.max_random_winners
        )

    try:
        backup_strategy = BackupStrategy(
            (intent.backup_strategy or BackupStrategy.CONTINUE.value).strip()
        )
    except ValueError:
        fail("backup_strategy", "后备策略只能是继续开奖或取消活动")
        backup_strategy = BackupStrategy.CONTINUE

    if errors or draw_time is None:
        return ValidationResult(errors=errors)

    params = LotteryParams(
        prize_name=prize_name,
        prize_details=prize_details,
        draw_time=draw_time,
        winners_count=winners_count,
        min_participants=min_participants,
        backup_strategy=backup_strategy,
        specified_post_numbers=specified,
        additional_notes=additional_notes,
        prize_image=prize_image,
    )
    return ValidationResult(params=params)


__all__ = [
    "InvalidValueError",
    "ValidationResult",
    "is_valid_image_url",
    "parse_draw_time",
    "parse_specified_posts",
    "parse_winners_count",
    "validate_intent",
]
