"""Markdown posted to the forum when a lottery changes state."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime, tzinfo
from typing import Final

from .models import Lottery, LotteryType, Participant

WINNER_NOTIFICATION_TITLE: Final[str] = "🎉 恭喜您中奖了！"

CANCEL_REASONS: Final[dict[str, str]] = {
    "insufficient_participants": "参与人数不足",
    "no_participants": "没有有效参与者",
    "all_specified_invalid": "指定楼层均无有效参与者",
}


def format_time(value: datetime, tz: tzinfo = UTC) -> str:
    return value.astimezone(tz).strftime("%Y年%m月%d日 %H:%M")


def _winner_lines(lottery: Lottery, winners: Sequence[Participant]) -> list[str]:
    if lottery.lottery_type == LotteryType.SPECIFIED:
        lines = ["**中奖方式：** 指定楼层", "**中奖名单：**"]
        lines.extend(f"- {winner.position}楼：@{winner.username}" for winner in winners)
    else:
        lines = ["**中奖方式：** 随机抽取", "**中奖名单：**"]
        lines.extend(
            f"{idx}. @{winner.username}" for idx, winner in enumerate(winners, start=1)
        )
    return lines


def winner_announcement(
    lottery: Lottery,
    winners: Sequence[Participant],
    *,
    eligible_count: int,
    insufficient: bool = False,
    tz: tzinfo = UTC,
) -> str:
    lines = [
        "## 🎉 开奖结果",
        "",
        f"**活动名称：** {lottery.prize_name}",
        f"**开奖时间：** {format_time(lottery.draw_time, tz)}",
        f"**参与人数：** {eligible_count} 人",
        "",
    ]
    if insufficient:
        lines.extend(
            [
                f"⚠️ **特别说明：** 实际参与人数为 {eligible_count} 人，"
                f"少于设定门槛 {lottery.min_participants} 人，但根据活动设置继续开奖。",
                "",
            ]
        )
    lines.extend(_winner_lines(lottery, winners))
    lines.extend(["", "---", "", "🎊 恭喜以上中奖者！请及时联系活动发起者领取奖品。"])
    return "\n".join(lines)


def cancellation_announcement(
    lottery: Lottery,
    *,
    eligible_count: int,
    reason: str,
    cancelled_at: datetime,
    tz: tzinfo = UTC,
) -> str:
    lines = [
        "## ❌ 活动取消",
        "",
        f"**活动名称：** {lottery.prize_name}",
        f"**原定开奖时间：** {format_time(lottery.draw_time, tz)}",
        f"**取消时间：** {format_time(cancelled_at, tz)}",
        f"**取消原因：** {CANCEL_REASONS.get(reason, reason)}",
        f"**需要人数：** {lottery.min_participants} 人",
        f"**实际人数：** {eligible_count} 人",
        "",
        "感谢大家的关注和参与，期待下次活动！",
    ]
    return "\n".join(lines)


def failure_announcement() -> str:
    return "❌ **开奖失败**\n\n系统在执行开奖时遇到错误。请联系管理员处理。"


def lock_notice() -> str:
    return "🔒 抽奖信息已锁定，不允许再次编辑。"


def rejection_notice(reasons: Sequence[str], *, title: str = "抽奖创建失败") -> str:
    body = "\n".join(f"- {reason}" for reason in reasons)
    return f"🚫 **{title}**\n\n{body}\n\n请检查抽奖信息并重新提交。"


def winner_notification(
    lottery: Lottery,
    winner: Participant,
    *,
    creator_username: str | None,
    url: str,
    tz: tzinfo = UTC,
) -> str:
    lines = [
        "恭喜您在抽奖活动中获奖！",
        "",
        f"**活动名称：** {lottery.prize_name}",
        f"**奖品说明：** {lottery.prize_details}",
        f"**开奖时间：** {format_time(lottery.draw_time, tz)}",
    ]
    if lottery.lottery_type == LotteryType.SPECIFIED:
        lines.append(f"**中奖楼层：** {winner.position}楼")
    if creator_username:
        lines.append(f"**活动发起者：** @{creator_username}")
    lines.extend(
        [
            "",
            "请及时联系活动发起者领取您的奖品。",
            "",
            f"[点击查看抽奖主题]({url})",
        ]
    )
    return "\n".join(lines)


__all__ = [
    "CANCEL_REASONS",
    "WINNER_NOTIFICATION_TITLE",
    "cancellation_announcement",
    "failure_announcement",
    "format_time",
    "lock_notice",
    "rejection_notice",
    "winner_announcement",
    "winner_notification",
]
