from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Final, cast

from .config import LotterySettings
from .errors import EditWindowExpired, InvalidTransition, PrerequisiteError
from .host import ForumHost, HostUser, TopicInfo
from .models import (
    ALLOWED_TRANSITIONS,
    Lottery,
    LotteryParams,
    LotteryStatus,
    utc_now,
)
from .storage import LotteryStorage, RunningLotteryExists

log = logging.getLogger("forum-lottery.repository")

STATUS_TAGS: Final[dict[LotteryStatus, str]] = {
    LotteryStatus.RUNNING: "抽奖中",
    LotteryStatus.FINISHED: "已开奖",
    LotteryStatus.CANCELLED: "已取消",
}


class LotteryRepository:
    """Lifecycle operations on the lottery aggregate."""

    def __init__(
        self,
        storage: LotteryStorage,
        host: ForumHost,
        settings: LotterySettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self.host = host
        self.settings = settings
        self._clock = clock

    def get(self, lottery_id: str) -> Lottery | None:
        return self.storage.get_lottery(lottery_id)

    def _check_prerequisites(
        self, topic: TopicInfo | None, creator: HostUser | None
    ) -> TopicInfo:
        if not self.settings.enabled:
            raise PrerequisiteError("disabled", "抽奖功能已关闭")
        if topic is None:
            raise PrerequisiteError("topic_missing", "无效的主题")
        if topic.first_post_id is None:
            raise PrerequisiteError("post_missing", "无法找到主题的首个帖子")
        allowed = self.settings.allowed_category_ids
        if allowed and topic.category_id not in allowed:
            raise PrerequisiteError("category_not_allowed", "当前分类不支持抽奖功能")
        if self.storage.get_running_for_topic(topic.id) is not None:
            raise PrerequisiteError("already_running", "该主题已存在进行中的抽奖活动")
        if creator is None or not creator.eligible:
            raise PrerequisiteError("creator_inactive", "用户状态无效")
        return topic

    def create(
        self,
        topic: TopicInfo | None,
        params: LotteryParams,
        creator: HostUser | None,
    ) -> Lottery:
        topic = self._check_prerequisites(topic, creator)
        creator = cast(HostUser, creator)

        lottery = Lottery.from_params(
            uuid.uuid4().hex,
            topic_id=topic.id,
            post_id=cast(int, topic.first_post_id),
            creator_id=creator.id,
            params=params,
            created_at=self._clock(),
            post_version=topic.first_post_version,
        )
        try:
            self.storage.insert_running(lottery)
        except RunningLotteryExists as exc:
            raise PrerequisiteError(
                "already_running", "该主题已存在进行中的抽奖活动"
            ) from exc

        log.info(
            "Created %s lottery %s on topic %s (draw at %s)",
            lottery.lottery_type,
            lottery.id,
            lottery.topic_id,
            lottery.draw_time.isoformat(),
        )
        self._retag(lottery.topic_id, LotteryStatus.RUNNING)
        return lottery

    def discard(self, lottery: Lottery) -> None:
        """Undo :meth:`create` for a lottery that could not be scheduled."""

        if not self.storage.discard_running(lottery):
            log.info("Lottery %s already left running; nothing to discard", lottery.id)
            return
        log.warning("Discarded lottery %s on topic %s", lottery.id, lottery.topic_id)
        try:
            self.host.set_topic_tags(
                lottery.topic_id, add=[], remove=[STATUS_TAGS[LotteryStatus.RUNNING]]
            )
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Failed to untag topic %s: %s", lottery.topic_id, exc)

    def update_within_regret_period(
        self,
        lottery: Lottery,
        params: LotteryParams,
        *,
        post_version: int | None = None,
    ) -> Lottery:
        now = self._clock()
        if not lottery.in_regret_period(now, self.settings.regret_delay):
            raise EditWindowExpired()

        edited = dataclasses.replace(lottery)
        edited.apply_params(params)
        edited.updated_at = now
        if post_version is not None:
            edited.post_version = post_version

        stored = self.storage.update_params(edited)
        if stored is None:
            # drawn or cancelled between the read and the write
            raise EditWindowExpired("抽奖已结束，无法修改")
        log.info("Updated lottery %s within the regret period", lottery.id)
        return stored

    def transition(
        self,
        lottery: Lottery,
        status: LotteryStatus,
        *,
        winner_user_ids: Iterable[int] = (),
        specified_post_numbers: list[int] | None = None,
    ) -> Lottery | None:
        """Move ``lottery`` out of ``running``.

        Returns ``None`` if another worker already finalised it.
        """

        if status not in ALLOWED_TRANSITIONS[lottery.status]:
            raise InvalidTransition(
                f"Lottery {lottery.id} cannot move from {lottery.status} to {status}"
            )

        updated = self.storage.complete(
            lottery,
            status,
            winner_user_ids=list(winner_user_ids),
            specified_post_numbers=specified_post_numbers,
            updated_at=self._clock(),
        )
        if updated is None:
            log.info("Lottery %s was already finalised elsewhere", lottery.id)
            return None

        log.info("Lottery %s is now %s", lottery.id, status)
        self._retag(lottery.topic_id, status)
        return updated

    def _retag(self, topic_id: int, status: LotteryStatus) -> None:
        current = STATUS_TAGS[status]
        stale = [tag for tag in STATUS_TAGS.values() if tag != current]
        try:
            self.host.set_topic_tags(topic_id, add=[current], remove=stale)
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Failed to tag topic %s as %s: %s", topic_id, current, exc)


__all__ = ["LotteryRepository", "STATUS_TAGS"]
