from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime

from . import announcements
from .config import LotterySettings
from .errors import (
    EditWindowExpired,
    ParseEmpty,
    PrerequisiteError,
    ValidationError,
)
from .host import ForumHost, TopicInfo
from .models import Lottery, LotteryParams, utc_now
from .parser import extract_lottery_block, parse_lottery_content
from .repository import LotteryRepository
from .scheduler import TaskCoordinator
from .validation import validate_intent

log = logging.getLogger("forum-lottery.service")


class LotteryService:
    """Turns topic events into lottery lifecycle operations."""

    def __init__(
        self,
        host: ForumHost,
        repository: LotteryRepository,
        coordinator: TaskCoordinator,
        settings: LotterySettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.host = host
        self.repository = repository
        self.coordinator = coordinator
        self.settings = settings
        self._clock = clock

    def _params_from_topic(self, topic: TopicInfo) -> LotteryParams | None:
        block = extract_lottery_block(topic.first_post_raw)
        if block is None:
            return None
        intent = parse_lottery_content(block)
        if intent is None:
            raise ParseEmpty()
        return validate_intent(intent, self.settings, now=self._clock()).unwrap()

    # ----- Creation -----
    def create_from_topic(self, topic_id: int) -> Lottery | None:
        """Create a lottery from a topic's first post.

        Returns ``None`` when the post carries no ``[lottery]`` block.
        Raises :class:`ParseEmpty`, :class:`ValidationError` or
        :class:`PrerequisiteError` when the block cannot become a lottery.
        """

        topic = self.host.get_topic(topic_id)
        if topic is None:
            raise PrerequisiteError("topic_missing", "无效的主题")
        params = self._params_from_topic(topic)
        if params is None:
            return None

        creator = self.host.get_users([topic.author_id]).get(topic.author_id)
        lottery = self.repository.create(topic, params, creator)
        try:
            self.coordinator.schedule_for(lottery)
        except Exception:
            log.exception("Failed to schedule lottery %s; discarding it", lottery.id)
            self._discard(lottery)
            raise
        self._publish(lottery, "lottery_created")
        return lottery

    def handle_topic_created(self, topic_id: int) -> Lottery | None:
        try:
            return self.create_from_topic(topic_id)
        except ValidationError as exc:
            log.info("Rejected lottery on topic %s: %s", topic_id, exc)
            self._reject(topic_id, [error.message for error in exc.errors])
        except (ParseEmpty, PrerequisiteError) as exc:
            log.info("Rejected lottery on topic %s: %s", topic_id, exc)
            self._reject(topic_id, [str(exc)])
        return None

    # ----- Regret-period edits -----
    def update_from_topic(self, topic_id: int) -> Lottery | None:
        """Apply an edited first post to the topic's running lottery.

        Returns ``None`` when the topic has no running lottery, the post no
        longer carries a block, or a late edit leaves the lottery as it is.
        """

        lottery = self.repository.storage.get_running_for_topic(topic_id)
        if lottery is None:
            return None
        topic = self.host.get_topic(topic_id)
        if topic is None:
            return None
        if not lottery.in_regret_period(self._clock(), self.settings.regret_delay):
            if self._declares_same_lottery(topic, lottery):
                log.debug("Edit of topic %s leaves lottery %s unchanged", topic_id, lottery.id)
                return None
            raise EditWindowExpired()
        params = self._params_from_topic(topic)
        if params is None:
            return None

        updated = self.repository.update_within_regret_period(
            lottery, params, post_version=topic.first_post_version
        )
        self.coordinator.on_lottery_updated(lottery, updated)
        self._publish(updated, "lottery_updated")
        return updated

    def handle_post_edited(self, topic_id: int) -> Lottery | None:
        try:
            return self.update_from_topic(topic_id)
        except EditWindowExpired as exc:
            log.info("Ignored edit of topic %s: %s", topic_id, exc)
            self._reject(topic_id, [str(exc)], title="抽奖修改失败")
        except ValidationError as exc:
            log.info("Rejected edit of topic %s: %s", topic_id, exc)
            self._reject(
                topic_id, [error.message for error in exc.errors], title="抽奖修改失败"
            )
        except ParseEmpty as exc:
            log.info("Rejected edit of topic %s: %s", topic_id, exc)
            self._reject(topic_id, [str(exc)], title="抽奖修改失败")
        return None

    def _declares_same_lottery(self, topic: TopicInfo, lottery: Lottery) -> bool:
        """Whether the first post still declares ``lottery``'s parameters."""

        block = extract_lottery_block(topic.first_post_raw)
        intent = parse_lottery_content(block) if block is not None else None
        if intent is None:
            return False
        # validated against the moment the stored parameters were accepted
        result = validate_intent(intent, self.settings, now=lottery.updated_at)
        if not result.ok:
            return False
        declared = dataclasses.replace(lottery)
        declared.apply_params(result.unwrap())
        return declared.param_attributes() == lottery.param_attributes()

    def _discard(self, lottery: Lottery) -> None:
        try:
            self.repository.discard(lottery)
        except Exception as exc:  # pylint: disable=broad-except
            # left running without a job; the overdue sweep draws it
            log.exception("Failed to discard lottery %s: %s", lottery.id, exc)

    def _reject(
        self, topic_id: int, reasons: list[str], *, title: str = "抽奖创建失败"
    ) -> None:
        try:
            self.host.create_post(
                topic_id, announcements.rejection_notice(reasons, title=title)
            )
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Failed to post rejection on topic %s: %s", topic_id, exc)

    def _publish(self, lottery: Lottery, event: str) -> None:
        payload = {
            "type": event,
            "lottery_id": lottery.id,
            "status": str(lottery.status),
            "draw_time": lottery.draw_time.isoformat(),
        }
        try:
            self.host.publish(lottery.topic_id, payload)
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Failed to publish %s for lottery %s: %s", event, lottery.id, exc)


__all__ = ["LotteryService"]
