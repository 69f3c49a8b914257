"""Long-running process that drives the lottery engine against Discourse."""

from __future__ import annotations

import asyncio
import logging
import random

import boto3
from discord.ext import tasks

from .config import EnvironmentConfig, LotterySettings, read_lottery_settings
from .discourse import DiscourseHost
from .draw import LotteryDrawer
from .host import ForumHost
from .models import utc_now
from .repository import LotteryRepository
from .resolver import ParticipantResolver
from .scheduler import TaskCoordinator
from .service import LotteryService
from .storage import LotteryStorage

log = logging.getLogger("forum-lottery")


class LotteryRuntime:
    def __init__(
        self,
        config: EnvironmentConfig,
        settings: LotterySettings,
        *,
        table=None,
        host: ForumHost | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        if table is None:
            dynamodb = boto3.resource("dynamodb", region_name=config.aws_region)
            table = dynamodb.Table(config.table_name)
        self.host = host or DiscourseHost(
            config.discourse_url,
            config.discourse_api_key,
            config.discourse_api_username,
            event_webhook_url=config.event_webhook_url,
        )
        self.storage = LotteryStorage(table)
        self.repository = LotteryRepository(self.storage, self.host, settings)
        self.resolver = ParticipantResolver(self.host, settings)
        self.drawer = LotteryDrawer(
            self.repository,
            self.resolver,
            self.host,
            settings,
            rng=random.SystemRandom(),
        )
        self.coordinator = TaskCoordinator(
            self.storage, self.drawer, self.repository, self.host, settings
        )
        self.service = LotteryService(
            self.host, self.repository, self.coordinator, settings
        )
        # last first-post version handed to the edit path, per lottery
        self._seen_versions: dict[str, int] = {}

        interval = config.poll_minutes
        self.job_check = tasks.loop(minutes=interval)(self._job_check)
        self.topic_check = tasks.loop(minutes=interval)(self._topic_check)
        self.edit_check = tasks.loop(minutes=interval)(self._edit_check)

    # ----- Loop bodies -----
    async def _job_check(self) -> None:
        try:
            ran = await asyncio.to_thread(self.coordinator.run_due_jobs)
        except Exception as exc:  # pylint: disable=broad-except
            log.exception("Job check failed: %s", exc)
            return
        if ran:
            log.info("Processed %s scheduled job(s)", ran)

    async def _topic_check(self) -> None:
        try:
            await asyncio.to_thread(self.process_new_topics)
        except Exception as exc:  # pylint: disable=broad-except
            log.exception("Topic check failed: %s", exc)

    async def _edit_check(self) -> None:
        try:
            await asyncio.to_thread(self.process_edits)
        except Exception as exc:  # pylint: disable=broad-except
            log.exception("Edit check failed: %s", exc)

    # ----- Synchronous work -----
    def process_new_topics(self) -> int:
        cursor = self.storage.get_cursor()
        topic_ids = self.host.list_new_topic_ids(cursor)
        if not topic_ids:
            return 0
        if cursor == 0:
            # first start: only topics created from now on are considered
            self.storage.save_cursor(max(topic_ids))
            log.info("Topic cursor initialised at %s", max(topic_ids))
            return 0

        for topic_id in topic_ids:
            try:
                self.service.handle_topic_created(topic_id)
            except Exception as exc:  # pylint: disable=broad-except
                log.exception("Failed to handle topic %s: %s", topic_id, exc)
            self.storage.save_cursor(topic_id)
        return len(topic_ids)

    def process_edits(self) -> int:
        handled = 0
        for lottery in self.storage.list_running():
            topic = self.host.get_topic(lottery.topic_id)
            if topic is None or topic.first_post_version is None:
                continue
            known = self._seen_versions.get(lottery.id, lottery.post_version)
            if known is None or topic.first_post_version == known:
                self._seen_versions[lottery.id] = topic.first_post_version
                continue
            log.info(
                "First post of topic %s changed (version %s -> %s)",
                topic.id,
                known,
                topic.first_post_version,
            )
            self._seen_versions[lottery.id] = topic.first_post_version
            self.service.handle_post_edited(topic.id)
            handled += 1
        return handled

    # ----- Lifecycle -----
    def start(self) -> None:
        for loop in (self.job_check, self.topic_check, self.edit_check):
            if not loop.is_running():
                loop.start()

    def stop(self) -> None:
        for loop in (self.job_check, self.topic_check, self.edit_check):
            loop.cancel()

    async def run(self) -> None:
        self.storage.ensure_table()
        log.info(
            "Lottery runtime polling %s every %s minute(s)",
            self.config.discourse_url,
            self.config.poll_minutes,
        )
        self.start()
        try:
            await asyncio.Event().wait()
        finally:
            self.stop()

    @classmethod
    def create(cls) -> LotteryRuntime:
        config = EnvironmentConfig.load()
        return cls(config, read_lottery_settings())


async def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    log.info("Starting lottery runtime at %s", utc_now().isoformat())
    runtime = LotteryRuntime.create()
    await runtime.run()


__all__ = ["LotteryRuntime", "main"]
