"""Deferred draw and lock tasks.

Jobs are persisted in the lottery table and picked up by a polling loop,
so delivery is at-least-once.  Both handlers re-read the lottery and are
no-ops once it has left ``running``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from . import announcements
from .config import LotterySettings
from .draw import DrawReport, LotteryDrawer
from .host import ForumHost
from .models import JobKind, Lottery, ScheduledJob, utc_now
from .repository import LotteryRepository
from .storage import LotteryStorage

log = logging.getLogger("forum-lottery.scheduler")


class TaskCoordinator:
    def __init__(
        self,
        storage: LotteryStorage,
        drawer: LotteryDrawer,
        repository: LotteryRepository,
        host: ForumHost,
        settings: LotterySettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self.drawer = drawer
        self.repository = repository
        self.host = host
        self.settings = settings
        self._clock = clock

    def schedule_for(self, lottery: Lottery) -> list[ScheduledJob]:
        jobs = [ScheduledJob(JobKind.DRAW, lottery.id, lottery.draw_time)]
        if self.settings.lock_delay.total_seconds() > 0:
            jobs.append(
                ScheduledJob(
                    JobKind.LOCK, lottery.id, lottery.created_at + self.settings.lock_delay
                )
            )
        for job in jobs:
            self.storage.put_job(job)
            log.info(
                "Scheduled %s for lottery %s at %s",
                job.kind,
                lottery.id,
                job.run_at.isoformat(),
            )
        return jobs

    def on_lottery_updated(self, before: Lottery, after: Lottery) -> ScheduledJob | None:
        """Add a draw job when an edit pulls the draw time forward.

        A later draw time needs nothing: the existing job fires early, sees
        ``not_due`` and is re-enqueued at the live time.
        """

        if after.draw_time >= before.draw_time:
            return None
        job = ScheduledJob(JobKind.DRAW, after.id, after.draw_time)
        self.storage.put_job(job)
        log.info(
            "Draw time of lottery %s moved to %s; added draw job",
            after.id,
            after.draw_time.isoformat(),
        )
        return job

    def requeue_overdue(self, now: datetime | None = None) -> int:
        """Queue a draw job for every running lottery past its draw time.

        Job keys are derived from the draw time, so an existing job is
        overwritten rather than duplicated.
        """

        now = now or self._clock()
        queued = 0
        for lottery in self.storage.list_running():
            if lottery.draw_time > now:
                continue
            self.storage.put_job(ScheduledJob(JobKind.DRAW, lottery.id, lottery.draw_time))
            queued += 1
        return queued

    def run_due_jobs(self) -> int:
        """Dispatch every job whose time has come.  Returns how many completed.

        A job is deleted only after its handler returns; a failed job stays
        queued for the next pass.
        """

        now = self._clock()
        try:
            self.requeue_overdue(now)
        except Exception as exc:  # pylint: disable=broad-except
            log.exception("Failed to sweep overdue lotteries: %s", exc)

        completed = 0
        for job in self.storage.due_jobs(now):
            try:
                self._dispatch(job)
            except Exception as exc:  # pylint: disable=broad-except
                log.exception(
                    "Job %s for lottery %s failed; will retry: %s",
                    job.kind,
                    job.lottery_id,
                    exc,
                )
                continue
            completed += 1
            try:
                self.storage.delete_job(job)
            except Exception as exc:  # pylint: disable=broad-except
                log.exception("Failed to delete job %s: %s", job.sort_key, exc)
        return completed

    def _dispatch(self, job: ScheduledJob) -> None:
        if job.kind == JobKind.DRAW:
            report = self.run_draw(job.lottery_id)
            if report.reason == "not_due" and report.draw_time is not None:
                self.storage.put_job(
                    ScheduledJob(JobKind.DRAW, job.lottery_id, report.draw_time)
                )
                log.info(
                    "Lottery %s not due yet; re-queued for %s",
                    job.lottery_id,
                    report.draw_time.isoformat(),
                )
        else:
            self.run_lock(job.lottery_id)

    def run_draw(self, lottery_id: str) -> DrawReport:
        report = self.drawer.execute(lottery_id)
        if report.executed:
            log.info(
                "Draw for lottery %s ended as %s%s",
                lottery_id,
                report.status,
                f" ({report.reason})" if report.reason else "",
            )
        return report

    def run_lock(self, lottery_id: str) -> bool:
        lottery = self.repository.get(lottery_id)
        if lottery is None or not lottery.is_running:
            log.debug("Lottery %s is not running; skipping lock", lottery_id)
            return False
        try:
            self.host.lock_post(lottery.post_id)
        except Exception as exc:  # pylint: disable=broad-except
            log.error("Failed to lock post %s of lottery %s: %s", lottery.post_id, lottery_id, exc)
            return False
        try:
            self.host.create_post(lottery.topic_id, announcements.lock_notice())
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Failed to post lock notice for lottery %s: %s", lottery_id, exc)
        log.info("Locked post %s of lottery %s", lottery.post_id, lottery_id)
        return True


__all__ = ["TaskCoordinator"]
