import asyncio
from datetime import timedelta

import pytest

from conftest import FakeHost, FakeTable
from forum_lottery.config import EnvironmentConfig, LotterySettings
from forum_lottery.host import HostUser, TopicInfo
from forum_lottery.models import JobKind, LotteryStatus, ScheduledJob, utc_now
from forum_lottery.runtime import LotteryRuntime


def build_runtime() -> tuple[LotteryRuntime, FakeHost, FakeTable]:
    config = EnvironmentConfig(
        discourse_url="https://forum.example.com",
        discourse_api_key="key",
        discourse_api_username="system",
        table_name="lotteries",
        aws_region="us-east-1",
        poll_minutes=1,
        event_webhook_url=None,
    )
    host = FakeHost()
    host.users[1] = HostUser(1, "creator")
    table = FakeTable()
    runtime = LotteryRuntime(
        config, LotterySettings(min_participants_global=1), table=table, host=host
    )
    return runtime, host, table


@pytest.fixture
def live_post(lottery_post):
    def factory(**overrides):
        draw_time = (utc_now() + timedelta(days=1)).isoformat()
        overrides.setdefault("draw_time", draw_time)
        return lottery_post(**overrides)

    return factory


def add_topic(host, topic_id, raw, version=1):
    host.topics[topic_id] = TopicInfo(
        id=topic_id,
        title="抽奖",
        slug=f"t-{topic_id}",
        category_id=1,
        first_post_id=topic_id * 10,
        first_post_raw=raw,
        author_id=1,
        first_post_version=version,
    )
    host.new_topic_ids.append(topic_id)


def test_first_topic_check_only_initialises_cursor(live_post):
    runtime, host, _ = build_runtime()
    add_topic(host, 7, live_post())

    assert runtime.process_new_topics() == 0
    assert runtime.storage.get_cursor() == 7
    assert runtime.storage.get_running_for_topic(7) is None


def test_new_topics_after_cursor_are_processed(live_post):
    runtime, host, _ = build_runtime()
    runtime.storage.save_cursor(7)
    add_topic(host, 8, live_post())
    add_topic(host, 9, "no lottery here")

    assert runtime.process_new_topics() == 2

    assert runtime.storage.get_cursor() == 9
    assert runtime.storage.get_running_for_topic(8) is not None
    assert runtime.storage.get_running_for_topic(9) is None
    assert host.event_types == ["lottery_created"]


def test_edit_check_applies_changed_first_post(live_post):
    runtime, host, _ = build_runtime()
    runtime.storage.save_cursor(7)
    add_topic(host, 8, live_post())
    runtime.process_new_topics()

    assert runtime.process_edits() == 0

    add_topic(host, 8, live_post(prize_name="新名字"), version=2)
    assert runtime.process_edits() == 1
    assert runtime.storage.get_running_for_topic(8).prize_name == "新名字"
    # same version is not handed over twice
    assert runtime.process_edits() == 0


@pytest.mark.asyncio
async def test_job_check_runs_due_jobs(live_post):
    runtime, host, _ = build_runtime()
    runtime.storage.save_cursor(7)
    add_topic(host, 8, live_post())
    runtime.process_new_topics()
    lottery = runtime.storage.get_running_for_topic(8)
    runtime.storage.put_job(
        ScheduledJob(JobKind.LOCK, lottery.id, utc_now() - timedelta(seconds=1))
    )

    await runtime._job_check()

    assert host.locked_posts == [lottery.post_id]
    assert runtime.storage.get_lottery(lottery.id).status == LotteryStatus.RUNNING


@pytest.mark.asyncio
async def test_loop_failures_are_logged(caplog):
    runtime, host, _ = build_runtime()
    host.failing.add("list_new_topic_ids")

    await runtime._topic_check()

    assert "Topic check failed" in caplog.text


@pytest.mark.asyncio
async def test_start_and_stop_loops():
    runtime, _host, _ = build_runtime()

    runtime.start()
    assert runtime.job_check.is_running()
    assert runtime.topic_check.is_running()
    assert runtime.edit_check.is_running()

    runtime.stop()
    await asyncio.sleep(0)
