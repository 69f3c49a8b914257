import random
from collections import Counter
from datetime import UTC, datetime, timedelta

import pytest

from forum_lottery import decide_outcome
from forum_lottery.draw import select_random_winners, select_specified_winners
from forum_lottery.models import (
    BackupStrategy,
    LotteryParams,
    LotteryStatus,
    Participant,
)

START = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def participants(*positions: int) -> list[Participant]:
    return [
        Participant(
            user_id=position * 10,
            username=f"user{position * 10}",
            position=position,
            participated_at=START + timedelta(seconds=position),
        )
        for position in positions
    ]


@pytest.fixture
def create_lottery(repository, host, make_topic, clock):
    def factory(**overrides):
        values = dict(
            prize_name="新年抽奖",
            prize_details="键盘一把",
            draw_time=clock() + timedelta(hours=2),
            winners_count=2,
            min_participants=3,
        )
        values.update(overrides)
        topic = make_topic()
        return repository.create(topic, LotteryParams(**values), host.users[1])

    return factory


# ----- Selection -----
def test_random_selection_is_distinct_and_bounded():
    pool = participants(*range(2, 12))
    winners = select_random_winners(pool, 3, random.Random(7))
    assert len(winners) == 3
    assert len({w.user_id for w in winners}) == 3
    assert set(winners) <= set(pool)

    assert len(select_random_winners(pool[:2], 5, random.Random(7))) == 2
    assert select_random_winners([], 5, random.Random(7)) == []


def test_random_selection_is_uniform_over_many_trials():
    pool = participants(2, 3, 4, 5, 6)
    rng = random.Random(20250101)
    trials = 10_000

    counts = Counter(
        select_random_winners(pool, 1, rng)[0].user_id for _ in range(trials)
    )

    # expected 2000 each, standard deviation 40
    assert set(counts) == {p.user_id for p in pool}
    for count in counts.values():
        assert 1800 < count < 2200


def test_specified_selection_skips_missing_positions():
    winners, valid = select_specified_winners(participants(3, 4, 9), [3, 5, 9])
    assert [w.position for w in winners] == [3, 9]
    assert valid == [3, 9]


# ----- Outcome decision -----
def test_random_outcome_with_no_participants(create_lottery):
    lottery = create_lottery(backup_strategy=BackupStrategy.CANCEL)

    outcome = decide_outcome(lottery, [], random.Random(1))

    assert outcome.status == LotteryStatus.CANCELLED
    assert outcome.reason == "no_participants"
    assert outcome.winners == []


def test_outcome_cancels_below_threshold_when_configured(create_lottery):
    lottery = create_lottery(backup_strategy=BackupStrategy.CANCEL, min_participants=5)

    outcome = decide_outcome(lottery, participants(2, 3), random.Random(1))

    assert outcome.status == LotteryStatus.CANCELLED
    assert outcome.reason == "insufficient_participants"
    assert outcome.insufficient


def test_outcome_continues_below_threshold(create_lottery):
    lottery = create_lottery(min_participants=5)

    outcome = decide_outcome(lottery, participants(2, 3, 4), random.Random(1))

    assert outcome.status == LotteryStatus.FINISHED
    assert outcome.insufficient
    assert len(outcome.winners) == 2


def test_specified_outcome_with_all_positions_invalid(create_lottery):
    lottery = create_lottery(specified_post_numbers=(7, 8), min_participants=1)

    outcome = decide_outcome(lottery, participants(2, 3), random.Random(1))

    assert outcome.status == LotteryStatus.CANCELLED
    assert outcome.reason == "all_specified_invalid"


def test_specified_outcome_keeps_valid_positions(create_lottery):
    lottery = create_lottery(specified_post_numbers=(3, 5, 9), min_participants=1)

    outcome = decide_outcome(lottery, participants(2, 3, 9), random.Random(1))

    assert outcome.status == LotteryStatus.FINISHED
    assert outcome.valid_positions == [3, 9]
    assert [w.position for w in outcome.winners] == [3, 9]


# ----- Draw execution -----
def test_draw_before_draw_time_is_not_due(drawer, create_lottery):
    lottery = create_lottery()

    report = drawer.execute(lottery.id)

    assert not report.executed
    assert report.reason == "not_due"
    assert report.draw_time == lottery.draw_time


def test_draw_for_unknown_lottery(drawer):
    report = drawer.execute("missing")
    assert not report.executed
    assert report.reason == "missing"


def test_draw_runs_exactly_once(drawer, create_lottery, add_replies, host, clock, repository):
    lottery = create_lottery()
    add_replies(100, [2, 3, 4, 5])
    clock.advance(hours=2)

    first = drawer.execute(lottery.id)
    second = drawer.execute(lottery.id)

    assert first.executed and first.status == LotteryStatus.FINISHED
    assert not second.executed and second.reason == "not_running"
    stored = repository.get(lottery.id)
    assert stored.winner_user_ids == [w.user_id for w in first.winners]
    announcements = [raw for _topic, raw in host.posts if "开奖结果" in raw]
    assert len(announcements) == 1
    assert len(host.messages) == 2
    assert host.closed_topics == [100]
    assert host.event_types == ["lottery_completed"]
    assert host.tags[100] == {"已开奖"}


def test_winner_notification_failure_does_not_stop_the_draw(
    drawer, create_lottery, add_replies, host, clock, monkeypatch
):
    lottery = create_lottery(winners_count=3)
    add_replies(100, [2, 3, 4])
    clock.advance(hours=2)
    sent = []

    def flaky_message(username, title, raw):
        if username == "user3":
            raise RuntimeError("mail down")
        sent.append(username)

    monkeypatch.setattr(host, "send_private_message", flaky_message)

    report = drawer.execute(lottery.id)

    assert report.status == LotteryStatus.FINISHED
    assert sorted(sent) == ["user2", "user4"]


def test_announcement_failures_are_not_fatal(drawer, create_lottery, add_replies, host, clock):
    lottery = create_lottery()
    add_replies(100, [2, 3, 4])
    host.failing.update({"create_post", "close_topic", "publish", "set_topic_tags"})
    clock.advance(hours=2)

    report = drawer.execute(lottery.id)

    assert report.status == LotteryStatus.FINISHED
    assert host.posts == []


def test_unexpected_failure_cancels_lottery(
    drawer, create_lottery, add_replies, host, clock, repository, monkeypatch
):
    lottery = create_lottery()
    add_replies(100, [2, 3, 4])
    clock.advance(hours=2)

    def explode(_lottery):
        raise RuntimeError("resolver bug")

    monkeypatch.setattr(drawer.resolver, "resolve", explode)

    report = drawer.execute(lottery.id)

    assert report.executed
    assert report.status == LotteryStatus.CANCELLED
    assert report.reason == "execution_error"
    assert repository.get(lottery.id).status == LotteryStatus.CANCELLED
    assert any("开奖失败" in raw for _topic, raw in host.posts)
    assert host.events[-1][1] == {
        "type": "lottery_cancelled",
        "lottery_id": lottery.id,
        "reason": "execution_error",
    }


def test_cancelled_draw_posts_reason(drawer, create_lottery, add_replies, host, clock):
    lottery = create_lottery(min_participants=5, backup_strategy=BackupStrategy.CANCEL)
    add_replies(100, [2, 3])
    clock.advance(hours=2)

    report = drawer.execute(lottery.id)

    assert report.status == LotteryStatus.CANCELLED
    assert host.messages == []
    assert host.closed_topics == []
    cancel_posts = [raw for _topic, raw in host.posts if "活动取消" in raw]
    assert len(cancel_posts) == 1
    assert "参与人数不足" in cancel_posts[0]
    assert host.tags[100] == {"已取消"}
