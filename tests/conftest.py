from __future__ import annotations

import copy
import random
from datetime import UTC, datetime, timedelta

import pytest
from botocore.exceptions import ClientError

from forum_lottery.config import LotterySettings
from forum_lottery.draw import LotteryDrawer
from forum_lottery.host import HostUser, TopicInfo
from forum_lottery.models import Reply
from forum_lottery.repository import LotteryRepository
from forum_lottery.resolver import ParticipantResolver
from forum_lottery.scheduler import TaskCoordinator
from forum_lottery.service import LotteryService
from forum_lottery.storage import LotteryStorage

START = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def _conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {
                "Code": "ConditionalCheckFailedException",
                "Message": "The conditional request failed",
            }
        },
        operation,
    )


def _throttled(operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {
                "Code": "ProvisionedThroughputExceededException",
                "Message": "Rate of requests exceeds the allowed throughput",
            }
        },
        operation,
    )


def evaluate(condition, item: dict | None) -> bool:
    """Evaluate a boto3 condition object against a stored item."""

    expression = condition.get_expression()
    operator = expression["operator"]
    values = expression["values"]
    if operator == "AND":
        return all(evaluate(value, item) for value in values)
    if operator == "OR":
        return any(evaluate(value, item) for value in values)
    if operator == "NOT":
        return not evaluate(values[0], item)
    name = values[0].name
    if operator == "attribute_not_exists":
        return item is None or name not in item
    if operator == "attribute_exists":
        return item is not None and name in item
    if item is None or name not in item:
        return False
    actual, expected = item[name], values[1]
    if operator == "=":
        return actual == expected
    if operator == "<>":
        return actual != expected
    if operator == "<=":
        return actual <= expected
    if operator == "<":
        return actual < expected
    if operator == ">=":
        return actual >= expected
    if operator == ">":
        return actual > expected
    if operator == "begins_with":
        return str(actual).startswith(expected)
    raise NotImplementedError(operator)


class FakeTable:
    """Single-table DynamoDB stand-in honouring condition expressions."""

    def __init__(self, page_size: int | None = None) -> None:
        self.items: dict[tuple[str, str], dict[str, object]] = {}
        self.page_size = page_size
        self.faults: list[list] = []

    def fail(self, operation: str, pk_prefix: str = "", times: int = 1) -> None:
        """Throttle the next ``times`` calls of ``operation`` on matching keys."""

        self.faults.append([operation, pk_prefix, times])

    def _inject(self, operation: str, pk: str) -> None:
        for fault in self.faults:
            name, prefix, remaining = fault
            if name == operation and pk.startswith(prefix) and remaining > 0:
                fault[2] -= 1
                raise _throttled(operation)

    def _check(self, key, condition, operation: str) -> None:
        self._inject(operation, key[0])
        if condition is not None and not evaluate(condition, self.items.get(key)):
            raise _conditional_failure(operation)

    def get_item(self, *, Key):
        self._inject("GetItem", Key["pk"])
        item = self.items.get((Key["pk"], Key["sk"]))
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, *, Item, ConditionExpression=None):
        key = (Item["pk"], Item["sk"])
        self._check(key, ConditionExpression, "PutItem")
        self.items[key] = copy.deepcopy(Item)
        return {}

    def delete_item(self, *, Key, ConditionExpression=None):
        key = (Key["pk"], Key["sk"])
        self._check(key, ConditionExpression, "DeleteItem")
        self.items.pop(key, None)
        return {}

    def update_item(
        self,
        *,
        Key,
        UpdateExpression,
        ExpressionAttributeNames,
        ExpressionAttributeValues,
        ConditionExpression=None,
        ReturnValues="NONE",
    ):
        key = (Key["pk"], Key["sk"])
        self._check(key, ConditionExpression, "UpdateItem")
        item = self.items.setdefault(key, dict(Key))
        assert UpdateExpression.startswith("SET ")
        for assignment in UpdateExpression[4:].split(", "):
            name, value = (part.strip() for part in assignment.split("="))
            item[ExpressionAttributeNames[name]] = ExpressionAttributeValues[value]
        if ReturnValues == "ALL_NEW":
            return {"Attributes": copy.deepcopy(item)}
        return {}

    def _page(self, condition, exclusive_start_key) -> dict:
        keys = [
            key
            for key in sorted(self.items)
            if condition is None or evaluate(condition, self.items[key])
        ]
        if exclusive_start_key:
            start = (exclusive_start_key["pk"], exclusive_start_key["sk"])
            keys = [key for key in keys if key > start]
        response: dict[str, object] = {}
        if self.page_size is not None and len(keys) > self.page_size:
            keys = keys[: self.page_size]
            response["LastEvaluatedKey"] = {"pk": keys[-1][0], "sk": keys[-1][1]}
        response["Items"] = [copy.deepcopy(self.items[key]) for key in keys]
        return response

    def query(self, *, KeyConditionExpression, ExclusiveStartKey=None, **_kwargs):
        return self._page(KeyConditionExpression, ExclusiveStartKey)

    def scan(self, *, FilterExpression=None, ExclusiveStartKey=None, **_kwargs):
        return self._page(FilterExpression, ExclusiveStartKey)


class FakeHost:
    """In-memory forum recording everything the engine asks of it."""

    base_url = "https://forum.example.com"

    def __init__(self) -> None:
        self.topics: dict[int, TopicInfo] = {}
        self.replies: dict[int, list[Reply]] = {}
        self.users: dict[int, HostUser] = {}
        self.groups: dict[str, set[int]] = {}
        self.new_topic_ids: list[int] = []
        self.failing: set[str] = set()
        self.calls: list[str] = []

        self.posts: list[tuple[int, str]] = []
        self.messages: list[tuple[str, str, str]] = []
        self.tags: dict[int, set[str]] = {}
        self.locked_posts: list[int] = []
        self.closed_topics: list[int] = []
        self.events: list[tuple[int, dict]] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failing:
            raise RuntimeError(f"{name} unavailable")

    # ----- Reads -----
    def get_topic(self, topic_id):
        self._enter("get_topic")
        return self.topics.get(topic_id)

    def list_replies(self, topic_id):
        self._enter("list_replies")
        return list(self.replies.get(topic_id, []))

    def get_users(self, user_ids):
        self._enter("get_users")
        return {uid: self.users[uid] for uid in user_ids if uid in self.users}

    def get_group_member_ids(self, group):
        self._enter("get_group_member_ids")
        return set(self.groups.get(group, set()))

    def list_new_topic_ids(self, after_topic_id):
        self._enter("list_new_topic_ids")
        return sorted(tid for tid in self.new_topic_ids if tid > after_topic_id)

    # ----- Writes -----
    def create_post(self, topic_id, raw):
        self._enter("create_post")
        self.posts.append((topic_id, raw))

    def send_private_message(self, username, title, raw):
        self._enter("send_private_message")
        self.messages.append((username, title, raw))

    def set_topic_tags(self, topic_id, *, add=(), remove=()):
        self._enter("set_topic_tags")
        tags = self.tags.setdefault(topic_id, set())
        tags.difference_update(remove)
        tags.update(add)

    def lock_post(self, post_id):
        self._enter("lock_post")
        self.locked_posts.append(post_id)

    def close_topic(self, topic_id):
        self._enter("close_topic")
        self.closed_topics.append(topic_id)

    def publish(self, topic_id, payload):
        self._enter("publish")
        self.events.append((topic_id, dict(payload)))

    @property
    def event_types(self) -> list[str]:
        return [payload["type"] for _topic, payload in self.events]


class Clock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def lottery_block(**overrides: str | None) -> str:
    """Compose a first post carrying a ``[lottery]`` block."""

    fields = {
        "活动名称": "新年抽奖",
        "奖品说明": "键盘一把",
        "开奖时间": "2025-01-02T12:00:00+00:00",
        "获奖人数": "2",
        "参与门槛": "3",
    }
    labels = {
        "prize_name": "活动名称",
        "prize_details": "奖品说明",
        "draw_time": "开奖时间",
        "winners_count": "获奖人数",
        "specified_posts": "指定楼层",
        "min_participants": "参与门槛",
        "backup_strategy": "后备策略",
        "additional_notes": "补充说明",
        "prize_image": "奖品图片",
    }
    for name, value in overrides.items():
        label = labels[name]
        if value is None:
            fields.pop(label, None)
        else:
            fields[label] = value
    body = "\n".join(f"{label}：{value}" for label, value in fields.items())
    return f"欢迎参加！\n\n[lottery]\n{body}\n[/lottery]\n"


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings() -> LotterySettings:
    return LotterySettings(
        min_participants_global=1,
        lock_delay_minutes=30,
        regret_delay_minutes=30,
    )


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def storage(table) -> LotteryStorage:
    return LotteryStorage(table)


@pytest.fixture
def host() -> FakeHost:
    fake = FakeHost()
    fake.users[1] = HostUser(1, "creator")
    return fake


@pytest.fixture
def make_topic(host):
    """Register a topic whose first post is written by user 1."""

    def factory(topic_id: int = 100, raw: str | None = None, **kwargs) -> TopicInfo:
        topic = TopicInfo(
            id=topic_id,
            title=kwargs.pop("title", "抽奖主题"),
            slug=kwargs.pop("slug", f"topic-{topic_id}"),
            category_id=kwargs.pop("category_id", 5),
            first_post_id=kwargs.pop("first_post_id", topic_id * 10),
            first_post_raw=raw if raw is not None else lottery_block(),
            author_id=kwargs.pop("author_id", 1),
            first_post_version=kwargs.pop("first_post_version", 1),
        )
        host.topics[topic_id] = topic
        return topic

    return factory


@pytest.fixture
def add_replies(host, clock):
    """Add one reply per user id at consecutive positions starting at 2."""

    def factory(topic_id: int, user_ids, *, start: int | None = None) -> list[Reply]:
        existing = host.replies.setdefault(topic_id, [])
        position = start or (max((r.position for r in existing), default=1) + 1)
        added = []
        for user_id in user_ids:
            host.users.setdefault(user_id, HostUser(user_id, f"user{user_id}"))
            reply = Reply(
                reply_id=topic_id * 1000 + position,
                author_id=user_id,
                author_username=host.users[user_id].username,
                position=position,
                created_at=clock() + timedelta(seconds=position),
            )
            existing.append(reply)
            added.append(reply)
            position += 1
        return added

    return factory


@pytest.fixture
def repository(storage, host, settings, clock) -> LotteryRepository:
    return LotteryRepository(storage, host, settings, clock=clock)


@pytest.fixture
def resolver(host, settings) -> ParticipantResolver:
    return ParticipantResolver(host, settings)


@pytest.fixture
def drawer(repository, resolver, host, settings, clock) -> LotteryDrawer:
    return LotteryDrawer(
        repository, resolver, host, settings, rng=random.Random(1234), clock=clock
    )


@pytest.fixture
def coordinator(storage, drawer, repository, host, settings, clock) -> TaskCoordinator:
    return TaskCoordinator(storage, drawer, repository, host, settings, clock=clock)


@pytest.fixture
def service(host, repository, coordinator, settings, clock) -> LotteryService:
    return LotteryService(host, repository, coordinator, settings, clock=clock)


@pytest.fixture
def lottery_post():
    return lottery_block
