from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime

from boto3.dynamodb.conditions import Attr, ConditionBase, Key
from botocore.exceptions import ClientError

from .models import (
    Lottery,
    LotteryStatus,
    ScheduledJob,
    format_sort_timestamp,
)

log = logging.getLogger("forum-lottery.storage")


class RunningLotteryExists(RuntimeError):
    """Raised when a topic already has a running lottery."""

    def __init__(self, lottery_id: str) -> None:
        super().__init__(f"Topic already has running lottery {lottery_id}")
        self.lottery_id = lottery_id


def is_conditional_failure(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    code = exc.response.get("Error", {}).get("Code")
    return code == "ConditionalCheckFailedException"


def _guard_key(topic_id: int) -> dict[str, str]:
    return {"pk": f"TOPIC#{topic_id}", "sk": "RUNNING"}


_CURSOR_KEY = {"pk": "WATCHER", "sk": "CURSOR"}


class LotteryStorage:
    """DynamoDB persistence for lotteries, their topic guards and jobs.

    All items share one table keyed by ``pk``/``sk``:

    * ``LOTTERY#<id>`` / ``META`` - the lottery record
    * ``TOPIC#<topic_id>`` / ``RUNNING`` - guard naming the running lottery
    * ``JOB`` / ``<run_at>#<kind>#<lottery_id>`` - scheduled tasks
    * ``WATCHER`` / ``CURSOR`` - last topic id handed to the service
    """

    def __init__(self, table) -> None:
        self._table = table

    def ensure_table(self) -> None:
        if self._table is None:
            raise RuntimeError("Lottery table is not configured")

    # ----- Lotteries -----
    def get_lottery(self, lottery_id: str) -> Lottery | None:
        self.ensure_table()
        resp = self._table.get_item(Key=Lottery.key(lottery_id))
        item = resp.get("Item")
        if not item:
            return None
        return Lottery.from_item(item)

    def get_running_guard(self, topic_id: int) -> str | None:
        self.ensure_table()
        resp = self._table.get_item(Key=_guard_key(topic_id))
        item = resp.get("Item")
        if not item:
            return None
        return str(item.get("lottery_id") or "") or None

    def get_running_for_topic(self, topic_id: int) -> Lottery | None:
        lottery_id = self.get_running_guard(topic_id)
        if lottery_id is None:
            return None
        lottery = self.get_lottery(lottery_id)
        if lottery is None or not lottery.is_running:
            return None
        return lottery

    def insert_running(self, lottery: Lottery) -> None:
        """Persist a new running lottery, claiming its topic first."""

        self.ensure_table()
        self._claim_topic(lottery)
        try:
            self._table.put_item(
                Item=lottery.to_item(),
                ConditionExpression=Attr("pk").not_exists(),
            )
        except Exception:
            self._release_topic(lottery.topic_id, lottery.id)
            raise

    def discard_running(self, lottery: Lottery) -> bool:
        """Delete a running lottery and release its topic guard.

        Returns ``False`` when the record has already left ``running``.
        """

        self.ensure_table()
        try:
            self._table.delete_item(
                Key=Lottery.key(lottery.id),
                ConditionExpression=Attr("status").eq(LotteryStatus.RUNNING.value),
            )
        except ClientError as exc:
            if is_conditional_failure(exc):
                return False
            raise
        self._release_topic(lottery.topic_id, lottery.id)
        return True

    def _claim_topic(self, lottery: Lottery) -> None:
        guard = dict(_guard_key(lottery.topic_id))
        guard["lottery_id"] = lottery.id
        try:
            self._table.put_item(Item=guard, ConditionExpression=Attr("pk").not_exists())
            return
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise

        holder_id = self.get_running_guard(lottery.topic_id)
        holder = self.get_lottery(holder_id) if holder_id else None
        if holder is not None and holder.is_running:
            raise RunningLotteryExists(holder.id)

        condition: ConditionBase
        if holder_id:
            condition = Attr("lottery_id").eq(holder_id)
        else:
            condition = Attr("pk").not_exists()
        try:
            self._table.put_item(Item=guard, ConditionExpression=condition)
        except ClientError as exc:
            if is_conditional_failure(exc):
                raise RunningLotteryExists(holder_id or "unknown") from exc
            raise
        log.info(
            "Replaced stale running guard %s on topic %s", holder_id, lottery.topic_id
        )

    def _release_topic(self, topic_id: int, lottery_id: str) -> None:
        try:
            self._table.delete_item(
                Key=_guard_key(topic_id),
                ConditionExpression=Attr("lottery_id").eq(lottery_id),
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                log.warning(
                    "Failed to release topic %s for lottery %s: %s",
                    topic_id,
                    lottery_id,
                    exc,
                )

    def _update_running(
        self, lottery_id: str, attributes: Mapping[str, object]
    ) -> Lottery | None:
        names: dict[str, str] = {}
        values: dict[str, object] = {}
        assignments: list[str] = []
        for idx, (name, value) in enumerate(attributes.items()):
            names[f"#f{idx}"] = name
            values[f":v{idx}"] = value
            assignments.append(f"#f{idx} = :v{idx}")
        try:
            resp = self._table.update_item(
                Key=Lottery.key(lottery_id),
                UpdateExpression="SET " + ", ".join(assignments),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ConditionExpression=Attr("status").eq(LotteryStatus.RUNNING.value),
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if is_conditional_failure(exc):
                return None
            raise
        return Lottery.from_item(resp["Attributes"])

    def update_params(self, lottery: Lottery) -> Lottery | None:
        """Write the declared parameters of a lottery that is still running."""

        self.ensure_table()
        attributes = dict(lottery.param_attributes())
        attributes["updated_at"] = lottery.updated_at.isoformat()
        if lottery.post_version is not None:
            attributes["post_version"] = lottery.post_version
        return self._update_running(lottery.id, attributes)

    def complete(
        self,
        lottery: Lottery,
        status: LotteryStatus,
        *,
        winner_user_ids: list[int],
        specified_post_numbers: list[int] | None,
        updated_at: datetime,
    ) -> Lottery | None:
        """Move a running lottery to its final status in one conditional write.

        Returns ``None`` when the lottery had already left ``running``.
        """

        self.ensure_table()
        attributes: dict[str, object] = {
            "status": status.value,
            "winner_user_ids": ",".join(str(uid) for uid in winner_user_ids),
            "updated_at": updated_at.isoformat(),
        }
        if specified_post_numbers is not None:
            attributes["specified_post_numbers"] = ",".join(
                str(number) for number in specified_post_numbers
            )
        updated = self._update_running(lottery.id, attributes)
        if updated is not None:
            self._release_topic(lottery.topic_id, lottery.id)
        return updated

    def list_running(self) -> list[Lottery]:
        self.ensure_table()
        scan_kwargs: dict[str, object] = {
            "FilterExpression": Attr("sk").eq(Lottery.SK_VALUE)
            & Attr("status").eq(LotteryStatus.RUNNING.value)
        }
        lotteries: list[Lottery] = []
        while True:
            resp = self._table.scan(**scan_kwargs)
            lotteries.extend(Lottery.from_item(item) for item in resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key
        lotteries.sort(key=lambda lottery: lottery.draw_time)
        return lotteries

    # ----- Jobs -----
    def put_job(self, job: ScheduledJob) -> None:
        self.ensure_table()
        self._table.put_item(Item=job.to_item())

    def due_jobs(self, now: datetime) -> list[ScheduledJob]:
        self.ensure_table()
        # "~" sorts after every kind name, so jobs stamped exactly ``now`` match
        upper = f"{format_sort_timestamp(now)}#~"
        query_kwargs: dict[str, object] = {
            "KeyConditionExpression": Key("pk").eq(ScheduledJob.PK_VALUE)
            & Key("sk").lte(upper),
        }
        jobs: list[ScheduledJob] = []
        while True:
            resp = self._table.query(**query_kwargs)
            jobs.extend(ScheduledJob.from_item(item) for item in resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            query_kwargs["ExclusiveStartKey"] = last_key
        return jobs

    def delete_job(self, job: ScheduledJob) -> None:
        self.ensure_table()
        self._table.delete_item(Key=job.key())

    # ----- Topic watcher cursor -----
    def get_cursor(self) -> int:
        self.ensure_table()
        item = self._table.get_item(Key=_CURSOR_KEY).get("Item")
        if not item:
            return 0
        try:
            return int(item.get("topic_id", 0))
        except (TypeError, ValueError):
            return 0

    def save_cursor(self, topic_id: int) -> None:
        self.ensure_table()
        item = dict(_CURSOR_KEY)
        item["topic_id"] = topic_id
        self._table.put_item(Item=item)


__all__ = ["LotteryStorage", "RunningLotteryExists", "is_conditional_failure"]
