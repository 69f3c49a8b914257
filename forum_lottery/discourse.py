"""Discourse REST implementation of :class:`forum_lottery.host.ForumHost`."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime

import requests

from .host import HostUser, TopicInfo
from .models import Reply, parse_timestamp, utc_now

log = logging.getLogger("forum-lottery.discourse")

REQUEST_TIMEOUT = 10
POST_CHUNK_SIZE = 20
GROUP_PAGE_SIZE = 50
MAX_LATEST_PAGES = 5


class DiscourseError(RuntimeError):
    """Raised when a Discourse API call fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _is_suspended(user: Mapping[str, object], now: datetime) -> bool:
    if user.get("suspended"):
        return True
    until = parse_timestamp(user.get("suspended_till"))
    return until is not None and until > now


def reply_from_post(post: Mapping[str, object]) -> Reply:
    created_at = parse_timestamp(post.get("created_at")) or utc_now()
    return Reply(
        reply_id=int(post["id"]),
        author_id=int(post.get("user_id") or 0),
        author_username=str(post.get("username") or ""),
        position=int(post.get("post_number") or 0),
        created_at=created_at,
        deleted=bool(post.get("deleted_at") or post.get("user_deleted")),
        hidden=bool(post.get("hidden")),
    )


class DiscourseHost:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_username: str = "system",
        *,
        event_webhook_url: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.event_webhook_url = event_webhook_url
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Api-Key": api_key,
                "Api-Username": api_username,
                "Accept": "application/json",
            }
        )

    # ----- HTTP plumbing -----
    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
            resp.raise_for_status()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise DiscourseError(f"{method} {path} failed: {exc}", status) from exc
        except requests.RequestException as exc:
            raise DiscourseError(f"{method} {path} failed: {exc}") from exc
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"items": data}

    def _get_or_none(self, path: str, **kwargs) -> dict | None:
        try:
            return self._request("GET", path, **kwargs)
        except DiscourseError as exc:
            if exc.status == 404:
                return None
            raise

    # ----- Reads -----
    def get_topic(self, topic_id: int) -> TopicInfo | None:
        data = self._get_or_none(f"/t/{topic_id}.json")
        if data is None:
            return None
        posts = data.get("post_stream", {}).get("posts", [])
        first = next((post for post in posts if post.get("post_number") == 1), None)

        first_post_id = int(first["id"]) if first else None
        raw = ""
        version: int | None = None
        if first_post_id is not None:
            post = self._get_or_none(f"/posts/{first_post_id}.json") or {}
            raw = str(post.get("raw") or "")
            version = int(post.get("version") or first.get("version") or 1)

        created_by = data.get("details", {}).get("created_by", {})
        author_id = created_by.get("id") or (first or {}).get("user_id") or 0
        category_id = data.get("category_id")
        return TopicInfo(
            id=int(data.get("id", topic_id)),
            title=str(data.get("title") or ""),
            slug=str(data.get("slug") or ""),
            category_id=int(category_id) if category_id is not None else None,
            first_post_id=first_post_id,
            first_post_raw=raw,
            author_id=int(author_id),
            first_post_version=version,
        )

    def list_replies(self, topic_id: int) -> list[Reply]:
        data = self._request("GET", f"/t/{topic_id}.json")
        stream = data.get("post_stream", {})
        posts: dict[int, dict] = {int(post["id"]): post for post in stream.get("posts", [])}
        missing = [int(pid) for pid in stream.get("stream", []) if int(pid) not in posts]

        for start in range(0, len(missing), POST_CHUNK_SIZE):
            chunk = missing[start : start + POST_CHUNK_SIZE]
            page = self._request(
                "GET",
                f"/t/{topic_id}/posts.json",
                params=[("post_ids[]", pid) for pid in chunk],
            )
            for post in page.get("post_stream", {}).get("posts", []):
                posts[int(post["id"])] = post

        replies = [reply_from_post(post) for post in posts.values()]
        replies.sort(key=lambda reply: reply.position)
        return replies

    def get_users(self, user_ids: Iterable[int]) -> dict[int, HostUser]:
        now = utc_now()
        users: dict[int, HostUser] = {}
        for user_id in set(user_ids):
            data = self._get_or_none(f"/admin/users/{user_id}.json")
            if data is None:
                continue
            users[user_id] = HostUser(
                id=user_id,
                username=str(data.get("username") or ""),
                active=bool(data.get("active", True)),
                suspended=_is_suspended(data, now),
            )
        return users

    def get_group_member_ids(self, group: str) -> set[int]:
        members: set[int] = set()
        offset = 0
        while True:
            data = self._request(
                "GET",
                f"/groups/{group}/members.json",
                params={"limit": GROUP_PAGE_SIZE, "offset": offset},
            )
            page = data.get("members", [])
            members.update(int(member["id"]) for member in page)
            total = int(data.get("meta", {}).get("total", 0))
            offset += len(page)
            if not page or offset >= total:
                break
        return members

    def list_new_topic_ids(self, after_topic_id: int) -> list[int]:
        found: set[int] = set()
        for page in range(MAX_LATEST_PAGES):
            data = self._request(
                "GET", "/latest.json", params={"order": "created", "page": page}
            )
            topic_list = data.get("topic_list", {})
            ids = [int(topic["id"]) for topic in topic_list.get("topics", [])]
            newer = [topic_id for topic_id in ids if topic_id > after_topic_id]
            found.update(newer)
            if len(newer) < len(ids) or not topic_list.get("more_topics_url"):
                break
        return sorted(found)

    # ----- Writes -----
    def create_post(self, topic_id: int, raw: str) -> None:
        self._request("POST", "/posts.json", json={"topic_id": topic_id, "raw": raw})

    def send_private_message(self, username: str, title: str, raw: str) -> None:
        self._request(
            "POST",
            "/posts.json",
            json={
                "title": title,
                "raw": raw,
                "target_recipients": username,
                "archetype": "private_message",
            },
        )

    def set_topic_tags(
        self, topic_id: int, *, add: Iterable[str] = (), remove: Iterable[str] = ()
    ) -> None:
        data = self._request("GET", f"/t/{topic_id}.json")
        current = [
            tag["name"] if isinstance(tag, dict) else str(tag)
            for tag in data.get("tags", [])
        ]
        dropped = set(remove)
        tags = [tag for tag in current if tag not in dropped]
        for tag in add:
            if tag not in tags:
                tags.append(tag)
        self._request(
            "PUT",
            f"/t/-/{topic_id}.json",
            data=[("tags[]", tag) for tag in tags] or {"tags[]": ""},
        )

    def lock_post(self, post_id: int) -> None:
        self._request("PUT", f"/posts/{post_id}/locked", data={"locked": "true"})

    def close_topic(self, topic_id: int) -> None:
        self._request(
            "PUT",
            f"/t/{topic_id}/status",
            data={"status": "closed", "enabled": "true"},
        )

    def publish(self, topic_id: int, payload: Mapping[str, object]) -> None:
        body = {"topic_id": topic_id, **payload}
        if not self.event_webhook_url:
            log.debug("Lottery event for topic %s: %s", topic_id, body)
            return
        try:
            # plain requests so the API key never reaches the webhook
            resp = requests.post(
                self.event_webhook_url, json=body, timeout=REQUEST_TIMEOUT
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise DiscourseError(f"Event publish failed: {exc}") from exc


__all__ = ["DiscourseError", "DiscourseHost", "reply_from_post"]
