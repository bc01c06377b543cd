# src/tradeledger/infrastructure/feed.py
"""
In-process change feed: live snapshots of an account, its trades or its
cashflows.

A subscriber receives one snapshot immediately on `subscribe` and a fresh one
after every committed ledger mutation that touches its topic. Every
subscription returns a `Subscription` handle; `cancel()` must be called to
release the listener (calling it twice is harmless).
"""

import inspect
import logging
import itertools
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

log = logging.getLogger(__name__)


class Topic(Enum):
    ACCOUNT = "account"
    TRADES = "trades"
    CASHFLOWS = "cashflows"


@dataclass(frozen=True)
class FeedQuery:
    """What a subscriber listens to; trade queries may restrict the open_at range."""
    topic: Topic
    opened_from: Optional[datetime] = None
    opened_to: Optional[datetime] = None


Callback = Callable[[Any], Union[None, Awaitable[None]]]
SnapshotLoader = Callable[[str, FeedQuery], Any]


class Subscription:
    """Teardown handle returned by `ChangeFeed.subscribe`."""

    def __init__(self, feed: "ChangeFeed", key: int, user_id: str, query: FeedQuery):
        self._feed = feed
        self._key = key
        self.user_id = user_id
        self.query = query

    @property
    def active(self) -> bool:
        return self._feed._has(self.user_id, self._key)

    def cancel(self) -> None:
        self._feed._remove(self.user_id, self._key)


class ChangeFeed:
    """Fan-out of committed ledger changes to per-user listeners."""

    def __init__(self, loader: SnapshotLoader):
        self._loader = loader
        self._listeners: Dict[str, Dict[int, tuple]] = {}
        self._ids = itertools.count(1)

    async def subscribe(self, user_id: str, query: FeedQuery, callback: Callback) -> Subscription:
        key = next(self._ids)
        self._listeners.setdefault(user_id, {})[key] = (query, callback)
        log.debug(f"Feed: listener {key} subscribed to {query.topic.value} of user {user_id}")
        sub = Subscription(self, key, user_id, query)
        await self._deliver(user_id, key, query, callback)
        return sub

    async def publish(self, user_id: str, topics: Iterable[Topic]) -> int:
        """Push fresh snapshots to listeners of `topics`; returns deliveries made."""
        wanted = set(topics)
        listeners = list(self._listeners.get(user_id, {}).items())
        delivered = 0
        for key, (query, callback) in listeners:
            if query.topic not in wanted:
                continue
            # A listener cancelled by an earlier callback in this round is skipped.
            if not self._has(user_id, key):
                continue
            if await self._deliver(user_id, key, query, callback):
                delivered += 1
        return delivered

    def listener_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._listeners.get(user_id, {}))
        return sum(len(v) for v in self._listeners.values())

    async def _deliver(self, user_id: str, key: int, query: FeedQuery, callback: Callback) -> bool:
        try:
            snapshot = self._loader(user_id, query)
            result = callback(snapshot)
            if inspect.isawaitable(result):
                await result
            return True
        except Exception as e:
            # The mutation has already committed; a broken listener must not undo it.
            log.error(f"Feed: listener {key} of user {user_id} failed: {e}", exc_info=True)
            return False

    def _has(self, user_id: str, key: int) -> bool:
        return key in self._listeners.get(user_id, {})

    def _remove(self, user_id: str, key: int) -> None:
        bucket = self._listeners.get(user_id)
        if not bucket or key not in bucket:
            return
        del bucket[key]
        if not bucket:
            del self._listeners[user_id]
        log.debug(f"Feed: listener {key} of user {user_id} cancelled")
