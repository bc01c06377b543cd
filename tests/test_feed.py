import pytest
from unittest.mock import MagicMock, AsyncMock

from tradeledger.infrastructure.feed import ChangeFeed, FeedQuery, Topic


@pytest.fixture
def state() -> dict:
    return {"account": 1, "trades": ["t1"], "cashflows": []}


@pytest.fixture
def feed(state) -> ChangeFeed:
    return ChangeFeed(lambda user_id, query: state[query.topic.value])


@pytest.mark.asyncio
async def test_subscribe_delivers_initial_snapshot(feed: ChangeFeed):
    callback = MagicMock()
    sub = await feed.subscribe("u1", FeedQuery(Topic.TRADES), callback)
    callback.assert_called_once_with(["t1"])
    assert sub.active
    assert feed.listener_count("u1") == 1


@pytest.mark.asyncio
async def test_publish_reaches_only_matching_topics(feed: ChangeFeed, state):
    account_cb, trades_cb, other_user_cb = MagicMock(), MagicMock(), MagicMock()
    await feed.subscribe("u1", FeedQuery(Topic.ACCOUNT), account_cb)
    await feed.subscribe("u1", FeedQuery(Topic.TRADES), trades_cb)
    await feed.subscribe("u2", FeedQuery(Topic.ACCOUNT), other_user_cb)

    state["account"] = 2
    delivered = await feed.publish("u1", [Topic.ACCOUNT, Topic.CASHFLOWS])

    assert delivered == 1
    assert account_cb.call_args_list[-1].args == (2,)
    assert trades_cb.call_count == 1
    assert other_user_cb.call_count == 1


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(feed: ChangeFeed):
    callback = AsyncMock()
    await feed.subscribe("u1", FeedQuery(Topic.ACCOUNT), callback)
    await feed.publish("u1", [Topic.ACCOUNT])
    assert callback.await_count == 2


@pytest.mark.asyncio
async def test_cancel_is_immediate_and_idempotent(feed: ChangeFeed):
    callback = MagicMock()
    sub = await feed.subscribe("u1", FeedQuery(Topic.ACCOUNT), callback)
    sub.cancel()
    sub.cancel()
    assert not sub.active
    assert feed.listener_count() == 0
    assert await feed.publish("u1", [Topic.ACCOUNT]) == 0
    assert callback.call_count == 1


@pytest.mark.asyncio
async def test_failing_listener_does_not_affect_others(feed: ChangeFeed):
    calls = []

    def broken(snapshot):
        calls.append("broken")
        if len(calls) > 1:
            raise RuntimeError("listener bug")

    healthy = MagicMock()
    await feed.subscribe("u1", FeedQuery(Topic.ACCOUNT), broken)
    await feed.subscribe("u1", FeedQuery(Topic.ACCOUNT), healthy)

    delivered = await feed.publish("u1", [Topic.ACCOUNT])

    assert delivered == 1
    assert healthy.call_count == 2


@pytest.mark.asyncio
async def test_listener_cancelled_during_publish_is_skipped(feed: ChangeFeed):
    second = MagicMock()
    holder = {}

    def first(snapshot):
        if "sub" in holder:
            holder["sub"].cancel()

    await feed.subscribe("u1", FeedQuery(Topic.ACCOUNT), first)
    holder["sub"] = await feed.subscribe("u1", FeedQuery(Topic.ACCOUNT), second)

    await feed.publish("u1", [Topic.ACCOUNT])

    assert second.call_count == 1
    assert feed.listener_count("u1") == 1
