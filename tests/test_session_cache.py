import asyncio
from types import SimpleNamespace
from typing import Any, List
from unittest.mock import AsyncMock, MagicMock

import pytest

from componentqa.errors import ChannelConnectionError, IndexUnavailable
from componentqa.services.session_cache import SessionCache

IDLE = 10.0
DELAY = 5.0


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class AgentFactory:
    """Records the tool names each built agent received."""

    def __init__(self) -> None:
        self.built: List[Any] = []

    def __call__(self, tools):
        agent = SimpleNamespace(tool_names=[t.name for t in tools])
        self.built.append(agent)
        return agent


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def factory() -> AgentFactory:
    return AgentFactory()


@pytest.fixture
def cache(mock_index: MagicMock, mock_channel: MagicMock, factory: AgentFactory, clock: FakeClock) -> SessionCache:
    return SessionCache(
        index=mock_index,
        channel=mock_channel,
        agent_factory=factory,
        idle_seconds=IDLE,
        check_delay=DELAY,
        tick_seconds=0.01,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_same_session_returns_same_agent(cache: SessionCache, factory: AgentFactory) -> None:
    first = await cache.get_or_create("alice")
    second = await cache.get_or_create("alice")
    assert first is second
    assert len(factory.built) == 1
    assert cache.get("alice") is first


@pytest.mark.asyncio
async def test_distinct_sessions_get_distinct_agents(cache: SessionCache) -> None:
    alice = await cache.get_or_create("alice")
    bob = await cache.get_or_create("bob")
    assert alice is not bob
    assert len(cache) == 2


@pytest.mark.asyncio
async def test_agent_gets_retrieval_and_component_tools(cache: SessionCache) -> None:
    agent = await cache.get_or_create("alice")
    assert agent.tool_names == ["component_docs_search", "list_components", "get_component_props"]


@pytest.mark.asyncio
async def test_session_evicted_once_idle_for_threshold(cache: SessionCache, clock: FakeClock) -> None:
    """Accessed at 0 and never again: present at checks before T, gone at T."""
    await cache.get_or_create("alice")

    clock.now = DELAY
    assert cache.run_due_checks() == []
    assert "alice" in cache

    clock.now = IDLE - 0.01
    assert cache.run_due_checks() == []
    assert "alice" in cache

    clock.now = IDLE
    assert cache.run_due_checks() == ["alice"]
    assert "alice" not in cache


@pytest.mark.asyncio
async def test_later_access_supersedes_earlier_schedule(cache: SessionCache, clock: FakeClock) -> None:
    eps = 1.0
    await cache.get_or_create("alice")
    clock.now = DELAY
    cache.run_due_checks()

    clock.now = IDLE - eps
    await cache.get_or_create("alice")

    clock.now = IDLE + eps / 2
    assert cache.run_due_checks() == []
    assert "alice" in cache

    clock.now = (IDLE - eps) + IDLE
    assert cache.run_due_checks() == ["alice"]


@pytest.mark.asyncio
async def test_evicted_session_gets_a_fresh_agent(cache: SessionCache, clock: FakeClock) -> None:
    first = await cache.get_or_create("alice")
    clock.now = IDLE
    cache.run_due_checks()
    second = await cache.get_or_create("alice")
    assert second is not first


@pytest.mark.asyncio
async def test_memory_bounded_under_session_churn(cache: SessionCache, clock: FakeClock) -> None:
    for i in range(500):
        await cache.get_or_create(f"user-{i}")
    assert len(cache) == 500

    clock.now = DELAY
    cache.run_due_checks()
    clock.now = IDLE
    cache.run_due_checks()
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_index_failure_raises_and_caches_nothing(
    cache: SessionCache, mock_index: MagicMock, factory: AgentFactory
) -> None:
    mock_index.load.side_effect = IndexUnavailable("storage missing")
    with pytest.raises(IndexUnavailable):
        await cache.get_or_create("alice")
    assert "alice" not in cache
    assert factory.built == []


@pytest.mark.asyncio
async def test_channel_failure_builds_retrieval_only_agent(
    cache: SessionCache, mock_channel: MagicMock
) -> None:
    mock_channel.is_ready.return_value = False
    mock_channel.connect.side_effect = ChannelConnectionError("no server")
    agent = await cache.get_or_create("alice")
    assert agent.tool_names == ["component_docs_search"]
    mock_channel.connect.assert_awaited_once()


@pytest.mark.asyncio
async def test_cached_agent_keeps_tools_from_creation_time(
    cache: SessionCache, mock_channel: MagicMock
) -> None:
    mock_channel.is_ready.return_value = False
    mock_channel.connect.side_effect = ChannelConnectionError("no server")
    alice = await cache.get_or_create("alice")

    mock_channel.is_ready.return_value = True
    mock_channel.connect.side_effect = None
    bob = await cache.get_or_create("bob")

    assert (await cache.get_or_create("alice")) is alice
    assert alice.tool_names == ["component_docs_search"]
    assert "get_component_props" in bob.tool_names


@pytest.mark.asyncio
async def test_concurrent_first_use_builds_one_agent(
    cache: SessionCache, mock_index: MagicMock, factory: AgentFactory
) -> None:
    async def slow_load() -> None:
        await asyncio.sleep(0.01)

    mock_index.load = AsyncMock(side_effect=slow_load)
    agents = await asyncio.gather(*(cache.get_or_create("alice") for _ in range(5)))
    assert all(a is agents[0] for a in agents)
    assert len(factory.built) == 1


@pytest.mark.asyncio
async def test_evict_and_clear(cache: SessionCache) -> None:
    await cache.get_or_create("alice")
    await cache.get_or_create("bob")
    assert cache.evict("alice") is True
    assert cache.evict("alice") is False
    cache.clear()
    assert len(cache) == 0
    assert cache.run_due_checks() == []


@pytest.mark.asyncio
async def test_background_loop_evicts_idle_sessions(cache: SessionCache, clock: FakeClock) -> None:
    await cache.get_or_create("alice")
    cache.start()
    try:
        clock.now = DELAY
        await asyncio.sleep(0.05)
        assert "alice" in cache
        clock.now = IDLE
        await asyncio.sleep(0.05)
        assert "alice" not in cache
    finally:
        await cache.stop()


def test_idle_threshold_must_exceed_check_delay(mock_index: MagicMock, mock_channel: MagicMock) -> None:
    with pytest.raises(ValueError):
        SessionCache(index=mock_index, channel=mock_channel, idle_seconds=5, check_delay=5)


@pytest.mark.asyncio
async def test_long_lived_session_keeps_one_pending_check(cache: SessionCache, clock: FakeClock) -> None:
    """A session used every minute for a day holds a single queued check."""
    for minute in range(24 * 60):
        clock.now = minute * 1.0
        await cache.get_or_create("alice")
        cache.run_due_checks()
    assert "alice" in cache
    assert len(cache._checks) == 1

    clock.now += IDLE
    assert cache.run_due_checks() == ["alice"]
    assert cache._checks == []


@pytest.mark.asyncio
async def test_stale_check_after_eviction_is_ignored(cache: SessionCache, clock: FakeClock) -> None:
    await cache.get_or_create("alice")
    cache.evict("alice")
    clock.now = 1.0
    await cache.get_or_create("alice")

    clock.now = DELAY
    assert cache.run_due_checks() == []
    clock.now = 1.0 + IDLE - 0.01
    assert cache.run_due_checks() == []
    clock.now = 1.0 + IDLE
    assert cache.run_due_checks() == ["alice"]


@pytest.mark.asyncio
async def test_background_loop_survives_failing_check(cache: SessionCache) -> None:
    calls = []

    def flaky() -> list:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return []

    cache.run_due_checks = flaky
    cache.start()
    try:
        await asyncio.sleep(0.05)
        assert len(calls) > 1
        assert not cache._ticker.done()
    finally:
        await cache.stop()
