import asyncio
import heapq
import logging
import time
from typing import Callable, Dict, List, Sequence, Tuple

from ..agent.agent import DocsAgent, build_agent
from ..agent.tools import AgentTool, RetrievalTool, create_channel_tools
from ..errors import ChannelConnectionError
from ..models import SessionRecord
from ..settings import get_settings
from .retrieval import RetrievalIndex
from .tool_channel import ToolChannel

logger = logging.getLogger(__name__)


AgentFactory = Callable[[Sequence[AgentTool]], DocsAgent]


class SessionCache:
    """Maps session ids to live agents and evicts sessions left idle.

    Every access refreshes the session's activity time; a session with no
    pending eviction check gets one ``check_delay`` seconds later. A single
    background loop drains due checks; a check removes the session only if it
    has been idle for at least ``idle_seconds`` at that moment, otherwise it
    re-arms for the moment the session would become idle. Each session holds
    at most one pending check.
    """

    def __init__(
        self,
        index: RetrievalIndex,
        channel: ToolChannel,
        agent_factory: AgentFactory = build_agent,
        idle_seconds: float | None = None,
        check_delay: float | None = None,
        tick_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self._index = index
        self._channel = channel
        self._agent_factory = agent_factory
        self._idle = idle_seconds if idle_seconds is not None else settings.session_idle_seconds
        self._check_delay = (
            check_delay if check_delay is not None else settings.eviction_check_delay_seconds
        )
        self._tick = tick_seconds if tick_seconds is not None else settings.eviction_tick_seconds
        if self._idle <= self._check_delay:
            raise ValueError("idle_seconds must be greater than check_delay")
        self._top_k = settings.similarity_top_k
        self._clock = clock

        self._sessions: Dict[str, SessionRecord] = {}
        self._checks: List[Tuple[float, str]] = []
        self._ticker: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> DocsAgent | None:
        """Return the cached agent without touching activity or scheduling checks."""
        record = self._sessions.get(session_id)
        return record.agent if record else None

    async def _available_tools(self, session_id: str) -> List[AgentTool]:
        await self._index.load()
        tools: List[AgentTool] = [RetrievalTool(self._index, self._top_k)]

        if not self._channel.is_ready():
            try:
                await self._channel.connect()
                logger.info("Component tool channel initialized for session %s", session_id)
            except ChannelConnectionError as e:
                logger.warning(
                    "Component tools unavailable for session %s, using retrieval only: %s",
                    session_id,
                    e,
                )
        if self._channel.is_ready():
            tools.extend(create_channel_tools(self._channel))
        return tools

    async def get_or_create(self, session_id: str) -> DocsAgent:
        """Return the session's agent, building it on first use.

        Raises:
            IndexUnavailable: the retrieval index could not be loaded.
        """
        record = self._sessions.get(session_id)
        if record is None:
            tools = await self._available_tools(session_id)
            # a concurrent request may have created it while we were awaiting
            record = self._sessions.get(session_id)
            if record is None:
                agent = self._agent_factory(tools)
                record = SessionRecord(
                    session_id=session_id, agent=agent, last_activity=self._clock()
                )
                self._sessions[session_id] = record
                logger.info(
                    "Created agent for session %s tools=%s active_sessions=%d",
                    session_id,
                    [t.name for t in tools],
                    len(self._sessions),
                )

        self._touch(record)
        return record.agent

    def _schedule(self, record: SessionRecord, at: float) -> None:
        record.next_check = at
        heapq.heappush(self._checks, (at, record.session_id))

    def _touch(self, record: SessionRecord) -> None:
        now = self._clock()
        record.last_activity = now
        # one pending check per session; it re-reads last_activity when due
        if record.next_check is None:
            self._schedule(record, now + self._check_delay)

    def run_due_checks(self) -> List[str]:
        """Process every eviction check that is due. Returns the evicted session ids."""
        now = self._clock()
        evicted: List[str] = []
        while self._checks and self._checks[0][0] <= now:
            check_time, session_id = heapq.heappop(self._checks)
            record = self._sessions.get(session_id)
            if record is None or record.next_check != check_time:
                continue
            record.next_check = None
            if now - record.last_activity >= self._idle:
                del self._sessions[session_id]
                evicted.append(session_id)
            else:
                self._schedule(record, record.last_activity + self._idle)
        if evicted:
            logger.info(
                "Evicted idle sessions %s active_sessions=%d", evicted, len(self._sessions)
            )
        return evicted

    def evict(self, session_id: str) -> bool:
        """Drop a session immediately. Pending checks for it become no-ops."""
        return self._sessions.pop(session_id, None) is not None

    def clear(self) -> None:
        self._sessions.clear()
        self._checks.clear()

    def start(self) -> None:
        """Start the background eviction loop on the running event loop. Idempotent."""
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._tick_loop(), name="session-eviction")

    async def stop(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is None:
            return
        ticker.cancel()
        try:
            await ticker
        except asyncio.CancelledError:
            pass

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick)
            try:
                self.run_due_checks()
            except Exception as e:
                logger.exception("Session eviction check failed: %s", e)
