import logging
from typing import AsyncIterator

from ..agent.agent import DocsAgent
from ..errors import AgentInvocationError, IndexUnavailable
from .session_cache import SessionCache

logger = logging.getLogger(__name__)


class QueryDispatcher:
    """Entry point for queries: resolves the session's agent and shapes the answer."""

    def __init__(self, cache: SessionCache) -> None:
        self._cache = cache

    @property
    def cache(self) -> SessionCache:
        return self._cache

    async def _resolve(self, session_id: str) -> DocsAgent:
        try:
            return await self._cache.get_or_create(session_id)
        except IndexUnavailable:
            raise
        except Exception as e:
            logger.exception("Failed to build agent for session %s", session_id)
            raise AgentInvocationError(session_id, e) from e

    async def query(self, session_id: str, text: str) -> str:
        """Answer a query in one piece.

        Raises:
            IndexUnavailable: the knowledge source could not be loaded.
            AgentInvocationError: the agent turn failed.
        """
        agent = await self._resolve(session_id)
        logger.info("Query session_id=%s query=%r", session_id, text)
        try:
            answer = await agent.chat(text)
        except Exception as e:
            logger.exception("Agent failed for session %s", session_id)
            raise AgentInvocationError(session_id, e) from e
        logger.info("Query session_id=%s answer_len=%d", session_id, len(answer))
        return answer

    async def stream_query(self, session_id: str, text: str) -> AsyncIterator[str]:
        """Resolve the session's agent and return a lazy stream of answer fragments.

        Agent resolution happens before this returns, so IndexUnavailable and
        build failures surface here; failures while streaming are raised from
        the iterator as AgentInvocationError.
        """
        agent = await self._resolve(session_id)
        logger.info("Streamed query session_id=%s query=%r", session_id, text)
        return self._fragments(session_id, agent, text)

    async def _fragments(self, session_id: str, agent: DocsAgent, text: str) -> AsyncIterator[str]:
        try:
            async for fragment in agent.stream_chat(text):
                if fragment:
                    yield fragment
        except Exception as e:
            logger.exception("Agent stream failed for session %s", session_id)
            raise AgentInvocationError(session_id, e) from e
