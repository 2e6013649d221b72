import json
import re
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from componentqa.agent.tools import AgentTool  # noqa: E402
from componentqa.services.retrieval import RetrievalIndex  # noqa: E402
from componentqa.services.tool_channel import ToolChannel  # noqa: E402


def _words(text: str) -> List[str]:
    return re.findall(r"\S+\s*", text) or [text]


class ScriptedCompletions:
    """Deterministic stand-in for client.chat.completions.

    Each turn is either {"content": str} or {"tool_calls": [(id, name, args), ...]}.
    The same script yields the same answer whether requested streamed or not.
    """

    def __init__(self, turns: List[Dict[str, Any]]) -> None:
        self.turns = list(turns)
        self.requests: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        if not self.turns:
            raise RuntimeError("script exhausted")
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        if kwargs.get("stream"):
            return self._stream(turn)
        return self._response(turn)

    @staticmethod
    def _response(turn: Dict[str, Any]) -> Any:
        tool_calls = [
            SimpleNamespace(
                id=call_id,
                type="function",
                function=SimpleNamespace(name=name, arguments=json.dumps(args)),
            )
            for call_id, name, args in turn.get("tool_calls", [])
        ]
        message = SimpleNamespace(content=turn.get("content"), tool_calls=tool_calls or None)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    @staticmethod
    async def _stream(turn: Dict[str, Any]):
        content = turn.get("content") or ""
        for word in _words(content) if content else []:
            delta = SimpleNamespace(content=word, tool_calls=None)
            yield SimpleNamespace(choices=[SimpleNamespace(delta=delta)])
        for index, (call_id, name, args) in enumerate(turn.get("tool_calls", [])):
            raw = json.dumps(args)
            half = len(raw) // 2
            first = SimpleNamespace(
                index=index,
                id=call_id,
                function=SimpleNamespace(name=name, arguments=raw[:half]),
            )
            second = SimpleNamespace(
                index=index,
                id=None,
                function=SimpleNamespace(name=None, arguments=raw[half:]),
            )
            for tc in (first, second):
                delta = SimpleNamespace(content=None, tool_calls=[tc])
                yield SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


@pytest.fixture
def make_client() -> Callable[[List[Dict[str, Any]]], Any]:
    """Factory for a fake AsyncOpenAI client replaying a script."""

    def _make(turns: List[Dict[str, Any]]) -> Any:
        return SimpleNamespace(chat=SimpleNamespace(completions=ScriptedCompletions(turns)))

    return _make


class RecordingTool(AgentTool):
    """Tool that records its calls and returns a fixed result."""

    def __init__(self, name: str, result: str = "{}") -> None:
        self.name = name
        self.description = f"{name} test tool"
        self.result = result
        self.calls: List[Dict[str, Any]] = []

    async def call(self, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        return self.result


@pytest.fixture
def recording_tool() -> Callable[..., RecordingTool]:
    return RecordingTool


@pytest.fixture
def mock_index() -> MagicMock:
    """Retrieval index that is always loadable and returns two passages."""
    m = MagicMock(spec=RetrievalIndex)
    m.load = AsyncMock(return_value=None)
    m.query = AsyncMock(
        return_value=[
            {"id": "d1", "text": "Use <Button level='primary'> for main actions.", "score": 0.9, "source": "button.md"},
            {"id": "d2", "text": "Buttons can be disabled.", "score": 0.7, "source": "button.md"},
        ]
    )
    return m


@pytest.fixture
def mock_channel() -> MagicMock:
    """Tool channel that starts connected."""
    m = MagicMock(spec=ToolChannel)
    m.is_ready = MagicMock(return_value=True)
    m.connect = AsyncMock(return_value=None)
    m.disconnect = AsyncMock(return_value=None)
    m.list_components = AsyncMock(return_value=[])
    m.get_component_props = AsyncMock(return_value=[])
    return m
