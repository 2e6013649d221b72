import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ChannelState(str, Enum):
    """Readiness of the component metadata tool channel."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class SessionRecord:
    """One cached conversation: the live agent and when it was last used."""

    session_id: str
    agent: Any
    last_activity: float
    next_check: float | None = None


@dataclass
class ToolEnvelope:
    """Result every remote-tool adapter returns instead of raising."""

    success: bool
    message: str
    data: dict[str, Any] | None = None
    error: str | None = None

    def to_json(self) -> str:
        payload: dict[str, Any] = {"success": self.success}
        if self.data:
            payload.update(self.data)
        if self.error is not None:
            payload["error"] = self.error
        payload["message"] = self.message
        return json.dumps(payload, indent=2, default=str)
