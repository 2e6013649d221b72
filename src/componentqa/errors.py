from typing import Any


class IndexUnavailable(Exception):
    """Raised when the documentation retrieval index cannot be loaded."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ChannelConnectionError(ConnectionError):
    """Raised when the component metadata server cannot be started or handshaked."""


class NotConnected(Exception):
    """Raised when a remote call is attempted on a channel that is not ready."""


class RemoteCallError(Exception):
    """Raised when the component metadata server answers a call with an error."""

    def __init__(self, operation: str, payload: Any) -> None:
        self.operation = operation
        self.payload = payload
        super().__init__(f"Remote call {operation!r} failed: {payload}")


class AgentInvocationError(Exception):
    """Raised when an agent turn (model call or tool orchestration) fails."""

    def __init__(self, session_id: str, cause: BaseException) -> None:
        self.session_id = session_id
        self.cause = cause
        super().__init__(str(cause) or cause.__class__.__name__)
