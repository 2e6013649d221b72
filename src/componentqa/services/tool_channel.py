import asyncio
import json
import logging
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Dict, List

import anyio
from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult

from ..errors import ChannelConnectionError, NotConnected, RemoteCallError
from ..models import ChannelState
from ..settings import get_settings

logger = logging.getLogger(__name__)


PROJECT_ROOT = Path(__file__).resolve().parents[3]
MCP_ROOT = PROJECT_ROOT / "mcp_servers"

LIST_COMPONENTS = "list-available-components"
GET_COMPONENT_PROPS = "get-component-props"


def build_server_params(cmd: str | None = None) -> StdioServerParameters:
    """Return stdio parameters for the component metadata server.

    Args:
        cmd: Optional full command line (e.g. "python mcp_servers/components/server.py").
            Defaults to running the bundled server with the current interpreter.
    """
    env = {"PYTHONPATH": str(PROJECT_ROOT), **os.environ}
    if cmd and cmd.strip():
        parts = shlex.split(cmd)
    else:
        parts = [sys.executable, str(MCP_ROOT / "components" / "server.py")]
    return StdioServerParameters(command=parts[0], args=parts[1:], env=env)


def _first_text(result: CallToolResult) -> str | None:
    if result.content:
        content = result.content[0]
        if getattr(content, "type", None) == "text":
            return content.text
    return None


class ToolChannel:
    """Single long-lived MCP stdio connection to the component metadata server.

    The stdio transport and client session are owned by one background task so
    they are entered and exited in the same task, whichever request first
    triggered the connection.
    """

    def __init__(
        self,
        server_params: StdioServerParameters | None = None,
        connect_timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._params = server_params or build_server_params(settings.mcp_components_cmd)
        self._timeout = (
            connect_timeout
            if connect_timeout is not None
            else settings.mcp_connect_timeout_seconds
        )
        self._state = ChannelState.DISCONNECTED
        self._session: ClientSession | None = None
        self._runner: asyncio.Task | None = None
        self._closing: asyncio.Event | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ChannelState:
        return self._state

    def is_ready(self) -> bool:
        """Return True if the channel can serve calls. Never performs I/O."""
        return self._state is ChannelState.CONNECTED and self._session is not None

    async def connect(self) -> None:
        """Start the server process and perform the MCP handshake. Idempotent.

        Concurrent callers share a single connection attempt.

        Raises:
            ChannelConnectionError: the process could not start or the handshake failed.
        """
        if self.is_ready():
            return
        async with self._lock:
            if self.is_ready():
                return
            await self._stop_runner()

            ready: asyncio.Future = asyncio.get_running_loop().create_future()
            self._closing = asyncio.Event()
            self._runner = asyncio.create_task(
                self._run(ready, self._closing), name="component-tool-channel"
            )
            try:
                await asyncio.wait_for(ready, timeout=self._timeout)
            except Exception as e:
                self._state = ChannelState.FAILED
                await self._stop_runner(cancel=True)
                logger.warning("Failed to connect component tool channel: %s", e)
                raise ChannelConnectionError(
                    f"Could not connect to component metadata server: {e}"
                ) from e

            self._state = ChannelState.CONNECTED
            logger.info(
                "Component tool channel connected (command=%s)", self._params.command
            )

    async def _run(self, ready: asyncio.Future, closing: asyncio.Event) -> None:
        try:
            async with stdio_client(self._params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    self._session = session
                    ready.set_result(None)
                    await closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning("Component tool channel dropped: %s", e)
                self._state = ChannelState.FAILED
        finally:
            self._session = None
            if not ready.done():
                ready.set_exception(
                    ChannelConnectionError("Component metadata server exited during handshake")
                )

    async def _stop_runner(self, cancel: bool = False) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        if self._closing is not None:
            self._closing.set()
        if cancel:
            runner.cancel()
        try:
            await asyncio.wait_for(runner, timeout=self._timeout)
        except asyncio.CancelledError:
            pass
        except asyncio.TimeoutError:
            logger.warning("Component tool channel did not shut down in time")
        self._session = None

    async def disconnect(self) -> None:
        """Tear down the channel. Idempotent; teardown errors are logged, not raised."""
        async with self._lock:
            if self._runner is None and self._state is ChannelState.DISCONNECTED:
                return
            try:
                await self._stop_runner()
            except Exception as e:
                logger.error("Error disconnecting component tool channel: %s", e)
            finally:
                self._state = ChannelState.DISCONNECTED
                self._session = None
            logger.info("Component tool channel disconnected")

    async def call(self, operation: str, arguments: Dict[str, Any] | None = None) -> Any:
        """Invoke a remote tool and return its JSON-decoded payload.

        Raises:
            NotConnected: the channel is not ready; connect first.
            RemoteCallError: the remote tool reported an error or the transport broke.
        """
        session = self._session
        if not self.is_ready() or session is None:
            raise NotConnected(
                f"Component tool channel is not connected (state={self._state.value})"
            )

        logger.info("Calling remote tool %s", operation)
        try:
            result = await session.call_tool(operation, arguments or {})
        except McpError as e:
            raise RemoteCallError(operation, str(e)) from e
        except (OSError, anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            logger.warning("Component tool channel broken during %s: %s", operation, e)
            self._state = ChannelState.FAILED
            raise RemoteCallError(operation, str(e) or e.__class__.__name__) from e

        text = _first_text(result)
        if result.isError:
            raise RemoteCallError(operation, text or "unknown remote error")
        if text is None:
            return []
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise RemoteCallError(operation, f"invalid JSON payload: {e}") from e

    async def list_components(self) -> List[Dict[str, Any]]:
        """Enumerate all available components."""
        return await self.call(LIST_COMPONENTS, {})

    async def get_component_props(self, names: List[str]) -> List[Dict[str, Any]]:
        """Fetch prop details for each requested component name."""
        return await self.call(GET_COMPONENT_PROPS, {"names": names})
