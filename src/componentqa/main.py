import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from .errors import AgentInvocationError, ChannelConnectionError, IndexUnavailable
from .services.dispatcher import QueryDispatcher
from .services.retrieval import RetrievalIndex
from .services.session_cache import SessionCache
from .services.tool_channel import ToolChannel
from .settings import get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("componentqa")
    if not package_logger.handlers:
        package_logger.setLevel(level)
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        package_logger.addHandler(ch)

        fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
        fh.setFormatter(fmt)
        package_logger.addHandler(fh)

    return logging.getLogger("componentqa.server")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)

MISSING_USER_ERROR = "Missing X-User header"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the retrieval index and connect the component tools at startup; tear down on shutdown."""
    index = RetrievalIndex()
    channel = ToolChannel()
    cache = SessionCache(index=index, channel=channel)
    app.state.tool_channel = channel
    app.state.session_cache = cache
    app.state.dispatcher = QueryDispatcher(cache)

    LOGGER.info("Loading retrieval index at startup...")
    try:
        await index.load()
        LOGGER.info("Retrieval index loaded")
    except IndexUnavailable as e:
        LOGGER.error("Retrieval index unavailable at startup, will retry on first query: %s", e)

    LOGGER.info("Connecting component tool channel at startup...")
    try:
        await channel.connect()
    except ChannelConnectionError as e:
        LOGGER.warning("Component tools unavailable at startup: %s", e)

    cache.start()

    yield

    LOGGER.info("Shutting down...")
    await cache.stop()
    cache.clear()
    await channel.disconnect()


app = FastAPI(
    title="Component Library Assistant",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class QueryRequest(BaseModel):
    """Request body for POST /query and POST /stream-query."""

    query: str = Field(..., description="Question about the component library.")


def get_dispatcher(request: Request) -> QueryDispatcher:
    return request.app.state.dispatcher


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def sse_frame(data: str, event: str | None = None) -> str:
    """Encode one Server-Sent Events frame; multi-line data gets one data: line per line."""
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "Hello World. This is the component library assistant endpoint."


@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Health check with tool channel readiness and the number of live sessions."""
    channel = getattr(request.app.state, "tool_channel", None)
    cache = getattr(request.app.state, "session_cache", None)
    return {
        "status": "ok",
        "tool_channel": channel.state.value if channel is not None else "disconnected",
        "active_sessions": len(cache) if cache is not None else 0,
    }


@app.post("/query")
async def post_query(
    body: QueryRequest,
    x_user: str | None = Header(default=None),
    dispatcher: QueryDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """Answer a query for the session named by the X-User header."""
    if not x_user:
        return _error(400, MISSING_USER_ERROR)
    try:
        answer = await dispatcher.query(x_user, body.query)
    except (IndexUnavailable, AgentInvocationError) as e:
        LOGGER.error("Query failed for %s: %s", x_user, e)
        return _error(500, str(e))
    return JSONResponse(content=answer)


@app.post("/stream-query")
async def post_stream_query(
    body: QueryRequest,
    x_user: str | None = Header(default=None),
    dispatcher: QueryDispatcher = Depends(get_dispatcher),
):
    """Stream the answer as Server-Sent Events, one data frame per fragment.

    Failures before the first fragment return 500 JSON; failures after it end
    the stream with an ``event: error`` frame.
    """
    if not x_user:
        return _error(400, MISSING_USER_ERROR)
    try:
        fragments = await dispatcher.stream_query(x_user, body.query)
        first = await anext(fragments, None)
    except (IndexUnavailable, AgentInvocationError) as e:
        LOGGER.error("Streamed query failed for %s: %s", x_user, e)
        return _error(500, str(e))

    async def event_stream() -> AsyncIterator[str]:
        # an empty answer still gets one (empty) data frame
        yield sse_frame(first or "")
        if first is None:
            return
        try:
            async for fragment in fragments:
                yield sse_frame(fragment)
        except AgentInvocationError as e:
            LOGGER.error("Stream interrupted for %s: %s", x_user, e)
            yield sse_frame(json.dumps({"error": str(e)}), event="error")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def run() -> None:
    """Run the API server with uvicorn using host/port from settings."""
    uvicorn.run("componentqa.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
