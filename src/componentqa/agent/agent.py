import json
import logging
from typing import Any, AsyncIterator, Dict, List, Sequence

from openai import AsyncOpenAI

from ..errors import IndexUnavailable, NotConnected, RemoteCallError
from ..settings import Settings, get_settings
from .tools import AgentTool

logger = logging.getLogger(__name__)


ROUND_LIMIT_ANSWER = (
    "I couldn't complete the request within the allowed number of tool calls. "
    "Please try rephrasing your question."
)


class DocsAgent:
    """Conversational agent answering component library questions with tools.

    Holds the conversation history for one session and runs the OpenAI
    tool-calling loop until the model produces a final answer.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        system_prompt: str,
        tools: Sequence[AgentTool],
        temperature: float = 0.0,
        max_tool_rounds: int = 6,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tool_rounds = max(1, max_tool_rounds)
        self._tools: Dict[str, AgentTool] = {t.name: t for t in tools}
        self.system_prompt = system_prompt
        self.messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system_prompt}
        ]

    @property
    def tool_names(self) -> List[str]:
        return list(self._tools)

    def _request_kwargs(self, stream: bool) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self._model,
            "messages": list(self.messages),
            "temperature": self._temperature,
        }
        if self._tools:
            kwargs["tools"] = [t.to_openai_schema() for t in self._tools.values()]
            kwargs["tool_choice"] = "auto"
        if stream:
            kwargs["stream"] = True
        return kwargs

    async def _execute_tool(self, name: str, raw_arguments: str) -> str:
        tool = self._tools.get(name)
        if tool is None:
            logger.error("Tool %s is not available to this agent", name)
            return f"Error: Tool {name} not found"
        try:
            args = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as e:
            logger.error("Invalid tool arguments for %s: %s", name, e)
            return f"Error: invalid arguments - {e}"
        if not isinstance(args, dict):
            return "Error: invalid arguments - expected a JSON object"

        logger.info("Executing tool: %s", name)
        try:
            return await tool.call(**args)
        except (
            OSError,
            ConnectionError,
            TimeoutError,
            ValueError,
            TypeError,
            IndexUnavailable,
            NotConnected,
            RemoteCallError,
        ) as e:
            logger.error("Error executing tool %s: %s", name, e)
            return f"Error: {e}"

    async def _run_tool_calls(self, content: str, tool_calls: List[Dict[str, str]]) -> None:
        self.messages.append(
            {
                "role": "assistant",
                "content": content or None,
                "tool_calls": [
                    {
                        "id": tc["id"],
                        "type": "function",
                        "function": {"name": tc["name"], "arguments": tc["arguments"]},
                    }
                    for tc in tool_calls
                ],
            }
        )
        logger.info("Tools called in order: %s", ", ".join(tc["name"] for tc in tool_calls))
        for tc in tool_calls:
            result = await self._execute_tool(tc["name"], tc["arguments"])
            self.messages.append(
                {"role": "tool", "tool_call_id": tc["id"], "content": result}
            )

    async def chat(self, message: str) -> str:
        """Answer one user message and return the full text."""
        mark = len(self.messages)
        self.messages.append({"role": "user", "content": message})
        try:
            for _ in range(self._max_tool_rounds):
                response = await self._client.chat.completions.create(
                    **self._request_kwargs(stream=False)
                )
                msg = response.choices[0].message
                tool_calls = [
                    {
                        "id": tc.id,
                        "name": tc.function.name,
                        "arguments": tc.function.arguments or "",
                    }
                    for tc in (msg.tool_calls or [])
                ]
                if tool_calls:
                    await self._run_tool_calls(msg.content or "", tool_calls)
                    continue

                answer = msg.content or ""
                self.messages.append({"role": "assistant", "content": answer})
                return answer
        except BaseException:
            del self.messages[mark:]
            raise

        logger.warning("Tool round limit (%d) reached", self._max_tool_rounds)
        self.messages.append({"role": "assistant", "content": ROUND_LIMIT_ANSWER})
        return ROUND_LIMIT_ANSWER

    async def stream_chat(self, message: str) -> AsyncIterator[str]:
        """Answer one user message, yielding text fragments as the model produces them."""
        mark = len(self.messages)
        self.messages.append({"role": "user", "content": message})
        try:
            for _ in range(self._max_tool_rounds):
                stream = await self._client.chat.completions.create(
                    **self._request_kwargs(stream=True)
                )

                content_parts: List[str] = []
                tool_calls_made: List[Dict[str, str]] = []
                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    if delta.content:
                        content_parts.append(delta.content)
                        yield delta.content
                    if delta.tool_calls:
                        for tool_call_delta in delta.tool_calls:
                            index = tool_call_delta.index or 0
                            while len(tool_calls_made) <= index:
                                tool_calls_made.append({"id": "", "name": "", "arguments": ""})
                            tc = tool_calls_made[index]
                            if tool_call_delta.id:
                                tc["id"] = tool_call_delta.id
                            if tool_call_delta.function:
                                if tool_call_delta.function.name:
                                    tc["name"] = tool_call_delta.function.name
                                if tool_call_delta.function.arguments:
                                    tc["arguments"] += tool_call_delta.function.arguments

                tool_calls = [tc for tc in tool_calls_made if tc["name"]]
                if tool_calls:
                    await self._run_tool_calls("".join(content_parts), tool_calls)
                    continue

                self.messages.append(
                    {"role": "assistant", "content": "".join(content_parts)}
                )
                return
        except BaseException:
            del self.messages[mark:]
            raise

        logger.warning("Tool round limit (%d) reached", self._max_tool_rounds)
        self.messages.append({"role": "assistant", "content": ROUND_LIMIT_ANSWER})
        yield ROUND_LIMIT_ANSWER


def build_agent(
    tools: Sequence[AgentTool],
    settings: Settings | None = None,
    client: AsyncOpenAI | None = None,
) -> DocsAgent:
    """Create a new agent bound to the system prompt and the given tools. No caching."""
    settings = settings or get_settings()
    if client is None:
        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        )
    return DocsAgent(
        client=client,
        model=settings.model,
        system_prompt=settings.system_prompt,
        tools=tools,
        temperature=settings.temperature,
        max_tool_rounds=settings.max_tool_rounds,
    )
