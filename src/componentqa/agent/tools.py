import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..models import ToolEnvelope
from ..services.retrieval import RetrievalIndex
from ..services.tool_channel import ToolChannel

logger = logging.getLogger(__name__)


RETRIEVAL_FALLBACK_HINT = "use the component_docs_search tool for general component information"


class AgentTool(ABC):
    """A capability exposed to the agent: name, description and JSON argument schema."""

    name: str
    description: str
    parameters: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}

    @abstractmethod
    async def call(self, **kwargs: Any) -> str:
        """Run the tool and return a string result for the model."""

    def to_openai_schema(self) -> Dict[str, Any]:
        """Return the tool definition in OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class RetrievalTool(AgentTool):
    """Semantic search over the component documentation index."""

    name = "component_docs_search"
    description = (
        "Search the component library documentation for usage examples, "
        "tutorials and implementation patterns. Returns the most relevant passages."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query (keywords or natural language question)",
            }
        },
        "required": ["query"],
    }

    def __init__(self, index: RetrievalIndex, top_k: int | None = None) -> None:
        self._index = index
        self._top_k = top_k

    async def call(self, query: str = "", **_: Any) -> str:
        query = (query or "").strip()
        if not query:
            return "Error: query is required."
        passages = await self._index.query(query, self._top_k)
        if not passages:
            return "No matching documentation found."
        blocks = []
        for p in passages:
            blocks.append(f"[source={p.get('source', '')}]\n{(p.get('text') or '')[:1500]}")
        return "\n\n---\n\n".join(blocks)


async def _ensure_connected(channel: ToolChannel) -> None:
    if not channel.is_ready():
        await channel.connect()


class ListComponentsTool(AgentTool):
    """Authoritative list of components from the metadata server."""

    name = "list_components"
    description = (
        "Lists all available design system components with their description, "
        "status level, directory path, and import path. Use this for "
        "authoritative component information."
    )

    def __init__(self, channel: ToolChannel) -> None:
        self._channel = channel

    async def call(self, **_: Any) -> str:
        try:
            await _ensure_connected(self._channel)
            components = await self._channel.list_components()
        except Exception as e:
            logger.error("Tool %s failed: %s", self.name, e)
            return ToolEnvelope(
                success=False,
                error=str(e) or e.__class__.__name__,
                message=(
                    "Failed to retrieve component list. Please try again or "
                    f"{RETRIEVAL_FALLBACK_HINT}."
                ),
            ).to_json()

        return ToolEnvelope(
            success=True,
            data={"components": components, "total": len(components)},
            message=f"Found {len(components)} available components",
        ).to_json()


class GetComponentPropsTool(AgentTool):
    """Authoritative props for a batch of components, split into found and not found."""

    name = "get_component_props"
    description = (
        "Gets authoritative props and specifications for specific design system "
        "components. Use this for exact component API information, prop types, "
        "required fields, and default values."
    )
    parameters = {
        "type": "object",
        "properties": {
            "names": {
                "type": "array",
                "items": {"type": "string"},
                "description": (
                    'List of component names to retrieve props for '
                    '(e.g., ["Button", "Input", "Modal"])'
                ),
            }
        },
        "required": ["names"],
    }

    def __init__(self, channel: ToolChannel) -> None:
        self._channel = channel

    async def call(self, names: Any = None, **_: Any) -> str:
        if (
            not isinstance(names, list)
            or not names
            or not all(isinstance(n, str) and n.strip() for n in names)
        ):
            return ToolEnvelope(
                success=False,
                error="Invalid input: names must be a non-empty array of component names",
                message='Please provide component names as an array, e.g., ["Button", "Input"]',
            ).to_json()

        try:
            await _ensure_connected(self._channel)
            results = await self._channel.get_component_props(names)
        except Exception as e:
            logger.error("Tool %s failed: %s", self.name, e)
            return ToolEnvelope(
                success=False,
                error=str(e) or e.__class__.__name__,
                message=(
                    "Failed to retrieve component props. Please try again or "
                    f"{RETRIEVAL_FALLBACK_HINT}."
                ),
            ).to_json()

        found = [c for c in results if not c.get("notFound")]
        not_found = [c.get("name", "") for c in results if c.get("notFound")]

        message = f"Retrieved props for {len(found)} components."
        if not_found:
            message += f" Could not find: {', '.join(not_found)}"
        return ToolEnvelope(
            success=True,
            data={"components": found, "notFound": not_found},
            message=message,
        ).to_json()


def create_channel_tools(channel: ToolChannel) -> List[AgentTool]:
    """Return the two metadata tools bound to the shared channel."""
    return [ListComponentsTool(channel), GetComponentPropsTool(channel)]
