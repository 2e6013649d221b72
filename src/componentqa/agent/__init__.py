"""Agent package for the component library assistant.

Exposes the agent, its factory and the tools it can call, while keeping the
tool-calling loop and the tool adapters in separate modules.
"""

from .agent import DocsAgent, build_agent
from .tools import (
    AgentTool,
    GetComponentPropsTool,
    ListComponentsTool,
    RetrievalTool,
    create_channel_tools,
)

__all__ = [
    "AgentTool",
    "DocsAgent",
    "GetComponentPropsTool",
    "ListComponentsTool",
    "RetrievalTool",
    "build_agent",
    "create_channel_tools",
]
