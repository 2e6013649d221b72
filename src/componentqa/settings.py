from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    cors_origins: str = "*"

    model: str = "gpt-4o"
    temperature: float = 0.0
    max_tool_rounds: int = 6
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"

    support_channel: str = "#designops"
    agent_system_prompt: str = (
        "You are an agent designed to answer queries about the component "
        "library of our design system.\n"
        "You have access to multiple tools:\n\n"
        "1. Component metadata tools (authoritative, use first):\n"
        " - list_components: get all available components with official specs\n"
        " - get_component_props: get exact component props, types and API details\n\n"
        "2. Documentation search tool (contextual, use for examples):\n"
        " - component_docs_search: search the documentation for usage examples "
        "and implementation patterns\n\n"
        "Tool selection strategy:\n"
        " - For component specifications, props, API details: use the metadata "
        "tools FIRST.\n"
        " - For usage examples, tutorials, implementation help: use the "
        "documentation search tool.\n"
        " - For comprehensive answers: use the metadata tools for specs and the "
        "documentation search for examples.\n\n"
        "Always try the authoritative metadata tools first for component "
        "information. Only use documentation search when you need usage examples "
        "or when the metadata tools don't have the information. Do not invent "
        "props or components that are not found in the tool output.\n\n"
        "If the design system doesn't support a requested use case, direct users "
        "to check with the {support_channel} Slack channel."
    )

    storage_dir: Path = Path("storage")
    collection_name: str = "component_docs"
    similarity_top_k: int = 3

    session_idle_seconds: float = 600.0
    eviction_check_delay_seconds: float = 300.0
    eviction_tick_seconds: float = 5.0

    mcp_components_cmd: str | None = None
    mcp_connect_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )

    @property
    def system_prompt(self) -> str:
        """Agent system prompt with the support channel filled in."""
        return self.agent_system_prompt.replace("{support_channel}", self.support_channel)


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
