"""Component metadata MCP server.

Reads the design system app map and exposes two tools over stdio:
list-available-components and get-component-props.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List

import httpx
from mcp.server.fastmcp import FastMCP

_DATA_DIR = Path(__file__).resolve().parent / "data"
_DEFAULT_APP_MAP_PATH = _DATA_DIR / "app_map.json"

APP_MAP_URL = os.getenv("COMPONENTS_APP_MAP_URL", "").strip()
APP_MAP_PATH = Path(os.getenv("COMPONENTS_APP_MAP_PATH", "") or _DEFAULT_APP_MAP_PATH)
DIRECTORY_PATH = os.getenv("COMPONENTS_DIRECTORY_PATH", "packages/components/src").rstrip("/")
HTTP_TIMEOUT = 15.0


def load_app_map() -> List[Dict[str, Any]]:
    """Return the app map entries, from COMPONENTS_APP_MAP_URL if set, else the local file."""
    if APP_MAP_URL:
        with httpx.Client(timeout=HTTP_TIMEOUT) as client:
            response = client.get(APP_MAP_URL)
            response.raise_for_status()
            data = response.json()
    else:
        with open(APP_MAP_PATH, encoding="utf-8") as f:
            data = json.load(f)
    return data.get("map", [])


def _prop_to_dict(prop: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the prop fields that are set."""
    out: Dict[str, Any] = {"name": prop["name"], "type": prop.get("type", "unknown")}
    if prop.get("required") is not None:
        out["required"] = prop["required"]
    if prop.get("defaultValue") is not None:
        out["defaultValue"] = prop["defaultValue"]
    if prop.get("description"):
        out["description"] = prop["description"]
    if prop.get("possibleValues"):
        out["possibleValues"] = prop["possibleValues"]
    return out


def list_available_components(app_map: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Entries whose destination is a component page, in app map order."""
    components = []
    for item in app_map:
        destination = item.get("destination") or ""
        if "/components/" not in destination:
            continue
        metadata = item.get("metadata") or {}
        components.append(
            {
                "name": item.get("label", ""),
                "description": metadata.get("description"),
                "statusLevel": metadata.get("statusLevel"),
                "directoryPath": f"{DIRECTORY_PATH}{destination.replace('/components/', '/', 1)}",
                "importPath": item.get("importPath"),
            }
        )
    return components


def get_component_props(app_map: List[Dict[str, Any]], names: List[str]) -> List[Dict[str, Any]]:
    """Props for each requested name, in request order; unknown names come back as notFound."""
    if not names:
        return []
    wanted = set(names)
    found: Dict[str, List[Dict[str, Any]] | None] = {}
    for item in app_map:
        label = item.get("label")
        if label in wanted:
            found[label] = item.get("props")

    results: List[Dict[str, Any]] = []
    for name in names:
        props = found.get(name)
        if props is None:
            results.append({"name": name, "notFound": True})
        else:
            results.append({"name": name, "props": [_prop_to_dict(p) for p in props]})
    return results


mcp = FastMCP("Component Library")


@mcp.tool(name="list-available-components")
def list_components_tool() -> str:
    """Lists all available design system components with their description, status level, directory path, and import path."""
    return json.dumps(list_available_components(load_app_map()), indent=2)


@mcp.tool(name="get-component-props")
def get_component_props_tool(names: List[str]) -> str:
    """Given a list of component names, retrieves their props from the design system.

    If a component is not found, its entry has a "notFound" property with the component name.
    """
    return json.dumps(get_component_props(load_app_map(), names), indent=2)


if __name__ == "__main__":
    mcp.run(transport="stdio")
