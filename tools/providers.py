"""
Non-builtin tool providers: skills and the plugin-tool bridge.

Skills return their instructions to the model when invoked. Plugin tools
come from external servers reached through a ``list_tools()/call_tool()``
client; their names are namespaced ``<server>__<tool>``.
"""

import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from tools._common import ToolResult

logger = logging.getLogger(__name__)

MAX_TOOL_NAME = 64
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("", name or "")


def _name_hash(*parts: str) -> str:
    return hashlib.sha1("/".join(parts).encode("utf-8")).hexdigest()[:6]


def namespaced_tool_name(server: str, tool: str, taken: Optional[set] = None) -> str:
    """``<server>__<tool>``, sanitized and capped; collisions get a stable hash suffix."""
    base = f"{sanitize_name(server) or 'server'}__{sanitize_name(tool) or 'tool'}"
    suffix = ""
    if len(base) > MAX_TOOL_NAME or (taken is not None and base in taken):
        suffix = "_" + _name_hash(server, tool)
    return base[:MAX_TOOL_NAME - len(suffix)] + suffix


def _format_call_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


# ============================================================
# Skills
# ============================================================

@dataclass
class Skill:
    name: str
    description: str
    instructions: str
    directory: str = ""


class SkillProvider:
    def __init__(self, skills: Optional[List[Skill]] = None):
        self._skills: Dict[str, Skill] = {}
        for skill in skills or []:
            self.add(skill)

    def add(self, skill: Skill) -> str:
        name = sanitize_name(skill.name)[:MAX_TOOL_NAME] or "skill_" + _name_hash(skill.name)
        self._skills[name] = skill
        return name

    def remove(self, name: str) -> bool:
        return self._skills.pop(name, None) is not None

    def schemas(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": name,
                "description": skill.description,
                "input_schema": {"type": "object", "properties": {}},
            }
            for name, skill in self._skills.items()
        ]

    def has(self, name: str) -> bool:
        return name in self._skills

    async def invoke(self, name: str, args: Dict[str, Any]) -> ToolResult:
        skill = self._skills.get(name)
        if skill is None:
            return ToolResult(success=False, output="", error=f"Error: Tool '{name}' not found.")
        return ToolResult(
            success=True,
            output=(
                f"[SKILL LOADED: {skill.name}]\n"
                f"SKILL DIRECTORY: {skill.directory}\n"
                f"---\n{skill.instructions}\n---"
            ),
        )


# ============================================================
# Plugin bridge
# ============================================================

class PluginClient(Protocol):
    """Transport-agnostic client for one plugin server."""

    async def list_tools(self) -> List[Dict[str, Any]]:
        ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        ...


@dataclass
class PluginTool:
    exposed_name: str
    server: str
    tool: str
    schema: Dict[str, Any] = field(default_factory=dict)


class PluginBridge:
    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout
        self._clients: Dict[str, PluginClient] = {}
        self._tools: Dict[str, PluginTool] = {}

    def add_server(self, name: str, client: PluginClient) -> None:
        self._clients[name] = client

    def remove_server(self, name: str) -> None:
        self._clients.pop(name, None)
        self._tools = {k: v for k, v in self._tools.items() if v.server != name}

    @property
    def servers(self) -> List[str]:
        return list(self._clients)

    async def _list_server(self, server: str, client: PluginClient) -> Tuple[str, List[Dict[str, Any]]]:
        try:
            return server, await asyncio.wait_for(client.list_tools(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Plugin server {server} timed out listing tools")
        except Exception as e:
            logger.warning(f"Plugin server {server} failed to list tools: {e}")
        return server, []

    async def refresh(self, reserved: Optional[set] = None) -> List[Dict[str, Any]]:
        """Re-read every server's tool list and return merged schemas.

        ``reserved`` holds names already taken by builtins and skills.
        """
        listed = await asyncio.gather(*(self._list_server(s, c) for s, c in self._clients.items()))
        taken = set(reserved or ())
        tools: Dict[str, PluginTool] = {}
        for server, defs in listed:
            for d in defs:
                raw_name = d.get("name", "")
                exposed = namespaced_tool_name(server, raw_name, taken)
                taken.add(exposed)
                tools[exposed] = PluginTool(
                    exposed_name=exposed,
                    server=server,
                    tool=raw_name,
                    schema={
                        "name": exposed,
                        "description": d.get("description") or f"{raw_name} (from {server})",
                        "input_schema": d.get("inputSchema") or d.get("input_schema") or {"type": "object", "properties": {}},
                    },
                )
        self._tools = tools
        return [t.schema for t in tools.values()]

    def has(self, name: str) -> bool:
        return name in self._tools

    async def invoke(self, name: str, args: Dict[str, Any]) -> ToolResult:
        entry = self._tools.get(name)
        client = self._clients.get(entry.server) if entry else None
        if entry is None or client is None:
            return ToolResult(success=False, output="", error=f"Error: Tool '{name}' not found.")
        try:
            result = await asyncio.wait_for(client.call_tool(entry.tool, args), timeout=self.timeout)
        except asyncio.TimeoutError:
            return ToolResult(
                success=False, output="",
                error=f"Error: Plugin tool {entry.server}__{entry.tool} timed out after {self.timeout:g}s",
            )
        except Exception as e:
            logger.exception(f"Plugin tool {name} failed")
            return ToolResult(success=False, output="", error=f"Error calling plugin tool {name}: {e}")
        return ToolResult(success=True, output=_format_call_result(result))
