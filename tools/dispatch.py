"""Tool registry and dispatch.

Every tool name maps to exactly one provider kind. The registry is rebuilt
once per loop iteration (plugin servers may add or drop tools at any time)
and a dispatch is a lookup plus a branch on the kind.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend import Backend
from config import AppConfig
from runtime.confirmations import ConfirmationTable, Decision, Outcome
from runtime.events import AgentEvent, CONFIRM_REQUEST, EventSink
from runtime.messages import ToolResultBlock, ToolUseBlock
from sessions import FolderStore, PermissionStore
from tools._common import ToolContext, ToolResult
from tools.browser_ops import open_browser_preview, validate_page
from tools.command_ops import run_command
from tools.file_ops import list_dir, read_file, write_file
from tools.processes import ProcessRegistry
from tools.providers import PluginBridge, SkillProvider
from tools.schemas import TOOL_DEFINITIONS

logger = logging.getLogger(__name__)


class ProviderKind(enum.Enum):
    BUILTIN = "builtin"
    SKILL = "skill"
    PLUGIN_BRIDGE = "plugin_bridge"


BUILTIN_IMPLEMENTATIONS: Dict[str, Callable[[ToolContext, Dict[str, Any]], Awaitable[ToolResult]]] = {
    "read_file": read_file,
    "write_file": write_file,
    "list_dir": list_dir,
    "run_command": run_command,
    "open_browser_preview": open_browser_preview,
    "validate_page": validate_page,
}


@dataclass
class ToolEntry:
    name: str
    kind: ProviderKind
    schema: Dict[str, Any]


class ToolRegistry:
    def __init__(self, entries: Optional[List[ToolEntry]] = None):
        self._entries: Dict[str, ToolEntry] = {}
        for entry in entries or []:
            if entry.name in self._entries:
                logger.warning(f"Duplicate tool name {entry.name!r} ({entry.kind.value}) ignored")
                continue
            self._entries[entry.name] = entry

    def resolve(self, name: str) -> Optional[ToolEntry]:
        return self._entries.get(name)

    def names(self) -> List[str]:
        return list(self._entries)

    def schemas(self) -> List[Dict[str, Any]]:
        return [e.schema for e in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)


def invalid_json_message(tool_use: ToolUseBlock) -> str:
    raw = tool_use.input.get("raw", "")
    return (
        "Error: The tool input was not valid JSON. Please fix the JSON format and retry. "
        f"Raw input length: {len(raw)}"
    )


class ToolDispatcher:
    """Routes tool_use blocks to builtins, skills or plugin servers."""

    def __init__(
        self,
        backend: Backend,
        settings: AppConfig,
        confirmations: ConfirmationTable,
        folders: FolderStore,
        permissions: Optional[PermissionStore] = None,
        processes: Optional[ProcessRegistry] = None,
        skills: Optional[SkillProvider] = None,
        plugins: Optional[PluginBridge] = None,
        auto_heal: Any = None,  # runtime.autoheal.AutoHealLoop
        open_preview: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.backend = backend
        self.settings = settings
        self.confirmations = confirmations
        self.folders = folders
        self.permissions = permissions
        self.processes = processes
        self.skills = skills or SkillProvider()
        self.plugins = plugins or PluginBridge(timeout=settings.plugin_timeout)
        self.auto_heal = auto_heal
        self.open_preview = open_preview

    async def build_registry(self) -> ToolRegistry:
        entries = [ToolEntry(t["name"], ProviderKind.BUILTIN, t) for t in TOOL_DEFINITIONS]
        reserved = {e.name for e in entries}
        for schema in self.skills.schemas():
            if schema["name"] in reserved:
                logger.warning(f"Skill {schema['name']!r} shadows a builtin tool; skipped")
                continue
            entries.append(ToolEntry(schema["name"], ProviderKind.SKILL, schema))
            reserved.add(schema["name"])
        for schema in await self.plugins.refresh(reserved):
            entries.append(ToolEntry(schema["name"], ProviderKind.PLUGIN_BRIDGE, schema))
        return ToolRegistry(entries)

    def tool_context(self, task: Any, emit: EventSink) -> ToolContext:
        """Per-task view handed to builtin tools."""

        async def confirm(tool: str, description: str, args: Dict[str, Any], path: str,
                          allow_remembered: bool = True) -> Decision:
            if allow_remembered and self.permissions is not None and self.permissions.has_permission(tool, path):
                logger.info(f"Auto-approved {tool} @ {path} (remembered permission)")
                return Decision(Outcome.APPROVED)
            pending = self.confirmations.open(task.task_id, tool, description, args)
            await emit(AgentEvent(
                type=CONFIRM_REQUEST,
                content=description,
                data=pending.request_payload(),
                task_id=task.task_id,
            ))
            decision = await self.confirmations.wait(
                pending, cancel=task.cancel, timeout=self.settings.confirmation_timeout or None,
            )
            if decision.approved and decision.remember and self.permissions is not None:
                self.permissions.grant(tool, path)
            task.touch()
            return decision

        on_server_started = None
        if self.auto_heal is not None and self.settings.auto_heal_enabled:
            async def on_server_started(url: str, cwd: str, log_path: str) -> str:
                return await self.auto_heal.run(url, cwd, cancel=task.cancel, log_path=log_path)

        return ToolContext(
            backend=self.backend,
            task=task,
            settings=self.settings,
            confirm=confirm,
            emit=emit,
            trust_for=self.folders.trust_for,
            processes=self.processes,
            on_server_started=on_server_started,
            open_preview=self.open_preview,
        )

    async def dispatch(self, tool_use: ToolUseBlock, registry: ToolRegistry, tc: ToolContext) -> ToolResultBlock:
        """Execute one tool_use. Never raises for tool-level failures."""
        result = await self._execute(tool_use, registry, tc)
        return ToolResultBlock(tool_use.id, result.text, is_error=not result.success)

    async def _execute(self, tool_use: ToolUseBlock, registry: ToolRegistry, tc: ToolContext) -> ToolResult:
        if tool_use.malformed:
            return ToolResult(success=False, output="", error=invalid_json_message(tool_use))
        entry = registry.resolve(tool_use.name)
        if entry is None:
            return ToolResult(success=False, output="", error=f"Error: Tool '{tool_use.name}' not found.")

        logger.info(f"Dispatching {tool_use.name} ({entry.kind.value}) for task {tc.task.task_id}")
        if entry.kind is ProviderKind.BUILTIN:
            impl = BUILTIN_IMPLEMENTATIONS[entry.name]
            try:
                return await impl(tc, tool_use.input)
            except TypeError as e:
                return ToolResult(success=False, output="", error=f"Invalid arguments for {tool_use.name}: {e}")
            except Exception as e:
                logger.exception(f"Tool execution error: {tool_use.name}")
                return ToolResult(success=False, output="", error=f"Tool error: {e}")
        elif entry.kind is ProviderKind.SKILL:
            return await self.skills.invoke(entry.name, tool_use.input)
        elif entry.kind is ProviderKind.PLUGIN_BRIDGE:
            return await self.plugins.invoke(entry.name, tool_use.input)
        return ToolResult(success=False, output="", error=f"Error: Tool '{tool_use.name}' not found.")
