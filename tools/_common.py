"""Shared types for the tools package."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from backend import Backend
from config import AppConfig


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None

    @property
    def text(self) -> str:
        """What the model sees in the tool_result block."""
        if self.success:
            return self.output
        if self.output and self.error:
            return f"{self.error}\n{self.output}"
        return self.error or self.output


@dataclass
class ToolContext:
    """Everything a built-in tool may touch during one dispatch.

    ``confirm(tool, description, args, path, allow_remembered=True)`` suspends
    until the user answers and returns a Decision; ``on_server_started(url, cwd, log_path)``
    runs post-start checks for dev servers and returns a report to append.
    """
    backend: Backend
    task: Any  # runtime.registry.TaskContext
    settings: AppConfig
    confirm: Callable[..., Awaitable[Any]]
    emit: Callable[[Any], Awaitable[None]]
    trust_for: Callable[[str], Optional[str]]
    processes: Any = None  # tools.processes.ProcessRegistry
    on_server_started: Optional[Callable[[str, str, str], Awaitable[str]]] = None
    open_preview: Optional[Callable[[str], Awaitable[None]]] = None


def truncate_output(output: str, limit: int = 20000) -> str:
    if len(output) <= limit:
        return output
    lines_out = output.split("\n")
    if len(lines_out) > 200:
        return "\n".join(lines_out[:100]) + f"\n\n... [{len(lines_out) - 150} lines truncated] ...\n\n" + "\n".join(lines_out[-50:])
    return output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]
