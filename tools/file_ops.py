"""File tools: read_file, write_file, list_dir."""

import asyncio
import logging
import os
from typing import Any, Dict

from backend import UnauthorizedPath
from runtime.events import AgentEvent, ARTIFACT_CREATED
from tools._common import ToolContext, ToolResult, truncate_output

logger = logging.getLogger(__name__)

_MAX_READ_CHARS = 200_000


def _unauthorized(path: str) -> ToolResult:
    return ToolResult(success=False, output="", error=f"Error: Path {path} is not in an authorized folder.")


async def read_file(tc: ToolContext, args: Dict[str, Any]) -> ToolResult:
    path = (args.get("path") or "").strip()
    if not path:
        return ToolResult(success=False, output="", error="Error: path is required")
    full = tc.backend.resolve_path(path)
    loop = asyncio.get_running_loop()
    try:
        content = await loop.run_in_executor(None, tc.backend.read_file, full)
    except UnauthorizedPath:
        return _unauthorized(full)
    except FileNotFoundError:
        return ToolResult(success=False, output="", error=f"Error: File not found: {full}")
    except IsADirectoryError:
        return ToolResult(success=False, output="", error=f"Error: {full} is a directory; use list_dir")
    except OSError as e:
        return ToolResult(success=False, output="", error=f"Error reading file: {e}")
    if len(content) > _MAX_READ_CHARS:
        content = content[:_MAX_READ_CHARS] + f"\n\n... [truncated at {_MAX_READ_CHARS} chars]"
    return ToolResult(success=True, output=f"Successfully read file {full}:\n{content}")


async def write_file(tc: ToolContext, args: Dict[str, Any]) -> ToolResult:
    path = (args.get("path") or "").strip()
    content = args.get("content")
    if not path:
        return ToolResult(success=False, output="", error="Error: path is required")
    if not isinstance(content, str):
        return ToolResult(success=False, output="", error="Error: content must be a string")
    full = tc.backend.resolve_path(path)
    if not tc.backend.is_authorized(full):
        return _unauthorized(full)

    if tc.trust_for(full) != "trust":
        verb = "Overwrite" if os.path.exists(full) else "Create"
        decision = await tc.confirm(
            "write_file",
            f"{verb} file {full} ({len(content)} chars)",
            {"path": full, "size": len(content)},
            full,
        )
        if not decision.approved:
            return ToolResult(success=False, output="", error="User denied the write operation.")

    loop = asyncio.get_running_loop()
    try:
        written = await loop.run_in_executor(None, tc.backend.write_file, full, content)
    except UnauthorizedPath:
        return _unauthorized(full)
    except OSError as e:
        return ToolResult(success=False, output="", error=f"Error writing file: {e}")

    artifact = {"path": written, "name": os.path.basename(written), "type": "file"}
    tc.task.artifacts.append(artifact)
    await tc.emit(AgentEvent(type=ARTIFACT_CREATED, data=artifact, task_id=tc.task.task_id))
    logger.info(f"Wrote {written} ({len(content)} chars)")
    return ToolResult(success=True, output=f"Successfully wrote to {written}")


async def list_dir(tc: ToolContext, args: Dict[str, Any]) -> ToolResult:
    path = (args.get("path") or ".").strip()
    full = tc.backend.resolve_path(path)
    loop = asyncio.get_running_loop()
    try:
        entries = await loop.run_in_executor(None, tc.backend.list_dir, full)
    except UnauthorizedPath:
        return _unauthorized(full)
    except FileNotFoundError:
        return ToolResult(success=False, output="", error=f"Error: Directory not found: {full}")
    except NotADirectoryError:
        return ToolResult(success=False, output="", error=f"Error: {full} is not a directory")
    except OSError as e:
        return ToolResult(success=False, output="", error=f"Error listing directory: {e}")
    lines = [f"[DIR] {e['name']}" if e["type"] == "directory" else f"[FILE] {e['name']}" for e in entries]
    body = "\n".join(lines) if lines else "(empty)"
    return ToolResult(success=True, output=truncate_output(f"Directory contents of {full}:\n{body}"))
