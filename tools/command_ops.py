"""Shell tool: run_command, with background handling for dev and preview servers."""

import asyncio
import json
import logging
import os
import re
from typing import Any, Dict, Optional

from tools._common import ToolContext, ToolResult, truncate_output
from tools.processes import ServerProcess, is_port_in_use
from tools.safety import CommandClass, GateAction, evaluate_command

logger = logging.getLogger(__name__)

DEV_SERVER_RE = re.compile(
    r"run\s+(dev|start)\b|pnpm\s+(dev|start)\b|yarn\s+(dev|start)\b|npx\s+vite|vite\s|webpack.*serve",
    re.IGNORECASE,
)
PREVIEW_SERVER_RE = re.compile(r"(?:pnpm|npm|yarn)\s+(?:run\s+)?preview\b|vite\s+preview", re.IGNORECASE)
_RUN_SCRIPT_RE = re.compile(r"(?:npm|pnpm|yarn)\s+(?:run\s+)?(dev|start)\b", re.IGNORECASE)
_PORT_FLAG_RE = re.compile(r"--port\s+\d+")


def server_kind(command: str) -> Optional[str]:
    """'preview', 'dev' or None. Preview is checked first since `vite preview` also looks like vite."""
    if PREVIEW_SERVER_RE.search(command):
        return "preview"
    if DEV_SERVER_RE.search(command):
        return "dev"
    return None


def _script_uses_vite(cwd: str, script: str) -> bool:
    try:
        with open(os.path.join(cwd, "package.json"), "r", encoding="utf-8") as f:
            scripts = json.load(f).get("scripts", {})
    except (OSError, ValueError):
        return False
    return "vite" in str(scripts.get(script, ""))


def pin_dev_port(command: str, cwd: str, port: int) -> str:
    """Vite ignores PORT, so pass --port explicitly when the command ends up running vite."""
    if _PORT_FLAG_RE.search(command):
        return command
    m = _RUN_SCRIPT_RE.search(command)
    if m:
        if _script_uses_vite(cwd, m.group(1)):
            return command.rstrip() + f" -- --port {port}"
        return command
    if re.search(r"\bvite\b", command):
        return command.rstrip() + f" --port {port}"
    return command


def _read_log_tail(path: str, limit: int = 4000) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
    except OSError:
        return ""
    return text[-limit:]


async def _start_server(tc: ToolContext, command: str, cwd: str, kind: str) -> ToolResult:
    settings = tc.settings
    port = settings.preview_server_port if kind == "preview" else settings.dev_server_port
    run_command = pin_dev_port(command, cwd, port) if kind == "dev" else command
    if tc.processes is not None:
        tc.processes.stop_port(port)
    if is_port_in_use(port):
        logger.warning(f"Port {port} is held by a process this runtime did not start")

    env = dict(os.environ)
    env["BROWSER"] = "none"
    if kind == "dev":
        env["PORT"] = str(port)
    log_path = os.path.join(settings.data_dir, "logs", f"{kind}-{port}.log")
    proc = await tc.backend.spawn(run_command, cwd, log_path, env=env)
    if tc.processes is not None:
        tc.processes.register(ServerProcess(
            proc=proc, port=port, command=run_command, cwd=cwd,
            task_id=tc.task.task_id, log_path=log_path, kind=kind,
        ))

    logger.info(f"Waiting {settings.auto_heal_startup_delay}s for {kind} server on port {port}")
    await asyncio.sleep(settings.auto_heal_startup_delay)

    url = f"http://localhost:{port}"
    label = "Dev" if kind == "dev" else "Preview"
    output = (
        f"[{label} server started in background]\n\n"
        f"Command: {run_command}\nWorking directory: {cwd}\n\nPreview URL: {url}\n\n"
        f"The {label.lower()} server is running on port {port}. "
        f"Use open_browser_preview to display it in the built-in browser."
    )
    if proc.returncode is not None:
        tail = _read_log_tail(log_path)
        return ToolResult(
            success=False,
            output=tail,
            error=f"{label} server exited early with code {proc.returncode}",
        )
    if tc.on_server_started is not None:
        report = await tc.on_server_started(url, cwd, log_path)
        if report:
            output += f"\n\n{report}"
    return ToolResult(success=True, output=output)


def format_command_output(command: str, cwd: str, stdout: str, stderr: str, rc: int) -> str:
    head = f"Command executed in {cwd}:" if rc == 0 else f"Command failed in {cwd} (exit code {rc}):"
    parts = [f"{head}\n$ {command}"]
    if stdout:
        parts.append(f"STDOUT:\n{stdout}")
    if stderr:
        parts.append(f"STDERR:\n{stderr}")
    if not stdout and not stderr:
        parts.append("(no output)")
    return truncate_output("\n\n".join(parts))


async def run_command(tc: ToolContext, args: Dict[str, Any]) -> ToolResult:
    """Execute a shell command after the safety gate has let it through."""
    command = (args.get("command") or "").strip()
    if not command:
        return ToolResult(success=False, output="", error="Error: command is required")
    cwd = tc.backend.resolve_path(args.get("cwd") or tc.backend.working_directory)
    if not tc.backend.is_authorized(cwd):
        return ToolResult(success=False, output="", error=f"Error: Path {cwd} is not in an authorized folder.")
    if not os.path.isdir(cwd):
        return ToolResult(success=False, output="", error=f"Error: Working directory does not exist: {cwd}")

    decision = evaluate_command(command, tc.trust_for(cwd))
    if decision.action is GateAction.DENY:
        return ToolResult(success=False, output="", error=f"Error: Command denied ({decision.reason}).")
    if decision.action is GateAction.CONFIRM:
        dangerous = decision.command_class is CommandClass.DANGEROUS
        description = f"{'DANGEROUS: ' if dangerous else ''}Run command in {cwd}: {command}"
        answer = await tc.confirm(
            "run_command",
            description,
            {"command": command, "cwd": cwd, "classification": decision.command_class.value},
            cwd,
            allow_remembered=not dangerous,
        )
        if not answer.approved:
            return ToolResult(success=False, output="", error="User denied the command execution.")

    kind = server_kind(command)
    if kind is not None:
        return await _start_server(tc, command, cwd, kind)

    stdout, stderr, rc = await tc.backend.run_command(command, cwd=cwd, timeout=tc.settings.command_timeout)
    text = format_command_output(command, cwd, stdout, stderr, rc)
    if rc == 0:
        return ToolResult(success=True, output=text)
    return ToolResult(success=False, output="", error=text)
