"""
Backend abstraction for file and command operations.
File operations are plain blocking calls (callers run them in an executor);
commands run as asyncio subprocesses so the event loop never blocks on them.
"""

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from typing import Callable, List, Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)


class UnauthorizedPath(ValueError):
    """Raised when a path lies outside every authorized folder."""

    def __init__(self, path: str):
        super().__init__(f"Path {path} is not in an authorized folder.")
        self.path = path


class Backend(ABC):
    """Abstract backend for file system and command operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Default directory for relative paths and commands."""

    @abstractmethod
    def authorized_roots(self) -> List[str]:
        """Folders the agent may touch."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, type}."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> str:
        """Write content to a file (create dirs as needed). Returns the resolved path."""

    @abstractmethod
    async def run_command(self, command: str, cwd: str, timeout: float = 60) -> Tuple[str, str, int]:
        """Run a shell command. Returns (stdout, stderr, returncode)."""

    @abstractmethod
    async def spawn(
        self, command: str, cwd: str, log_path: str, env: Optional[Dict[str, str]] = None
    ) -> asyncio.subprocess.Process:
        """Start a long-running process whose output goes to log_path."""

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        path = os.path.expanduser(path or ".")
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_directory, path))

    def is_authorized(self, resolved: str) -> bool:
        real = os.path.realpath(resolved)
        for root in self.authorized_roots():
            root_real = os.path.realpath(root)
            if real == root_real or real.startswith(root_real.rstrip(os.sep) + os.sep):
                return True
        return False

    def ensure_authorized(self, resolved: str) -> None:
        if not self.is_authorized(resolved):
            raise UnauthorizedPath(resolved)

    def root_for(self, resolved: str) -> Optional[str]:
        """The longest authorized root containing ``resolved``."""
        real = os.path.realpath(resolved)
        best = None
        for root in self.authorized_roots():
            root_real = os.path.realpath(root)
            if real == root_real or real.startswith(root_real.rstrip(os.sep) + os.sep):
                if best is None or len(root_real) > len(os.path.realpath(best)):
                    best = root
        return best


# ============================================================
# Local Backend
# ============================================================

def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


class LocalBackend(Backend):
    """Backend that operates on the local filesystem.

    ``roots`` is a callable so folder authorization changes made by the host
    take effect on the next tool call without rebuilding the backend.
    """

    def __init__(self, roots: Callable[[], List[str]], working_directory: Optional[str] = None):
        self._roots = roots
        self._working_directory = os.path.abspath(working_directory) if working_directory else None

    @property
    def working_directory(self) -> str:
        if self._working_directory:
            return self._working_directory
        roots = self.authorized_roots()
        return os.path.abspath(roots[0]) if roots else os.getcwd()

    def authorized_roots(self) -> List[str]:
        return [os.path.abspath(os.path.expanduser(r)) for r in self._roots()]

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self.resolve_path(path)
        self.ensure_authorized(full)
        entries = []
        for name in sorted(os.listdir(full)):
            child = os.path.join(full, name)
            entries.append({"name": name, "type": "directory" if os.path.isdir(child) else "file"})
        return entries

    def read_file(self, path: str) -> str:
        full = self.resolve_path(path)
        self.ensure_authorized(full)
        with open(full, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> str:
        full = self.resolve_path(path)
        self.ensure_authorized(full)
        parent = os.path.dirname(full)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)
        return full

    async def run_command(self, command: str, cwd: str, timeout: float = 60) -> Tuple[str, str, int]:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,  # own process group for clean kill
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            _kill_process_group(proc)
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=5)
            except asyncio.TimeoutError:
                stdout, stderr = b"", b""
            err_text = stderr.decode("utf-8", errors="replace")
            return (
                stdout.decode("utf-8", errors="replace"),
                f"Command timed out after {timeout:g}s\n{err_text}",
                -1,
            )
        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            proc.returncode if proc.returncode is not None else -1,
        )

    async def spawn(
        self, command: str, cwd: str, log_path: str, env: Optional[Dict[str, str]] = None
    ) -> asyncio.subprocess.Process:
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        with open(log_path, "wb") as log:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                stdout=log,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
                start_new_session=True,
            )
        logger.info(f"Spawned long-running process pid={proc.pid}: {command}")
        return proc

    @staticmethod
    def terminate(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            _kill_process_group(proc)
