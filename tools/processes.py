"""
Registry of long-running server processes (dev/preview servers) and their ports.

Ordinary commands are never tracked here; only servers started in the
background, so they can be stopped when their task aborts or on shutdown.
"""

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Dict, List, Optional

from backend import LocalBackend

logger = logging.getLogger(__name__)


@dataclass
class ServerProcess:
    proc: asyncio.subprocess.Process
    port: int
    command: str
    cwd: str
    task_id: str
    log_path: str
    kind: str = "dev"  # dev | preview

    @property
    def running(self) -> bool:
        return self.proc.returncode is None


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        return s.connect_ex((host, port)) == 0


class ProcessRegistry:
    def __init__(self):
        self._by_port: Dict[int, ServerProcess] = {}

    def register(self, server: ServerProcess) -> None:
        previous = self._by_port.get(server.port)
        if previous is not None and previous.running:
            logger.info(f"Replacing server on port {server.port} (pid {previous.proc.pid})")
            LocalBackend.terminate(previous.proc)
        self._by_port[server.port] = server

    def get(self, port: int) -> Optional[ServerProcess]:
        return self._by_port.get(port)

    def servers(self) -> List[ServerProcess]:
        return [s for s in self._by_port.values() if s.running]

    def active_ports(self) -> List[int]:
        return sorted(p for p, s in self._by_port.items() if s.running)

    def stop_port(self, port: int) -> bool:
        server = self._by_port.pop(port, None)
        if server is None:
            return False
        LocalBackend.terminate(server.proc)
        logger.info(f"Stopped {server.kind} server on port {port} (pid {server.proc.pid})")
        return True

    def stop_for_task(self, task_id: str) -> int:
        ports = [p for p, s in self._by_port.items() if s.task_id == task_id]
        return sum(1 for p in ports if self.stop_port(p))

    def stop_all(self) -> int:
        return sum(1 for p in list(self._by_port) if self.stop_port(p))

    def retag(self, old_task_id: str, new_task_id: str) -> None:
        """Follow a task through a recovery rebind."""
        for server in self._by_port.values():
            if server.task_id == old_task_id:
                server.task_id = new_task_id
