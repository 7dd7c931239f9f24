"""
Shared mutable state for the web server.

The runtime manager lives here so route modules and the CLI share one
instance. Import from web.state to read/replace it.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

from config import app_config
from runtime.core import AgentRuntime
from runtime.manager import RuntimeManager

logger = logging.getLogger(__name__)

# ============================================================
# Globals
# ============================================================

_manager: Optional[RuntimeManager] = None


def _default_runtime(session_id: str) -> AgentRuntime:
    return AgentRuntime()


def get_manager() -> RuntimeManager:
    global _manager
    if _manager is None:
        _manager = RuntimeManager(
            _default_runtime,
            idle_seconds=app_config.idle_runtime_seconds,
            sweep_seconds=app_config.idle_sweep_seconds,
        )
    return _manager


def set_manager(manager: Optional[RuntimeManager]) -> None:
    global _manager
    _manager = manager


# ============================================================
# WebSocket reference wrapper (for disconnect-safe sends)
# ============================================================

class _WSRef:
    """Mutable WebSocket reference that silently drops sends when disconnected.

    Runtime listeners keep a reference to this wrapper rather than the socket,
    so a task that outlives its client just stops producing output.
    """
    __slots__ = ("ws",)

    def __init__(self, ws: Optional[WebSocket]):
        self.ws: Optional[WebSocket] = ws

    async def send_json(self, data: Dict[str, Any]) -> None:
        _ws = self.ws
        if _ws is None:
            return
        try:
            await _ws.send_json(data)
        except Exception as e:
            logger.debug(f"WebSocket send failed, marking disconnected: {e}")
            self.ws = None
