"""
One AgentRuntime per client session, with idle cleanup.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from .core import AgentRuntime

logger = logging.getLogger(__name__)


class RuntimeManager:
    def __init__(
        self,
        factory: Callable[[str], AgentRuntime],
        idle_seconds: float = 1800.0,
        sweep_seconds: float = 600.0,
    ):
        self.factory = factory
        self.idle_seconds = idle_seconds
        self.sweep_seconds = sweep_seconds
        self._runtimes: Dict[str, AgentRuntime] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._runtimes)

    def session_ids(self) -> List[str]:
        return list(self._runtimes)

    def get(self, session_id: str) -> Optional[AgentRuntime]:
        return self._runtimes.get(session_id)

    def get_or_create(self, session_id: str) -> AgentRuntime:
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            runtime = self.factory(session_id)
            self._runtimes[session_id] = runtime
            logger.info(f"Runtime created for session {session_id} ({len(self._runtimes)} active)")
        runtime.touch()
        return runtime

    async def close(self, session_id: str) -> bool:
        runtime = self._runtimes.pop(session_id, None)
        if runtime is None:
            return False
        await runtime.shutdown()
        logger.info(f"Runtime for session {session_id} closed")
        return True

    async def sweep(self, now: Optional[float] = None) -> int:
        """Close runtimes idle longer than ``idle_seconds`` that have no running task."""
        now = now if now is not None else time.time()
        stale = [
            sid for sid, rt in self._runtimes.items()
            if now - rt.last_activity > self.idle_seconds and not rt.registry.active_ids()
        ]
        for sid in stale:
            await self.close(sid)
        if stale:
            logger.info(f"Idle sweep closed {len(stale)} runtime(s)")
        return len(stale)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Idle sweep failed")

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.ensure_future(self._sweep_forever())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for sid in list(self._runtimes):
            await self.close(sid)
