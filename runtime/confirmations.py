"""
Correlation table for interactive confirmations.

Each request gets a unique id and a future. The table resolves it exactly
once (user answer, abort, or timeout) and removes it in the same step, so a
late or duplicate answer is simply reported as unknown.
"""

import asyncio
import enum
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .registry import CancellationToken

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


@dataclass
class Decision:
    outcome: Outcome
    remember: bool = False

    @property
    def approved(self) -> bool:
        return self.outcome is Outcome.APPROVED


@dataclass
class PendingConfirmation:
    id: str
    task_id: str
    tool: str
    description: str
    args: Dict[str, Any] = field(default_factory=dict)
    future: Optional[asyncio.Future] = None

    def request_payload(self) -> Dict[str, Any]:
        return {"id": self.id, "tool": self.tool, "description": self.description, "args": self.args}


def new_confirmation_id() -> str:
    return f"confirm-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class ConfirmationTable:
    def __init__(self):
        self._pending: Dict[str, PendingConfirmation] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def pending_for(self, task_id: str) -> List[PendingConfirmation]:
        return [p for p in self._pending.values() if p.task_id == task_id]

    def open(self, task_id: str, tool: str, description: str, args: Optional[Dict[str, Any]] = None) -> PendingConfirmation:
        cid = new_confirmation_id()
        while cid in self._pending:
            cid = new_confirmation_id()
        pending = PendingConfirmation(
            id=cid,
            task_id=task_id,
            tool=tool,
            description=description,
            args=dict(args or {}),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[cid] = pending
        return pending

    def _settle(self, cid: str, decision: Decision) -> bool:
        pending = self._pending.pop(cid, None)
        if pending is None or pending.future is None or pending.future.done():
            return False
        pending.future.set_result(decision)
        logger.info(f"Confirmation {cid} ({pending.tool}) resolved: {decision.outcome.value}")
        return True

    def resolve(self, cid: str, approved: bool, remember: bool = False) -> bool:
        """Answer a confirmation. Returns False for unknown or already-resolved ids."""
        outcome = Outcome.APPROVED if approved else Outcome.DENIED
        return self._settle(cid, Decision(outcome, remember=remember and approved))

    def deny_all(self, task_id: Optional[str] = None) -> int:
        """Resolve every pending confirmation (of one task, or all) as denied."""
        ids = [p.id for p in self._pending.values() if task_id is None or p.task_id == task_id]
        return sum(1 for cid in ids if self._settle(cid, Decision(Outcome.DENIED)))

    async def wait(
        self,
        pending: PendingConfirmation,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> Decision:
        """Suspend until the confirmation resolves, the task aborts, or the timeout passes."""
        waiters = [pending.future]
        cancel_task = None
        if cancel is not None:
            if cancel.cancelled:
                self._settle(pending.id, Decision(Outcome.DENIED))
                return pending.future.result()
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters.append(cancel_task)
        try:
            await asyncio.wait(waiters, timeout=timeout or None, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
        if not pending.future.done():
            if cancel is not None and cancel.cancelled:
                self._settle(pending.id, Decision(Outcome.DENIED))
            else:
                logger.warning(f"Confirmation {pending.id} expired after {timeout}s")
                self._settle(pending.id, Decision(Outcome.EXPIRED))
        return pending.future.result()
