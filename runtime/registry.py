"""
Task context registry: one isolated history + cancellation handle per task id.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sessions import Session, SessionStore
from .messages import Message, message_from_dict, history_to_wire

logger = logging.getLogger(__name__)

DEFAULT_TASK_ID = "default"


class TaskBusy(Exception):
    """Raised when a task id already has an active, non-stale run."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} is already running")
        self.task_id = task_id


def new_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class CancellationToken:
    """Per-task abort flag the loop can both poll and await."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class TaskContext:
    task_id: str
    history: List[Message] = field(default_factory=list)
    cancel: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    project_id: Optional[str] = None
    # Files written during this run: {path, name, type}
    artifacts: List[Dict[str, str]] = field(default_factory=list)
    continued_as: Optional[str] = None
    # Backend calls made for the current submission; carried across rebinds
    iterations: int = 0
    # Set when a rebind hands this run over to a fresh context
    successor: Optional["TaskContext"] = field(default=None, repr=False, compare=False)
    # Set when a newer submission force-reset this context as stale
    superseded: bool = False

    def touch(self) -> None:
        self.last_activity_at = time.time()

    @property
    def idle_seconds(self) -> float:
        return time.time() - self.last_activity_at

    def latest(self) -> "TaskContext":
        """The context this run is driving now, following rebinds."""
        ctx = self
        while ctx.successor is not None:
            ctx = ctx.successor
        return ctx


class TaskContextRegistry:
    """Enforces at most one active run per task id.

    Contexts are created on submission and dropped on release; the transcript
    store (if given) carries history between submissions of the same id.
    """

    def __init__(self, store: Optional[SessionStore] = None, stale_seconds: float = 60.0):
        self.store = store
        self.stale_seconds = stale_seconds
        self._active: Dict[str, TaskContext] = {}
        # old task id -> the id it continues under after a rebind
        self._forwarded: Dict[str, str] = {}

    def get(self, task_id: str) -> Optional[TaskContext]:
        return self._active.get(task_id)

    def resolve(self, task_id: str) -> Optional[TaskContext]:
        """Active context for ``task_id``, following rebinds."""
        seen = set()
        while task_id not in self._active and task_id in self._forwarded and task_id not in seen:
            seen.add(task_id)
            task_id = self._forwarded[task_id]
        return self._active.get(task_id)

    def contexts(self) -> List[TaskContext]:
        return list(self._active.values())

    def active_ids(self) -> List[str]:
        return list(self._active)

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    def acquire(self, task_id: Optional[str] = None, project_id: Optional[str] = None) -> TaskContext:
        tid = task_id or DEFAULT_TASK_ID
        existing = self._active.get(tid)
        if existing is not None:
            if existing.idle_seconds <= self.stale_seconds:
                raise TaskBusy(tid)
            logger.warning(
                f"Task {tid} looks stuck (idle {existing.idle_seconds:.0f}s > "
                f"{self.stale_seconds:.0f}s); force-resetting"
            )
            existing.cancel.cancel()
            existing.superseded = True
            self._active.pop(tid, None)

        ctx = TaskContext(task_id=tid, project_id=project_id)
        if self.store is not None:
            saved = self.store.load(tid)
            if saved is not None:
                ctx.history = [message_from_dict(m) for m in saved.history]
                ctx.project_id = project_id or saved.project_id
        self._active[tid] = ctx
        logger.info(f"Task {tid} acquired ({len(ctx.history)} messages restored)")
        return ctx

    def release(self, ctx: TaskContext, model_id: str = "") -> None:
        """Drop the context and persist its transcript. Safe to call twice.

        A context that was force-reset no longer owns its id: the replacement run
        stays registered and the stale transcript is not written over it.
        """
        if self._active.get(ctx.task_id) is ctx:
            del self._active[ctx.task_id]
        if ctx.superseded:
            logger.info(f"Task {ctx.task_id}: stale run finished after being replaced; transcript left to the new run")
            return
        self.save_transcript(ctx, model_id=model_id)

    def rebind(self, ctx: TaskContext, history: List[Message]) -> TaskContext:
        """Retire ``ctx`` and open a fresh context (new id) seeded with ``history``.

        The cancellation token carries over so an abort aimed at either id
        stops the continuation.
        """
        fresh = TaskContext(
            task_id=new_task_id(),
            history=history,
            cancel=ctx.cancel,
            project_id=ctx.project_id,
            artifacts=list(ctx.artifacts),
            iterations=ctx.iterations,
        )
        ctx.continued_as = fresh.task_id
        ctx.successor = fresh
        self._forwarded[ctx.task_id] = fresh.task_id
        self.release(ctx)
        self._active[fresh.task_id] = fresh
        logger.info(f"Task {ctx.task_id} rebound to {fresh.task_id}")
        return fresh

    def save_transcript(self, ctx: TaskContext, model_id: str = "") -> None:
        if self.store is None:
            return
        try:
            self.store.save(Session(
                session_id=ctx.task_id,
                name=ctx.task_id,
                project_id=ctx.project_id,
                model_id=model_id,
                history=history_to_wire(ctx.history),
                continued_as=ctx.continued_as,
            ))
        except OSError as e:
            logger.error(f"Failed to save transcript for {ctx.task_id}: {e}")
