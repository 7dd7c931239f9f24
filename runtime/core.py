"""
AgentRuntime: the facade a host (the web bridge, a test) drives.

Wires the registry, conversation loop, dispatcher, recovery controller and
stores together and exposes the four inbound commands: submit, abort,
respond_to_confirmation and update_runtime_config.
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional

from backend import Backend, LocalBackend
from bedrock_service import BedrockService
from config import AppConfig, RuntimeConfig, app_config
from sessions import FolderStore, PermissionStore, ProjectStore, SessionStore
from tools.dispatch import ToolDispatcher
from tools.processes import ProcessRegistry
from tools.providers import PluginBridge, PluginClient, Skill, SkillProvider
from .autoheal import AutoHealLoop
from .confirmations import ConfirmationTable
from .events import ABORTED, DONE, ERROR, HISTORY_UPDATE, AgentEvent, EventSink
from .intent import IntentDetector
from .loop import ConversationLoop, LoopStatus
from .messages import compose_user_message, history_to_wire, repair_history
from .recovery import ExcerptSummarizer, RecoveryAction, RecoveryController, Summarizer
from .registry import TaskContext, TaskContextRegistry

logger = logging.getLogger(__name__)


class AgentRuntime:
    """One user's runtime: any number of tasks, each with its own history."""

    def __init__(
        self,
        settings: Optional[AppConfig] = None,
        runtime_config: Optional[RuntimeConfig] = None,
        service: Optional[BedrockService] = None,
        backend: Optional[Backend] = None,
        data_dir: Optional[str] = None,
        skills: Optional[SkillProvider] = None,
        plugins: Optional[PluginBridge] = None,
        intent_detector: Optional[IntentDetector] = None,
        summarizer: Optional[Summarizer] = None,
        system_prompt: Optional[str] = None,
        open_preview=None,
    ):
        self.settings = settings or app_config
        self.data_dir = os.path.expanduser(data_dir or self.settings.data_dir)
        self.runtime_config = runtime_config or RuntimeConfig.from_env()
        self.service = service or BedrockService(self.runtime_config)

        self.sessions = SessionStore(os.path.join(self.data_dir, "sessions"))
        self.projects = ProjectStore(os.path.join(self.data_dir, "projects.json"))
        self.folders = FolderStore(
            os.path.join(self.data_dir, "folders.json"),
            initial=self.settings.authorized_folders,
            default_trust=self.settings.default_trust_level,
        )
        self.permissions = PermissionStore(os.path.join(self.data_dir, "permissions.json"))
        self.backend = backend or LocalBackend(self.folders.paths)

        self.registry = TaskContextRegistry(self.sessions, stale_seconds=self.settings.task_stale_seconds)
        self.confirmations = ConfirmationTable()
        self.processes = ProcessRegistry()
        self.dispatcher = ToolDispatcher(
            backend=self.backend,
            settings=self.settings,
            confirmations=self.confirmations,
            folders=self.folders,
            permissions=self.permissions,
            processes=self.processes,
            skills=skills,
            plugins=plugins,
            auto_heal=AutoHealLoop(self.backend, self.settings),
            open_preview=open_preview,
        )
        self.loop = ConversationLoop(
            self.service, self.dispatcher, self.settings,
            intent_detector=intent_detector, system_prompt=system_prompt,
        )
        self.recovery = RecoveryController(
            self.registry,
            projects=self.projects,
            processes=self.processes,
            summarizer=summarizer or ExcerptSummarizer(self.settings.summary_excerpt_chars),
            max_recoveries=self.settings.max_recoveries,
        )
        self._listeners: List[EventSink] = []
        self.last_activity = time.time()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def add_listener(self, sink: EventSink) -> None:
        self._listeners.append(sink)

    def remove_listener(self, sink: EventSink) -> None:
        if sink in self._listeners:
            self._listeners.remove(sink)

    async def emit(self, event: AgentEvent) -> None:
        for sink in list(self._listeners):
            try:
                await sink(event)
            except Exception as e:
                logger.warning(f"Listener failed on {event.type}: {e}")

    def touch(self) -> None:
        self.last_activity = time.time()

    # ------------------------------------------------------------------
    # Host-facing setup
    # ------------------------------------------------------------------

    def authorize_folder(self, path: str, trust_level: Optional[str] = None) -> None:
        self.folders.add(path, trust_level)

    def add_skill(self, skill: Skill) -> str:
        return self.dispatcher.skills.add(skill)

    def add_plugin_server(self, name: str, client: PluginClient) -> None:
        self.dispatcher.plugins.add_server(name, client)

    # ------------------------------------------------------------------
    # Inbound commands
    # ------------------------------------------------------------------

    async def submit(
        self,
        text: str,
        images: Optional[List[str]] = None,
        task_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> str:
        """Run one user turn to completion. Returns the effective task id.

        Raises TaskBusy when ``task_id`` already has a live run.
        """
        message = compose_user_message(text, images)
        if not message.content:
            raise ValueError("Cannot submit an empty message")

        ctx = self.registry.acquire(task_id, project_id)
        self.touch()
        rc = self.runtime_config
        outcome: Dict[str, Any] = {"status": "failed"}
        try:
            repaired = repair_history(ctx.history)
            if repaired:
                logger.warning(f"Task {ctx.task_id}: paired {repaired} orphaned tool call(s) from an earlier run")
            if ctx.project_id:
                self.projects.ensure_task(ctx.project_id, ctx.task_id, title=text)
            ctx.history.append(message)
            await self.emit(AgentEvent(
                type=HISTORY_UPDATE,
                data={"history": history_to_wire(ctx.history)},
                task_id=ctx.task_id,
            ))
            outcome = await self._drive(ctx, rc)
        finally:
            # only the context this run owns; a stale reset may have handed the id to another run
            ctx = ctx.latest()
            self.registry.release(ctx, model_id=rc.model_id)
            self.touch()
            await self._emit_done(ctx, outcome)
        return ctx.task_id

    async def _drive(self, ctx: TaskContext, rc: RuntimeConfig) -> Dict[str, Any]:
        """Loop plus recovery. Returns the outcome fields for the ``done`` notification."""
        recoveries = 0
        while True:
            try:
                result = await self.loop.run(ctx, self.emit, rc)
            except Exception as exc:
                decision = self.recovery.decide(exc, ctx, recoveries)
                if decision.action is RecoveryAction.REBIND:
                    recoveries += 1
                    ctx = await self.recovery.rebind(ctx, self.emit, decision.classification.cause)
                    continue
                if decision.action is RecoveryAction.STOP_WITH_CAVEAT:
                    self._record_status(ctx, "completed")
                    return {"status": "completed", "content": decision.message, "caveat": True}
                logger.error(f"Task {ctx.task_id} failed: {decision.classification.cause.value}: {exc}")
                self._record_status(ctx, "failed")
                await self.emit(AgentEvent(
                    type=ERROR,
                    content=decision.message,
                    data={"task_id": ctx.task_id, "cause": decision.classification.cause.value},
                    task_id=ctx.task_id,
                ))
                return {"status": "failed", "cause": decision.classification.cause.value}

            if result.status is LoopStatus.ABORTED:
                self._record_status(ctx, "aborted")
                return {"status": "aborted"}
            self._record_status(ctx, "completed")
            return {"status": result.status.value, "content": result.final_text}

    async def _emit_done(self, ctx: TaskContext, outcome: Dict[str, Any]) -> None:
        """One ``done`` per submission, whatever the outcome, under the effective task id."""
        data = {k: v for k, v in outcome.items() if k != "content"}
        data.update(task_id=ctx.task_id, iterations=ctx.iterations, artifacts=list(ctx.artifacts))
        await self.emit(AgentEvent(type=DONE, content=outcome.get("content", ""), data=data, task_id=ctx.task_id))

    def _record_status(self, ctx: TaskContext, status: str) -> None:
        if ctx.project_id:
            self.projects.set_task_status(ctx.project_id, ctx.task_id, status)

    async def abort(self, task_id: Optional[str] = None) -> int:
        """Cancel one task (following rebinds) or, with no id, every active task."""
        if task_id:
            ctx = self.registry.resolve(task_id)
            targets = [ctx] if ctx is not None else []
        else:
            targets = self.registry.contexts()
        for ctx in targets:
            ctx.cancel.cancel()
            denied = self.confirmations.deny_all(ctx.task_id)
            stopped = self.processes.stop_for_task(ctx.task_id)
            logger.info(f"Abort {ctx.task_id}: {denied} confirmation(s) denied, {stopped} server(s) stopped")
            await self.emit(AgentEvent(type=ABORTED, data={"task_id": ctx.task_id}, task_id=ctx.task_id))
        return len(targets)

    def respond_to_confirmation(self, confirmation_id: str, approved: bool, remember: bool = False) -> bool:
        self.touch()
        resolved = self.confirmations.resolve(confirmation_id, approved, remember)
        if not resolved:
            logger.warning(f"Confirmation {confirmation_id} is unknown or already resolved")
        return resolved

    def update_runtime_config(
        self,
        model: Optional[str] = None,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> RuntimeConfig:
        """Swap backend settings; running loops finish with the config they started with."""
        self.runtime_config = self.runtime_config.updated(
            model_id=model, endpoint_url=endpoint, api_key=api_key, max_tokens=max_tokens,
        )
        self.service.reconfigure(self.runtime_config)
        logger.info(f"Runtime config updated: model={self.runtime_config.model_id}")
        return self.runtime_config

    def status(self) -> Dict[str, Any]:
        return {
            "model_id": self.runtime_config.model_id,
            "active_tasks": [
                {"task_id": c.task_id, "state": self.loop.state_of(c.task_id).value, "idle": round(c.idle_seconds, 1)}
                for c in self.registry.contexts()
            ],
            "pending_confirmations": len(self.confirmations),
            "servers": self.processes.active_ports(),
        }

    async def shutdown(self) -> None:
        await self.abort()
        self.confirmations.deny_all()
        stopped = self.processes.stop_all()
        logger.info(f"Runtime shut down ({stopped} server(s) stopped)")
