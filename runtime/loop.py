"""
The conversation loop: request, stream, dispatch, repeat.

One ``ConversationLoop.run`` call drives a single TaskContext until the model
stops calling tools, the iteration cap is reached, or the task is aborted.
Retryable backend failures propagate to the caller (the recovery
controller); content-policy blocks are retried in place.
"""

import asyncio
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from bedrock_service import BedrockError, BedrockService
from config import AppConfig, RuntimeConfig
from tools.dispatch import ToolDispatcher
from .assembler import StreamAssembler
from .events import AgentEvent, HISTORY_UPDATE, EventSink
from .intent import IntentDetector
from .messages import (
    Message,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    history_to_wire,
    unmatched_tool_uses,
)
from .prompts import compose_system_prompt
from .recovery import ErrorCause, classify_error
from .registry import CancellationToken, TaskContext

logger = logging.getLogger(__name__)

SENSITIVE_RETRY_MESSAGE = (
    "[SYSTEM ERROR] Your previous response was blocked by the safety filter "
    "(Error Code 1027: output new_sensitive). \n\n"
    "This usually means the generated content contained sensitive, restricted, or unsafe material.\n\n"
    "Please generate a NEW response that:\n"
    "1. Addresses the user's request safely.\n"
    "2. Avoids the sensitive topic or phrasing that triggered the block.\n"
    "3. Acknowledges the issue briefly if necessary."
)
CANCELLED_RESULT = "Tool execution was cancelled by the user."
INTERRUPTED_RESULT = "Tool execution was interrupted."

_END = object()


class LoopState(enum.Enum):
    REQUESTING = "requesting"
    STREAMING = "streaming"
    DISPATCHING = "dispatching"
    DONE = "done"


class LoopStatus(enum.Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    CAP_REACHED = "cap_reached"


@dataclass
class LoopResult:
    status: LoopStatus
    iterations: int
    final_text: str = ""


class StreamCancelled(Exception):
    """Raised inside the stream reader when the task's cancel token fires."""


# ============================================================
# Thread -> asyncio bridge for the blocking boto3 stream
# ============================================================

async def stream_chunks(
    service: BedrockService,
    messages: List[Dict[str, Any]],
    system_prompt: Optional[str],
    tools: List[Dict[str, Any]],
    runtime_config: RuntimeConfig,
    cancel: CancellationToken,
    idle_timeout: float,
) -> AsyncIterator[Dict[str, Any]]:
    """Yield normalized chunks from a producer thread; cancellation wins every race."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    stop = threading.Event()

    def post(item: Any) -> None:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            # event loop already closed; nobody is listening
            stop.set()

    def producer() -> None:
        try:
            for chunk in service.generate_response_stream(
                messages=messages,
                system_prompt=system_prompt,
                tools=tools,
                runtime_config=runtime_config,
            ):
                if stop.is_set():
                    return
                post(chunk)
            post(_END)
        except Exception as exc:
            post(exc)

    thread = threading.Thread(target=producer, name="bedrock-stream", daemon=True)
    thread.start()
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            canceller = asyncio.ensure_future(cancel.wait())
            done, _ = await asyncio.wait(
                {getter, canceller}, timeout=idle_timeout, return_when=asyncio.FIRST_COMPLETED,
            )
            for fut in (getter, canceller):
                if not fut.done():
                    fut.cancel()
            if canceller in done or cancel.cancelled:
                raise StreamCancelled()
            if getter not in done:
                raise BedrockError(
                    f"No data from the backend for {idle_timeout:g}s", status=504, code="StreamTimeout",
                )
            item = getter.result()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item
    finally:
        stop.set()


# ============================================================
# Loop
# ============================================================

class ConversationLoop:
    def __init__(
        self,
        service: BedrockService,
        dispatcher: ToolDispatcher,
        settings: AppConfig,
        intent_detector: Optional[IntentDetector] = None,
        system_prompt: Optional[str] = None,
    ):
        self.service = service
        self.dispatcher = dispatcher
        self.settings = settings
        self.intent_detector = intent_detector or IntentDetector()
        self.system_prompt = system_prompt
        self.states: Dict[str, LoopState] = {}

    def state_of(self, task_id: str) -> LoopState:
        return self.states.get(task_id, LoopState.DONE)

    async def run(self, ctx: TaskContext, emit: EventSink, runtime_config: RuntimeConfig) -> LoopResult:
        try:
            return await self._run(ctx, emit, runtime_config)
        finally:
            self.states.pop(ctx.task_id, None)

    async def _run(self, ctx: TaskContext, emit: EventSink, runtime_config: RuntimeConfig) -> LoopResult:
        cap = self.settings.max_tool_iterations
        reminders = 0
        final_text = ""

        while True:
            self.states[ctx.task_id] = LoopState.REQUESTING
            if ctx.cancel.cancelled:
                return await self._abort(ctx, emit)
            if ctx.iterations >= cap:
                logger.warning(f"Task {ctx.task_id} hit the iteration cap ({cap})")
                await self._pair_dangling(ctx, emit, CANCELLED_RESULT)
                return LoopResult(LoopStatus.CAP_REACHED, ctx.iterations, final_text)
            ctx.iterations += 1
            ctx.touch()

            registry = await self.dispatcher.build_registry()
            system_prompt = self.system_prompt or compose_system_prompt(
                self.dispatcher.folders.paths(), registry.names(),
            )

            self.states[ctx.task_id] = LoopState.STREAMING
            try:
                blocks = await self._stream_response(ctx, emit, system_prompt, registry.schemas(), runtime_config)
            except StreamCancelled:
                return await self._abort(ctx, emit)
            except Exception as exc:
                if classify_error(exc).cause is ErrorCause.SENSITIVE_CONTENT:
                    logger.warning(f"Task {ctx.task_id}: response blocked as sensitive; asking the model to retry")
                    await self._pair_dangling(ctx, emit, INTERRUPTED_RESULT)
                    await self._append(ctx, emit, Message.user_text(SENSITIVE_RETRY_MESSAGE))
                    continue
                raise

            if not blocks:
                logger.info(f"Task {ctx.task_id}: empty response, stopping")
                return LoopResult(LoopStatus.COMPLETED, ctx.iterations, final_text)

            assistant = Message(role="assistant", content=blocks)
            await self._append(ctx, emit, assistant)
            final_text = assistant.text or final_text
            tool_uses = assistant.tool_uses

            if not tool_uses:
                reminder = None
                if reminders < self.settings.max_intent_reminders:
                    reminder = self.intent_detector.reminder_for(ctx.history, ctx.artifacts)
                if reminder:
                    reminders += 1
                    logger.info(f"Task {ctx.task_id}: project requested but nothing written; reminder {reminders}")
                    await self._append(ctx, emit, Message.user_text(reminder))
                    continue
                return LoopResult(LoopStatus.COMPLETED, ctx.iterations, final_text)

            self.states[ctx.task_id] = LoopState.DISPATCHING
            results = await self._dispatch_all(ctx, emit, tool_uses, registry)
            await self._append(ctx, emit, Message(role="user", content=results))
            if ctx.cancel.cancelled:
                return await self._abort(ctx, emit)

    # ------------------------------------------------------------------

    async def _stream_response(
        self,
        ctx: TaskContext,
        emit: EventSink,
        system_prompt: str,
        tools: List[Dict[str, Any]],
        runtime_config: RuntimeConfig,
    ) -> List[Any]:
        assembler = StreamAssembler()
        chunks = stream_chunks(
            self.service,
            history_to_wire(ctx.history),
            system_prompt,
            tools,
            runtime_config,
            ctx.cancel,
            self.settings.stream_idle_timeout,
        )
        try:
            async for chunk in chunks:
                ctx.touch()
                for event in assembler.feed(chunk):
                    event.task_id = ctx.task_id
                    await emit(event)
        except BaseException:
            # Keep whatever arrived, marked as interrupted, then let the caller decide.
            if assembler.started:
                partial = [b for b in assembler.interrupt() if not (isinstance(b, ThinkingBlock) and not b.signature)]
                await self._append(ctx, emit, Message(role="assistant", content=partial))
            raise
        blocks = assembler.finish()
        if assembler.stop_reason == "max_tokens" and assembler.tool_uses:
            logger.warning(f"Task {ctx.task_id}: response hit max_tokens inside a tool call")
        return blocks

    async def _dispatch_all(self, ctx: TaskContext, emit: EventSink, tool_uses: List[ToolUseBlock], registry) -> List[ToolResultBlock]:
        tc = self.dispatcher.tool_context(ctx, emit)
        results: List[ToolResultBlock] = []
        for tool_use in tool_uses:
            if ctx.cancel.cancelled:
                results.append(ToolResultBlock(tool_use.id, CANCELLED_RESULT, is_error=True))
                continue
            results.append(await self.dispatcher.dispatch(tool_use, registry, tc))
            ctx.touch()
        return results

    async def _append(self, ctx: TaskContext, emit: EventSink, message: Message) -> None:
        ctx.history.append(message)
        ctx.touch()
        await emit(AgentEvent(
            type=HISTORY_UPDATE,
            data={"history": history_to_wire(ctx.history)},
            task_id=ctx.task_id,
        ))

    async def _pair_dangling(self, ctx: TaskContext, emit: EventSink, text: str) -> None:
        dangling = unmatched_tool_uses(ctx.history)
        if dangling:
            await self._append(ctx, emit, Message(
                role="user",
                content=[ToolResultBlock(tu.id, text, is_error=True) for tu in dangling],
            ))

    async def _abort(self, ctx: TaskContext, emit: EventSink) -> LoopResult:
        logger.info(f"Task {ctx.task_id} aborted after {ctx.iterations} iteration(s)")
        await self._pair_dangling(ctx, emit, CANCELLED_RESULT)
        return LoopResult(LoopStatus.ABORTED, ctx.iterations)
