"""
Backend failure classification and context-rebind recovery.

Transient failures (throttling, outages, context overflow) are survived by
compacting the conversation into a single continuation request and carrying
on under a fresh task id. Content-policy blocks are retried in place by the
conversation loop; everything else is surfaced to the user.
"""

import asyncio
import enum
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol

from bedrock_service import BedrockError, bedrock_error_from
from sessions import ProjectStore
from .events import AgentEvent, CONTEXT_SWITCHED, HISTORY_UPDATE, EventSink
from .messages import (
    ImageBlock,
    Message,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from .registry import TaskContext, TaskContextRegistry

logger = logging.getLogger(__name__)


class ErrorCause(enum.Enum):
    RATE_LIMITED = "RateLimited"
    CONTEXT_OVERFLOW = "ContextOverflow"
    SERVER_ERROR = "ServerError"
    SENSITIVE_CONTENT = "SensitiveContent"
    AUTH = "Auth"
    UNKNOWN = "Unknown"


RETRYABLE_CAUSES = (ErrorCause.RATE_LIMITED, ErrorCause.CONTEXT_OVERFLOW, ErrorCause.SERVER_ERROR)


@dataclass(frozen=True)
class ErrorClassification:
    retryable: bool
    cause: ErrorCause


_CONTEXT_OVERFLOW_RE = re.compile(
    r"input is too long|prompt is too long|too many (input )?tokens|context (window|length)|maximum context",
    re.IGNORECASE,
)
_AUTH_CODES = {
    "AccessDeniedException",
    "UnrecognizedClientException",
    "ExpiredTokenException",
    "InvalidSignatureException",
    "NoCredentials",
}
_SERVER_CODES = {
    "ConnectionError",
    "StreamTimeout",
    "ModelStreamErrorException",
    "modelStreamErrorException",
    "ModelTimeoutException",
}


def is_sensitive_content(err: BedrockError) -> bool:
    text = f"{err.code} {err.message}"
    return err.status == 500 and ("sensitive" in text.lower() or "1027" in text)


def classify_error(exc: BaseException) -> ErrorClassification:
    """Map any backend failure onto a cause and whether a rebind may fix it."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClassification(True, ErrorCause.SERVER_ERROR)
    err = bedrock_error_from(exc)
    status = err.status

    if is_sensitive_content(err):
        cause = ErrorCause.SENSITIVE_CONTENT
    elif _CONTEXT_OVERFLOW_RE.search(err.message or ""):
        cause = ErrorCause.CONTEXT_OVERFLOW
    elif status == 429 or "throttl" in err.code.lower():
        cause = ErrorCause.RATE_LIMITED
    elif status in (401, 403) or err.code in _AUTH_CODES:
        cause = ErrorCause.AUTH
    elif (status is not None and status >= 500) or err.code in _SERVER_CODES:
        cause = ErrorCause.SERVER_ERROR
    else:
        cause = ErrorCause.UNKNOWN
    return ErrorClassification(cause in RETRYABLE_CAUSES, cause)


def user_message(exc: BaseException) -> str:
    """Actionable text for a failure that ends the run."""
    err = bedrock_error_from(exc)
    status = err.status
    detail = err.message or ""
    if is_sensitive_content(err):
        return "AI provider error: the generated content was flagged as sensitive and blocked by the provider."
    if status == 400 and "tools[" in detail:
        return (
            "Configuration error: a plugin tool name is not in a valid format.\n\n"
            f"Details: {detail}\n\n"
            "This usually means a plugin server returned tool names with unsupported characters. Try:\n"
            "1. Disabling the offending plugin server\n"
            "2. Reporting the problem to the plugin's maintainer\n\n"
            "Error code: 400"
        )
    if status == 400:
        return (
            f"Request error (400): {detail or 'Unknown error'}\n\n"
            "Please check:\n- The API key is correct\n- The endpoint URL is valid\n- The model id is correct"
        )
    if status in (401, 403):
        return (
            f"Authentication failed ({status}): the API key or AWS credentials are invalid or expired.\n\n"
            "Please check your credentials configuration."
        )
    if status == 429:
        return "Too many requests (429): the API rate limit was exceeded.\n\nPlease try again later or raise your quota."
    if status == 500:
        return f"Server error (500): the AI provider ran into a problem.\n\n{detail or 'Please try again later.'}"
    if status == 503:
        return "Service unavailable (503): the AI service cannot be reached right now.\n\nPlease try again later or check the service status."
    prefix = f"[{status}] " if status else ""
    return f"{prefix}{detail or 'An unknown error occurred'}"


# ============================================================
# History compaction
# ============================================================

class Summarizer(Protocol):
    def summarize(self, messages: List[Message]) -> List[str]:
        """One bullet line per message."""
        ...


def _block_excerpt(block) -> str:
    if isinstance(block, TextBlock):
        return block.text
    if isinstance(block, ToolUseBlock):
        target = block.input.get("path") or block.input.get("command") or block.input.get("url") or ""
        return f"[called {block.name}{' ' + str(target) if target else ''}]"
    if isinstance(block, ToolResultBlock):
        return f"[{'error' if block.is_error else 'result'}: {block.content}]"
    if isinstance(block, ImageBlock):
        return "[image]"
    return ""


class ExcerptSummarizer:
    """Cheap, model-free summary: the first characters of each message."""

    def __init__(self, max_chars: int = 200):
        self.max_chars = max_chars

    def summarize(self, messages: List[Message]) -> List[str]:
        bullets = []
        for msg in messages:
            parts = [_block_excerpt(b) for b in msg.content if not isinstance(b, ThinkingBlock)]
            text = " ".join(" ".join(p.split()) for p in parts if p)
            if not text:
                continue
            bullet = f"- {msg.role}: {text}"
            if len(bullet) > self.max_chars:
                bullet = bullet[:self.max_chars - 3] + "..."
            bullets.append(bullet)
        return bullets


def _last_request_index(history: List[Message]) -> Optional[int]:
    for idx in range(len(history) - 1, -1, -1):
        msg = history[idx]
        if msg.role == "user" and not msg.tool_results and msg.text:
            return idx
    return None


def condense_history(history: List[Message], summarizer: Summarizer, old_task_id: str = "") -> List[Message]:
    """Fold the conversation into one user message: bullets, then the full latest request."""
    idx = _last_request_index(history)
    if idx is None:
        request = Message(role="user", content=[TextBlock("Please continue with the previous task.")])
        others = list(history)
    else:
        request = history[idx]
        others = history[:idx] + history[idx + 1:]

    bullets = summarizer.summarize(others)
    images = [b for b in request.content if isinstance(b, ImageBlock)]
    if not bullets:
        return [Message(role="user", content=images + [TextBlock(request.text)])]

    header = f"[Context continued from task {old_task_id}]" if old_task_id else "[Context continued]"
    text = (
        f"{header}\nSummary of the conversation so far:\n"
        + "\n".join(bullets)
        + f"\n\nCurrent request:\n{request.text}"
    )
    return [Message(role="user", content=images + [TextBlock(text)])]


# ============================================================
# Controller
# ============================================================

class RecoveryAction(enum.Enum):
    REBIND = "rebind"
    STOP_WITH_CAVEAT = "stop_with_caveat"
    FATAL = "fatal"


@dataclass
class RecoveryDecision:
    action: RecoveryAction
    classification: ErrorClassification
    message: str = ""


class RecoveryController:
    def __init__(
        self,
        registry: TaskContextRegistry,
        projects: Optional[ProjectStore] = None,
        processes=None,
        summarizer: Optional[Summarizer] = None,
        max_recoveries: int = 3,
    ):
        self.registry = registry
        self.projects = projects
        self.processes = processes
        self.summarizer = summarizer or ExcerptSummarizer()
        self.max_recoveries = max_recoveries

    def decide(self, exc: BaseException, ctx: TaskContext, recoveries: int) -> RecoveryDecision:
        classification = classify_error(exc)
        logger.warning(f"Task {ctx.task_id} backend failure: {classification.cause.value} ({exc})")
        if not classification.retryable:
            return RecoveryDecision(RecoveryAction.FATAL, classification, user_message(exc))
        if ctx.artifacts:
            names = ", ".join(a["name"] for a in ctx.artifacts[:5])
            return RecoveryDecision(
                RecoveryAction.STOP_WITH_CAVEAT,
                classification,
                f"Finished with a caveat: the backend failed ({classification.cause.value}) after files "
                f"were written ({names}). Stopped instead of retrying so no work is repeated; "
                f"send a follow-up message to continue.",
            )
        if recoveries >= self.max_recoveries:
            return RecoveryDecision(
                RecoveryAction.FATAL,
                classification,
                f"Gave up after {recoveries} recovery attempts.\n\n{user_message(exc)}",
            )
        return RecoveryDecision(RecoveryAction.REBIND, classification)

    async def rebind(self, ctx: TaskContext, emit: EventSink, cause: Optional[ErrorCause] = None) -> TaskContext:
        """Continue ``ctx`` under a new task id with a compacted history."""
        old_id = ctx.task_id
        condensed = condense_history(ctx.history, self.summarizer, old_id)
        fresh = self.registry.rebind(ctx, condensed)
        if self.projects is not None and ctx.project_id:
            self.projects.rebind_task(ctx.project_id, old_id, fresh.task_id)
        if self.processes is not None:
            self.processes.retag(old_id, fresh.task_id)
        reason = f" after {cause.value}" if cause else ""
        await emit(AgentEvent(
            type=CONTEXT_SWITCHED,
            content=f"Continuing in a new session{reason}...",
            data={"old_task_id": old_id, "new_task_id": fresh.task_id},
            task_id=fresh.task_id,
        ))
        await emit(AgentEvent(
            type=HISTORY_UPDATE,
            data={"history": [m.to_dict() for m in fresh.history]},
            task_id=fresh.task_id,
        ))
        return fresh
