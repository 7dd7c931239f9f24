"""
Streaming response assembler.

Reduces the normalized chunk stream of one backend response (see
``BedrockService.generate_response_stream``) into an ordered list of content
blocks. The reduction is a small state machine: every (state, chunk type)
pair is looked up in ``TRANSITIONS``; pairs not listed are stray events and
are ignored.
"""

import enum
import json
import logging
from typing import Dict, List, Optional, Tuple

from .events import AgentEvent, STREAM_TOKEN, STREAM_THINKING
from .messages import ContentBlock, TextBlock, ThinkingBlock, ToolUseBlock

logger = logging.getLogger(__name__)

INTERRUPTED_MARKER = "[interrupted]"
INVALID_JSON_MARKER = "Invalid JSON input"


class AssemblerState(enum.Enum):
    IDLE = "idle"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_INPUT = "tool_input"
    FINISHED = "finished"


S = AssemblerState

# (state, chunk type) -> (handler, next state)
TRANSITIONS: Dict[Tuple[AssemblerState, str], Tuple[str, AssemblerState]] = {
    # between blocks
    (S.IDLE, "text_start"): ("_open_text", S.TEXT),
    (S.IDLE, "text"): ("_implicit_text", S.TEXT),
    (S.IDLE, "thinking_start"): ("_open_thinking", S.THINKING),
    (S.IDLE, "tool_use_start"): ("_open_tool", S.TOOL_INPUT),
    (S.IDLE, "tool_use_delta"): ("_drop_stray_delta", S.IDLE),
    (S.IDLE, "message_end"): ("_finish", S.FINISHED),
    # text block
    (S.TEXT, "text"): ("_append_text", S.TEXT),
    (S.TEXT, "text_end"): ("_close_text", S.IDLE),
    (S.TEXT, "text_start"): ("_reopen_text", S.TEXT),
    (S.TEXT, "thinking_start"): ("_text_then_thinking", S.THINKING),
    (S.TEXT, "tool_use_start"): ("_text_then_tool", S.TOOL_INPUT),
    (S.TEXT, "message_end"): ("_finish", S.FINISHED),
    # thinking block
    (S.THINKING, "thinking"): ("_append_thinking", S.THINKING),
    (S.THINKING, "thinking_end"): ("_close_thinking", S.IDLE),
    (S.THINKING, "text_start"): ("_thinking_then_text", S.TEXT),
    (S.THINKING, "tool_use_start"): ("_thinking_then_tool", S.TOOL_INPUT),
    (S.THINKING, "message_end"): ("_finish", S.FINISHED),
    # tool-use block
    (S.TOOL_INPUT, "tool_use_delta"): ("_append_tool_json", S.TOOL_INPUT),
    (S.TOOL_INPUT, "tool_use_end"): ("_close_tool", S.IDLE),
    (S.TOOL_INPUT, "tool_use_start"): ("_tool_then_tool", S.TOOL_INPUT),
    (S.TOOL_INPUT, "text_start"): ("_tool_then_text", S.TEXT),
    (S.TOOL_INPUT, "message_end"): ("_finish", S.FINISHED),
}


def parse_tool_input(raw: str) -> Dict:
    """Parse streamed tool JSON; malformed input becomes an error marker, not an exception."""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"error": INVALID_JSON_MARKER, "raw": raw}
    if not isinstance(parsed, dict):
        return {"error": INVALID_JSON_MARKER, "raw": raw}
    return parsed


class StreamAssembler:
    """Accumulates one backend response."""

    def __init__(self):
        self.state = AssemblerState.IDLE
        self.blocks: List[ContentBlock] = []
        self.stop_reason: Optional[str] = None
        self.usage: Dict = {}
        self._text: List[str] = []
        self._thinking: List[str] = []
        self._tool: Optional[Dict[str, str]] = None
        self._tool_json: List[str] = []
        self._notes: List[AgentEvent] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: Dict) -> List[AgentEvent]:
        """Apply one chunk; returns streaming notifications to forward."""
        chunk_type = chunk.get("type", "")
        if chunk_type == "usage_start":
            self.usage.update(chunk.get("usage") or {})
            return []
        entry = TRANSITIONS.get((self.state, chunk_type))
        if entry is None:
            logger.debug(f"Ignoring stray '{chunk_type}' chunk in state {self.state.value}")
            return []
        handler, next_state = entry
        self._notes = []
        getattr(self, handler)(chunk)
        self.state = next_state
        return self._notes

    def finish(self) -> List[ContentBlock]:
        """Close whatever is still open and return the finished blocks."""
        if self.state is not AssemblerState.FINISHED:
            self._finish({})
            self.state = AssemblerState.FINISHED
        return self.blocks

    def interrupt(self) -> List[ContentBlock]:
        """Stop mid-stream: keep partial text marked as interrupted, drop incomplete tool input."""
        if self.state is AssemblerState.TOOL_INPUT and self._tool is not None:
            logger.info(
                f"Dropping incomplete tool_use {self._tool.get('name')} "
                f"({sum(len(p) for p in self._tool_json)} bytes of input)"
            )
        self._tool = None
        self._tool_json = []
        self._flush_thinking()
        self._flush_text()
        last = self.blocks[-1] if self.blocks else None
        if isinstance(last, TextBlock):
            last.text = f"{last.text}\n\n{INTERRUPTED_MARKER}"
        else:
            self.blocks.append(TextBlock(INTERRUPTED_MARKER))
        self.state = AssemblerState.FINISHED
        return self.blocks

    @property
    def started(self) -> bool:
        """True once any content (finished or partial) has arrived."""
        return bool(self.blocks or self._text or self._thinking or self._tool is not None)

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    # ------------------------------------------------------------------
    # Flush helpers
    # ------------------------------------------------------------------

    def _flush_text(self) -> None:
        text = "".join(self._text)
        self._text = []
        if text:
            self.blocks.append(TextBlock(text))

    def _flush_thinking(self, signature: Optional[str] = None) -> None:
        thinking = "".join(self._thinking)
        self._thinking = []
        if thinking or signature:
            self.blocks.append(ThinkingBlock(thinking, signature))

    def _flush_tool(self) -> None:
        if self._tool is None:
            return
        self.blocks.append(ToolUseBlock(
            id=self._tool.get("id", ""),
            name=self._tool.get("name", ""),
            input=parse_tool_input("".join(self._tool_json)),
        ))
        self._tool = None
        self._tool_json = []

    # ------------------------------------------------------------------
    # Transition handlers
    # ------------------------------------------------------------------

    def _open_text(self, chunk: Dict) -> None:
        self._text = []

    def _implicit_text(self, chunk: Dict) -> None:
        self._text = []
        self._append_text(chunk)

    def _append_text(self, chunk: Dict) -> None:
        content = chunk.get("content", "")
        if content:
            self._text.append(content)
            self._notes.append(AgentEvent(type=STREAM_TOKEN, content=content))

    def _close_text(self, chunk: Dict) -> None:
        self._flush_text()

    def _reopen_text(self, chunk: Dict) -> None:
        self._flush_text()

    def _open_thinking(self, chunk: Dict) -> None:
        self._thinking = []

    def _append_thinking(self, chunk: Dict) -> None:
        content = chunk.get("content", "")
        if content:
            self._thinking.append(content)
            self._notes.append(AgentEvent(type=STREAM_THINKING, content=content))

    def _close_thinking(self, chunk: Dict) -> None:
        self._flush_thinking(chunk.get("signature"))

    def _open_tool(self, chunk: Dict) -> None:
        data = chunk.get("data") or {}
        self._tool = {"id": data.get("id", ""), "name": data.get("name", "")}
        self._tool_json = []

    def _append_tool_json(self, chunk: Dict) -> None:
        self._tool_json.append(chunk.get("content", ""))

    def _close_tool(self, chunk: Dict) -> None:
        self._flush_tool()

    def _drop_stray_delta(self, chunk: Dict) -> None:
        logger.warning("Tool input delta received with no open tool_use block; dropped")

    def _text_then_thinking(self, chunk: Dict) -> None:
        self._flush_text()
        self._open_thinking(chunk)

    def _text_then_tool(self, chunk: Dict) -> None:
        self._flush_text()
        self._open_tool(chunk)

    def _thinking_then_text(self, chunk: Dict) -> None:
        self._flush_thinking()
        self._open_text(chunk)

    def _thinking_then_tool(self, chunk: Dict) -> None:
        self._flush_thinking()
        self._open_tool(chunk)

    def _tool_then_tool(self, chunk: Dict) -> None:
        self._flush_tool()
        self._open_tool(chunk)

    def _tool_then_text(self, chunk: Dict) -> None:
        self._flush_tool()
        self._open_text(chunk)

    def _finish(self, chunk: Dict) -> None:
        if chunk:
            self.stop_reason = chunk.get("stop_reason")
            self.usage.update(chunk.get("usage") or {})
        self._flush_thinking()
        self._flush_text()
        self._flush_tool()
