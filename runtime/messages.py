"""
Conversation message and content block types.

Blocks serialize to the Anthropic Messages wire format with ``to_dict`` and
are rebuilt from stored transcripts with ``block_from_dict``.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

_DATA_URL_RE = re.compile(r"^data:(image/(?:jpeg|png|gif|webp));base64,(.+)$", re.DOTALL)

IMAGE_ONLY_PROMPT = "Please analyze this image."


@dataclass
class TextBlock:
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ImageBlock:
    media_type: str
    data: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


@dataclass
class ThinkingBlock:
    thinking: str
    signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        block: Dict[str, Any] = {"type": "thinking", "thinking": self.thinking}
        if self.signature:
            block["signature"] = self.signature
        return block


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    @property
    def malformed(self) -> bool:
        """True when the streamed input could not be parsed as JSON."""
        return self.input.get("error") == "Invalid JSON input" and "raw" in self.input

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block


ContentBlock = Union[TextBlock, ImageBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class Message:
    role: str  # user | assistant
    content: List[ContentBlock] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": [b.to_dict() for b in self.content]}

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> List[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @classmethod
    def user_text(cls, text: str) -> "Message":
        return cls(role="user", content=[TextBlock(text)])


def block_from_dict(raw: Dict[str, Any]) -> Optional[ContentBlock]:
    kind = raw.get("type")
    if kind == "text":
        return TextBlock(raw.get("text", ""))
    if kind == "image":
        src = raw.get("source", {})
        return ImageBlock(src.get("media_type", ""), src.get("data", ""))
    if kind == "thinking":
        return ThinkingBlock(raw.get("thinking", ""), raw.get("signature"))
    if kind == "tool_use":
        return ToolUseBlock(raw.get("id", ""), raw.get("name", ""), raw.get("input") or {})
    if kind == "tool_result":
        content = raw.get("content", "")
        if isinstance(content, list):
            content = "".join(c.get("text", "") for c in content if isinstance(c, dict))
        return ToolResultBlock(raw.get("tool_use_id", ""), content, bool(raw.get("is_error")))
    return None


def message_from_dict(raw: Dict[str, Any]) -> Message:
    content = raw.get("content", [])
    if isinstance(content, str):
        return Message(role=raw.get("role", "user"), content=[TextBlock(content)])
    blocks = [b for b in (block_from_dict(c) for c in content if isinstance(c, dict)) if b is not None]
    return Message(role=raw.get("role", "user"), content=blocks)


def history_to_wire(history: List[Message]) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in history]


def compose_user_message(text: str, images: Optional[List[str]] = None) -> Message:
    """Build the user message for a submission.

    ``images`` are ``data:image/...;base64,...`` URLs; anything else is skipped.
    An image-only message gets a default prompt so the request is never empty.
    """
    blocks: List[ContentBlock] = []
    for url in images or []:
        match = _DATA_URL_RE.match(url or "")
        if match:
            blocks.append(ImageBlock(match.group(1), match.group(2)))
    if text and text.strip():
        blocks.append(TextBlock(text))
    elif blocks:
        blocks.append(TextBlock(IMAGE_ONLY_PROMPT))
    return Message(role="user", content=blocks)


def unmatched_tool_uses(history: List[Message]) -> List[ToolUseBlock]:
    """ToolUse blocks of the last assistant message that have no ToolResult yet."""
    for idx in range(len(history) - 1, -1, -1):
        msg = history[idx]
        if msg.role != "assistant":
            continue
        answered = set()
        for later in history[idx + 1:]:
            answered.update(r.tool_use_id for r in later.tool_results)
        return [tu for tu in msg.tool_uses if tu.id not in answered]
    return []


def repair_history(history: List[Message]) -> int:
    """Pair orphaned ToolUse blocks with placeholder results. Returns how many were added."""
    fixed = 0
    i = 0
    while i < len(history):
        msg = history[i]
        uses = msg.tool_uses if msg.role == "assistant" else []
        if uses:
            nxt = history[i + 1] if i + 1 < len(history) else None
            answered = {r.tool_use_id for r in nxt.tool_results} if nxt is not None and nxt.role == "user" else set()
            missing = [tu for tu in uses if tu.id not in answered]
            if missing:
                placeholders = [
                    ToolResultBlock(tu.id, "Tool execution was interrupted.", is_error=True)
                    for tu in missing
                ]
                if nxt is not None and nxt.role == "user":
                    nxt.content[:0] = placeholders
                else:
                    history.insert(i + 1, Message(role="user", content=placeholders))
                fixed += len(missing)
        i += 1
    return fixed
