"""
Runtime event data types and the outward notification names.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Any, Optional

# Notifications delivered to the hosting UI
HISTORY_UPDATE = "history-update"
STREAM_TOKEN = "stream-token"
STREAM_THINKING = "stream-thinking"
ARTIFACT_CREATED = "artifact-created"
CONFIRM_REQUEST = "confirm-request"
CONTEXT_SWITCHED = "context-switched"
DONE = "done"
ERROR = "error"
ABORTED = "aborted"

NOTIFICATION_TYPES = (
    HISTORY_UPDATE,
    STREAM_TOKEN,
    STREAM_THINKING,
    ARTIFACT_CREATED,
    CONFIRM_REQUEST,
    CONTEXT_SWITCHED,
    DONE,
    ERROR,
    ABORTED,
)


@dataclass
class AgentEvent:
    """Event emitted during a task run"""
    type: str  # one of NOTIFICATION_TYPES
    content: str = ""
    data: Optional[Dict[str, Any]] = None
    task_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"type": self.type}
        if self.task_id:
            msg["task_id"] = self.task_id
        if self.content:
            msg["content"] = self.content
        if self.data:
            msg["data"] = self.data
        return msg


EventSink = Callable[[AgentEvent], Awaitable[None]]
