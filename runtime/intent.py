"""Heuristic check for "build me a project" requests the model answered with prose only."""

import re
from typing import List, Optional

from .messages import Message

PROJECT_REQUEST_RE = re.compile(
    r"\b(create|build|make|scaffold|set\s*up|generate|start)\b.{0,60}?"
    r"\b(project|app|application|website|site|page|component|repo|game)\b",
    re.IGNORECASE | re.DOTALL,
)

PROJECT_REMINDER = (
    "[SYSTEM REMINDER] The user asked you to create a project, but no files have been "
    "written yet. Do not just describe the result: use write_file to create the files "
    "and run_command to install dependencies or start the dev server."
)


class IntentDetector:
    """Keyword matcher; swap in a smarter one through ``AgentRuntime(intent_detector=...)``."""

    def __init__(self, pattern=PROJECT_REQUEST_RE, reminder: str = PROJECT_REMINDER):
        self.pattern = pattern
        self.reminder = reminder

    def wants_project(self, request: str) -> bool:
        return bool(request and self.pattern.search(request))

    def reminder_for(self, history: List[Message], artifacts: list) -> Optional[str]:
        """The reminder to inject, or None when the last request was fulfilled or unrelated."""
        if artifacts:
            return None
        request = last_user_request(history)
        if not self.wants_project(request):
            return None
        return self.reminder


def last_user_request(history: List[Message]) -> str:
    """Text of the latest user message that is not just tool results or a reminder."""
    for msg in reversed(history):
        if msg.role != "user" or msg.tool_results:
            continue
        text = msg.text
        if text and not text.startswith("[SYSTEM"):
            return text
    return ""
