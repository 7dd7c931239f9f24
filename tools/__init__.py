"""
Tool definitions and implementations for the agent runtime.
Each builtin tool has an Anthropic-compatible schema and an async
implementation taking ``(ToolContext, args)``; routing lives in tools.dispatch.
"""

from tools._common import ToolContext, ToolResult, truncate_output  # noqa: F401
from tools.safety import (  # noqa: F401
    CommandClass,
    GateAction,
    TrustLevel,
    classify_command,
    evaluate_command,
)
from tools.schemas import BUILTIN_TOOL_NAMES, TOOL_DEFINITIONS, WRITE_TOOLS  # noqa: F401
