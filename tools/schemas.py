"""Built-in tool schema definitions (Bedrock/Anthropic Messages API)."""

from typing import Any, Dict, List

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read the full text content of a file inside an authorized folder.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Absolute path, or relative to the working directory"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "write_file",
        "description": "Create or overwrite a file inside an authorized folder. Parent directories are created as needed.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Absolute path, or relative to the working directory"},
                "content": {"type": "string", "description": "Full file content to write"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "list_dir",
        "description": "List the entries of a directory inside an authorized folder.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "run_command",
        "description": (
            "Run a shell command. Dev servers (npm run dev, pnpm dev, vite, ...) are started in "
            "the background on port 3000 and preview servers on port 4173; other commands run "
            "to completion with a timeout. Destructive commands always require user confirmation."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to run"},
                "cwd": {"type": "string", "description": "Working directory (defaults to the project folder)"},
            },
            "required": ["command"],
        },
    },
    {
        "name": "open_browser_preview",
        "description": "Open a URL (typically a local dev server) in the built-in browser preview.",
        "input_schema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to open, e.g. http://localhost:3000"},
            },
            "required": ["url"],
        },
    },
    {
        "name": "validate_page",
        "description": (
            "Load a page and report whether it renders without build or runtime errors "
            "(missing modules, failed imports, non-200 status)."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to validate"},
                "timeout": {"type": "integer", "description": "Timeout in milliseconds (default 15000)"},
            },
            "required": ["url"],
        },
    },
]

BUILTIN_TOOL_NAMES = frozenset(t["name"] for t in TOOL_DEFINITIONS)

# Tools whose execution may change files on disk
WRITE_TOOLS = frozenset({"write_file"})
