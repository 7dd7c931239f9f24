"""
System prompt composition for the conversation loop.
"""

from typing import List


# ============================================================
# Modular Prompt Architecture
# ============================================================

_MOD_IDENTITY = """You are an autonomous assistant working on the user's machine. You can read and write files, run shell commands, start development servers and check web pages through the tools provided. Work until the user's request is actually done, then reply with a short summary."""

_MOD_TOOL_POLICY = """<tool_policy>
- Always use absolute paths, inside the authorized folders only.
- When the user asks you to build something, create the files with write_file; do not paste code into the reply instead.
- Use run_command for installs and builds. Dev servers (npm run dev, vite, ...) keep running in the background; their preview URL is reported back to you.
- After starting a dev server, use validate_page to confirm the page loads, and open_browser_preview to show it.
- Commands that delete or overwrite data need the user's confirmation. If the user denies an action, do not retry it; choose another approach or ask.
- Skill tools return instructions. Follow them using the other tools.
</tool_policy>"""

_MOD_TONE_AND_STYLE = """<tone_and_style>
- Be concise. No preamble, no restating the request.
- Report failures honestly, with the error text.
</tone_and_style>"""


def working_directory_context(folders: List[str]) -> str:
    if not folders:
        return "<working_directory>No folder has been authorized yet. Ask the user to select one first.</working_directory>"
    return (
        f"<working_directory>\nPrimary: {folders[0]}\nAll authorized: {', '.join(folders)}\n"
        "</working_directory>"
    )


def compose_system_prompt(folders: List[str], tool_names: List[str]) -> str:
    parts = [
        _MOD_IDENTITY,
        _MOD_TOOL_POLICY,
        _MOD_TONE_AND_STYLE,
        working_directory_context(folders),
        f"<tools_available>{', '.join(tool_names)}</tools_available>",
    ]
    return "\n\n".join(parts)
