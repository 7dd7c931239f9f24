"""
Safety gate for shell commands.

A command is classified Safe, Dangerous or Undetermined from pattern tables,
then combined with the trust level of the folder it runs in.
"""

import enum
import logging
import re
import shlex
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class CommandClass(enum.Enum):
    SAFE = "safe"
    DANGEROUS = "dangerous"
    UNDETERMINED = "undetermined"


class GateAction(enum.Enum):
    AUTO_APPROVE = "auto_approve"
    CONFIRM = "confirm"
    DENY = "deny"


class TrustLevel(enum.Enum):
    STRICT = "strict"
    STANDARD = "standard"
    TRUST = "trust"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["TrustLevel"]:
        if value is None:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            logger.warning(f"Unknown trust level {value!r}; using strict")
            return cls.STRICT


SAFE_COMMANDS = frozenset({
    "python", "python3", "node", "npm", "pip", "pip3", "git", "ls", "cat", "head", "tail",
    "grep", "find", "echo", "pwd", "cd", "tree", "wc", "sort", "uniq", "diff", "patch",
    "tar", "unzip", "zip", "gzip", "gunzip", "bunzip2", "curl", "wget", "ping", "traceroute",
    "netstat", "ps", "top", "htop",
})

READ_ONLY_GIT = re.compile(r"^git\s+(log|show|diff|status|branch|remote|ls-files)\b", re.IGNORECASE)
SCRIPT_RUN = re.compile(r"^(python3?|node)\s+[^\s;&|]+\.(py|js|ts)\b", re.IGNORECASE)
CHAIN_SPLIT = re.compile(r"&&|\|\||;|\|")

DANGEROUS_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\brm\s+(-[a-z]*r[a-z]*|--recursive)\b",  # rm -r, rm -rf, rm -fr, rm --recursive
        r"\bdel\s+/s\s+/q",
        r"\brd\s+/s\s+/q",
        r"\bformat\s+",
        r"\bmkfs",
        r"\bdd\s+if=",
        r"\bshred\b",
        r">\s*/?dev/(null|sd[a-z]\w*|nvme\w*|disk\w*)",
        r"2>\s*&1\s*>\s*/dev/null",
        r"\bchmod\s+777",
        r"\bchmod\s+(-[a-z]*R[a-z]*|--recursive)\b",
        r"\bchown\s+(-[a-z]*R[a-z]*|--recursive)\b",
    )
]

# trust level -> command class -> action
TRUST_TABLE = {
    TrustLevel.TRUST: {
        CommandClass.SAFE: GateAction.AUTO_APPROVE,
        CommandClass.DANGEROUS: GateAction.CONFIRM,
        CommandClass.UNDETERMINED: GateAction.AUTO_APPROVE,
    },
    TrustLevel.STANDARD: {
        CommandClass.SAFE: GateAction.AUTO_APPROVE,
        CommandClass.DANGEROUS: GateAction.CONFIRM,
        CommandClass.UNDETERMINED: GateAction.CONFIRM,
    },
    TrustLevel.STRICT: {
        CommandClass.SAFE: GateAction.CONFIRM,
        CommandClass.DANGEROUS: GateAction.CONFIRM,
        CommandClass.UNDETERMINED: GateAction.CONFIRM,
    },
}


@dataclass
class GateDecision:
    action: GateAction
    command_class: CommandClass
    reason: str = ""


def _base_command(command: str) -> str:
    try:
        parts = shlex.split(command)
    except ValueError:
        parts = command.split()
    if not parts:
        return ""
    return parts[0].rsplit("/", 1)[-1].lower()


def is_dangerous(command: str) -> bool:
    return any(p.search(command) for p in DANGEROUS_PATTERNS)


def _is_safe_segment(cmd: str) -> bool:
    if READ_ONLY_GIT.match(cmd) or SCRIPT_RUN.match(cmd):
        return True
    return _base_command(cmd) in SAFE_COMMANDS


def is_safe(command: str) -> bool:
    """Every part of a chained or piped command must be safe on its own."""
    segments = [s.strip() for s in CHAIN_SPLIT.split(command)]
    segments = [s for s in segments if s]
    return bool(segments) and all(_is_safe_segment(s) for s in segments)


def classify_command(command: str) -> CommandClass:
    """Destructive patterns are checked first, so `ls && rm -rf x` is Dangerous."""
    if is_dangerous(command):
        return CommandClass.DANGEROUS
    if is_safe(command):
        return CommandClass.SAFE
    return CommandClass.UNDETERMINED


def evaluate_command(command: str, trust_level: Optional[str]) -> GateDecision:
    """Decide what to do with ``command``.

    ``trust_level`` is the level of the authorized folder the command runs in;
    None means the folder is not authorized and the command is denied outright.
    """
    command_class = classify_command(command)
    level = TrustLevel.parse(trust_level)
    if level is None:
        return GateDecision(GateAction.DENY, command_class, "working directory is not authorized")
    action = TRUST_TABLE[level][command_class]
    reason = f"{command_class.value} command under '{level.value}' trust"
    logger.debug(f"Safety gate: {command!r} -> {action.value} ({reason})")
    return GateDecision(action, command_class, reason)
