"""
Persistence for Bedrock Orchestrator.

Transcripts are stored per task id so an interrupted task can be resumed,
alongside small JSON stores for projects/tasks, authorized folders and
remembered permissions. Every write goes through a temp file + os.replace.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

SESSION_VERSION = 1

TRUST_LEVELS = ("strict", "standard", "trust")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _slugify(name: str) -> str:
    """Turn a task id into a safe filename component."""
    s = re.sub(r"[^A-Za-z0-9_.-]+", "-", name.strip()).strip("-")[:80]
    return s or "default"


def _auto_name(first_task: str) -> str:
    """Generate a task title from the first user message."""
    words = first_task.strip().split()[:6]
    name = " ".join(words)
    if len(first_task.strip().split()) > 6:
        name += "..."
    return name or "default"


def _atomic_write_json(path: str, data: Any) -> None:
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _within(path: str, root: str) -> bool:
    """True when ``path`` is ``root`` or below it, comparing resolved symlinks."""
    real = os.path.realpath(os.path.expanduser(path))
    root_real = os.path.realpath(root)
    return real == root_real or real.startswith(root_real.rstrip(os.sep) + os.sep)


def _read_json(path: str, default: Any) -> Any:
    if not os.path.exists(path):
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read {path}: {e}")
        return default


# ============================================================
# Transcripts
# ============================================================

@dataclass
class Session:
    """A persisted task transcript."""
    session_id: str = ""
    version: int = SESSION_VERSION
    name: str = "default"
    project_id: Optional[str] = None
    model_id: str = ""
    created_at: str = ""
    updated_at: str = ""
    history: List[Dict[str, Any]] = field(default_factory=list)
    # Set when a recovery rebind moved the conversation to another task id
    continued_as: Optional[str] = None

    @property
    def message_count(self) -> int:
        return len(self.history)


class SessionStore:
    """
    Manages transcript files on disk.

    File layout:  {base_dir}/{slug(task_id)}.json
    """

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def save(self, session: Session) -> str:
        """Save a transcript to disk. Returns the file path."""
        session.updated_at = _now_iso()
        if not session.created_at:
            session.created_at = session.updated_at
        path = self._path_for(session.session_id)
        _atomic_write_json(path, asdict(session))
        logger.debug(f"Session saved: {path}")
        return path

    def load(self, session_id: str) -> Optional[Session]:
        data = _read_json(self._path_for(session_id), None)
        if not isinstance(data, dict):
            return None
        return Session(
            session_id=data.get("session_id", session_id),
            version=data.get("version", SESSION_VERSION),
            name=data.get("name", "default"),
            project_id=data.get("project_id"),
            model_id=data.get("model_id", ""),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            history=data.get("history", []),
            continued_as=data.get("continued_as"),
        )

    def _path_for(self, session_id: str) -> str:
        return os.path.join(self.base_dir, f"{_slugify(session_id)}.json")


# ============================================================
# Projects and their task records
# ============================================================

@dataclass
class TaskRecord:
    id: str
    title: str = ""
    status: str = "running"  # running | completed | failed
    created_at: str = ""
    updated_at: str = ""
    # Task this one continues after a recovery rebind
    continued_from: Optional[str] = None


@dataclass
class Project:
    id: str
    name: str = ""
    path: str = ""
    tasks: List[TaskRecord] = field(default_factory=list)

    def find_task(self, task_id: str) -> Optional[TaskRecord]:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None


class ProjectStore:
    """Projects and task records, in a single projects.json."""

    def __init__(self, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._projects: Dict[str, Project] = {}
        for raw in _read_json(path, []):
            tasks = [TaskRecord(**t) for t in raw.get("tasks", [])]
            self._projects[raw["id"]] = Project(
                id=raw["id"], name=raw.get("name", ""), path=raw.get("path", ""), tasks=tasks
            )

    def _flush(self) -> None:
        _atomic_write_json(self.path, [asdict(p) for p in self._projects.values()])

    def create_project(self, project_id: str, name: str = "", path: str = "") -> Project:
        project = Project(id=project_id, name=name or project_id, path=path)
        self._projects[project_id] = project
        self._flush()
        return project

    def get(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    def ensure_task(self, project_id: str, task_id: str, title: str = "") -> Optional[TaskRecord]:
        """Create the task record if missing and mark it running."""
        project = self._projects.get(project_id)
        if project is None:
            logger.warning(f"Unknown project {project_id}; task {task_id} not recorded")
            return None
        record = project.find_task(task_id)
        now = _now_iso()
        if record is None:
            record = TaskRecord(id=task_id, title=_auto_name(title), created_at=now)
            project.tasks.append(record)
        record.status = "running"
        record.updated_at = now
        self._flush()
        return record

    def set_task_status(self, project_id: str, task_id: str, status: str) -> None:
        project = self._projects.get(project_id)
        record = project.find_task(task_id) if project else None
        if record is None:
            return
        record.status = status
        record.updated_at = _now_iso()
        self._flush()

    def rebind_task(self, project_id: str, old_task_id: str, new_task_id: str) -> Optional[TaskRecord]:
        """Mark the old task failed and open its continuation under a new id."""
        project = self._projects.get(project_id)
        if project is None:
            return None
        old = project.find_task(old_task_id)
        now = _now_iso()
        if old is not None:
            old.status = "failed"
            old.updated_at = now
        record = TaskRecord(
            id=new_task_id,
            title=(old.title if old else "") + " (continued)",
            created_at=now,
            updated_at=now,
            continued_from=old_task_id,
        )
        project.tasks.append(record)
        self._flush()
        logger.info(f"Project {project_id}: task {old_task_id} -> {new_task_id}")
        return record


# ============================================================
# Authorized folders + remembered permissions
# ============================================================

class FolderStore:
    """Authorized folders, each with a trust level (strict | standard | trust)."""

    def __init__(self, path: str, initial: Optional[List[str]] = None, default_trust: str = "standard"):
        self.path = path
        self.default_trust = default_trust
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._folders: List[Dict[str, str]] = _read_json(path, [])
        for folder in initial or []:
            if self.trust_for(folder) is None:
                self._folders.append({"path": os.path.abspath(os.path.expanduser(folder)),
                                      "trust_level": default_trust})

    def paths(self) -> List[str]:
        return [f["path"] for f in self._folders]

    def add(self, folder: str, trust_level: Optional[str] = None) -> None:
        level = trust_level or self.default_trust
        if level not in TRUST_LEVELS:
            raise ValueError(f"Unknown trust level: {level}")
        full = os.path.abspath(os.path.expanduser(folder))
        self._folders = [f for f in self._folders if f["path"] != full]
        self._folders.append({"path": full, "trust_level": level})
        _atomic_write_json(self.path, self._folders)

    def trust_for(self, path: str) -> Optional[str]:
        """Trust level of the deepest authorized folder containing ``path``."""
        best: Optional[Dict[str, str]] = None
        for f in self._folders:
            if _within(path, f["path"]):
                if best is None or len(os.path.realpath(f["path"])) > len(os.path.realpath(best["path"])):
                    best = f
        return best["trust_level"] if best else None


class PermissionStore:
    """Remembered "always allow" approvals keyed by (tool, path prefix)."""

    def __init__(self, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._grants: List[Dict[str, str]] = _read_json(path, [])

    def grant(self, tool: str, path: str) -> None:
        full = os.path.abspath(os.path.expanduser(path))
        if self.has_permission(tool, full):
            return
        self._grants.append({"tool": tool, "path": full, "granted_at": _now_iso()})
        _atomic_write_json(self.path, self._grants)
        logger.info(f"Permission remembered: {tool} @ {full}")

    def has_permission(self, tool: str, path: str) -> bool:
        return any(g["tool"] == tool and _within(path, g["path"]) for g in self._grants)
