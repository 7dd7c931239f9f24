"""
Auto-heal loop for freshly started dev servers.

After ``run_command`` starts a dev or preview server the page is validated,
fixable errors are detected from the page and the server log, fixes are
applied, and the page is checked again. Bounded by ``auto_heal_attempts``.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from backend import Backend
from config import AppConfig
from tools.browser_ops import PageCheck, check_page
from .registry import CancellationToken

logger = logging.getLogger(__name__)

MISSING_DEP_RES = (
    re.compile(r"Failed to resolve import\s+[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"Cannot find module\s+[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"Module not found\s+[\"']([^\"']+)[\"']", re.IGNORECASE),
)
VITE_IMPORT_RE = re.compile(r"\[plugin:vite:import-analysis\].*from\s+[\"']([^\"']+)[\"']", re.IGNORECASE)
ASSET_IMPORT_RE = re.compile(
    r"Failed to resolve import\s+[\"']([^\"']+\.(?:css|scss|sass|less|png|jpg|jpeg|gif|svg))[\"']",
    re.IGNORECASE,
)
SYNTAX_RE = re.compile(r"(SyntaxError|Unexpected token).*at\s+(.*?):(\d+):(\d+)", re.IGNORECASE)
NODE_ONLY_RE = re.compile(r"require is not defined", re.IGNORECASE)
LOCATION_RE = re.compile(r"at\s+(.*?):(\d+):(\d+)")
IMPORTER_RE = re.compile(r"import\s+[\"'][^\"']+[\"']\s+from\s+[\"']([^\"']+)[\"']", re.IGNORECASE)
_EXT_RE = re.compile(r"\.(css|scss|sass|less|js|ts|tsx|jsx|png|jpg|jpeg|gif|svg)$")

REQUIRE_RE = re.compile(
    r"^(\s*)(?:const|let|var)\s+(\{[^}]*\}|[A-Za-z_$][\w$]*)\s*=\s*require\(\s*([\"'])([^\"']+)\3\s*\)\s*;?",
    re.MULTILINE,
)
SOURCE_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".vue", ".svelte")


def extract_package_name(import_path: str) -> str:
    """``codemirror/theme/default.css`` -> ``codemirror``; ``@ant-design/icons/x`` -> ``@ant-design/icons``."""
    bare = _EXT_RE.sub("", import_path.split("?", 1)[0])
    parts = bare.split("/")
    if bare.startswith("@") and len(parts) >= 2:
        return f"{parts[0]}/{parts[1]}"
    return parts[0]


def is_relative_import(import_path: str) -> bool:
    return import_path.startswith((".", "/", "@/", "~/"))


@dataclass
class DetectedError:
    type: str  # missing_dependency | import_error | node_only_syntax | css_error | syntax_error
    message: str
    fixable: bool
    file_path: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    package_name: Optional[str] = None
    import_path: Optional[str] = None

    @property
    def key(self) -> Tuple:
        return (self.type, self.package_name or self.import_path, self.file_path)


@dataclass
class FixResult:
    success: bool
    action: str  # installed | fixed_import | removed_import | rewrote_require | skipped
    message: str

    @property
    def applied(self) -> bool:
        return self.success and self.action != "skipped"


# ============================================================
# Detection
# ============================================================

class ErrorDetector:
    def detect(self, text: str, cwd: str) -> List[DetectedError]:
        errors: List[DetectedError] = []
        seen = set()
        for line in text.splitlines():
            err = self._detect_line(line, cwd)
            if err is not None and err.key not in seen:
                seen.add(err.key)
                errors.append(err)
        return errors

    def _resolve(self, path: str, cwd: str) -> str:
        return path if os.path.isabs(path) else os.path.normpath(os.path.join(cwd, path))

    def _location(self, line: str, cwd: str) -> Tuple[Optional[str], Optional[int], Optional[int]]:
        m = LOCATION_RE.search(line)
        if m:
            return self._resolve(m.group(1), cwd), int(m.group(2)), int(m.group(3))
        m = IMPORTER_RE.search(line)
        if m:
            return self._resolve(m.group(1), cwd), None, None
        return None, None, None

    def _detect_line(self, line: str, cwd: str) -> Optional[DetectedError]:
        asset = ASSET_IMPORT_RE.search(line)
        if asset:
            path, lineno, col = self._location(line, cwd)
            return DetectedError(
                type="css_error",
                message=f"CSS/Resource file not found: {asset.group(1)}",
                fixable=True,
                file_path=path, line=lineno, column=col,
                import_path=asset.group(1),
            )

        for pattern in MISSING_DEP_RES:
            m = pattern.search(line)
            if not m:
                continue
            import_path = m.group(1)
            if is_relative_import(import_path):
                path, lineno, col = self._location(line, cwd)
                return DetectedError(
                    type="import_error",
                    message=f"Import error: {import_path}",
                    fixable=False,
                    file_path=path, line=lineno, column=col,
                    import_path=import_path,
                )
            return DetectedError(
                type="missing_dependency",
                message=f"Missing dependency: {import_path}",
                fixable=True,
                package_name=extract_package_name(import_path),
                import_path=import_path,
            )

        vite = VITE_IMPORT_RE.search(line)
        if vite:
            import_path = vite.group(1)
            path, lineno, col = self._location(line, cwd)
            relative = is_relative_import(import_path)
            return DetectedError(
                type="import_error",
                message=f"Import error: {import_path}",
                fixable=not relative,
                file_path=path, line=lineno, column=col,
                package_name=None if relative else extract_package_name(import_path),
                import_path=import_path,
            )

        if NODE_ONLY_RE.search(line):
            path, lineno, col = self._location(line, cwd)
            return DetectedError(
                type="node_only_syntax",
                message="Node-only syntax in browser code: require is not defined",
                fixable=True,
                file_path=path, line=lineno, column=col,
            )

        syntax = SYNTAX_RE.search(line)
        if syntax:
            return DetectedError(
                type="syntax_error",
                message=f"Syntax error: {syntax.group(1)}",
                fixable=False,
                file_path=self._resolve(syntax.group(2), cwd),
                line=int(syntax.group(3)),
                column=int(syntax.group(4)),
            )
        return None


# ============================================================
# Fixing
# ============================================================

def _declared_packages(cwd: str) -> Dict[str, str]:
    try:
        with open(os.path.join(cwd, "package.json"), "r", encoding="utf-8") as f:
            pkg = json.load(f)
    except (OSError, ValueError):
        return {}
    deps: Dict[str, str] = {}
    for section in ("dependencies", "devDependencies", "peerDependencies"):
        deps.update(pkg.get(section) or {})
    return deps


def _rewrite_requires(source: str) -> Tuple[str, int]:
    def repl(m):
        indent, target, _, module = m.groups()
        return f"{indent}import {target.strip()} from '{module}';"
    return REQUIRE_RE.subn(repl, source)


def _rewrite_file(path: str) -> int:
    with open(path, "r", encoding="utf-8") as f:
        source = f.read()
    rewritten, count = _rewrite_requires(source)
    if count:
        with open(path, "w", encoding="utf-8") as f:
            f.write(rewritten)
    return count


def _source_files(root: str) -> List[str]:
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in ("node_modules", ".git", "dist")]
        found.extend(os.path.join(dirpath, n) for n in filenames if n.endswith(SOURCE_EXTENSIONS))
    return found


def _fix_asset_import(err: DetectedError) -> FixResult:
    path, import_path = err.file_path, err.import_path
    if not path or not import_path:
        return FixResult(False, "skipped", "File path or import path not found in error")
    if not os.path.isfile(path):
        return FixResult(False, "skipped", f"Source file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        lines = f.read().split("\n")

    if err.line is not None and 1 <= err.line <= len(lines):
        idx = err.line - 1
    else:
        idx = next((i for i, l in enumerate(lines) if "import" in l and import_path in l), -1)
    if idx < 0 or "import" not in lines[idx] or import_path not in lines[idx]:
        return FixResult(False, "skipped", "Could not automatically fix import error")

    resolved = os.path.normpath(os.path.join(os.path.dirname(path), import_path))
    if os.path.exists(resolved):
        return FixResult(False, "skipped", f"{import_path} exists; nothing to remove")

    action, message = "removed_import", f"Removed import for missing file: {import_path}"
    theme_dir = os.path.dirname(resolved)
    if "/theme/" in import_path and import_path.endswith(".css") and os.path.isdir(theme_dir):
        candidates = sorted(n for n in os.listdir(theme_dir) if n.endswith(".css"))
        if candidates:
            replacement = re.sub(r"[^/]+\.css$", candidates[0], import_path)
            lines[idx] = lines[idx].replace(import_path, replacement)
            action, message = "fixed_import", f"Replaced {import_path} with {replacement}"
    if action == "removed_import":
        del lines[idx]
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))
    return FixResult(True, action, message)


class ErrorFixer:
    def __init__(self, backend: Backend, install_timeout: float = 120.0):
        self.backend = backend
        self.install_timeout = install_timeout

    async def fix(self, err: DetectedError, cwd: str) -> FixResult:
        if not err.fixable:
            return FixResult(False, "skipped", f'Error type "{err.type}" is not automatically fixable')
        try:
            if err.type in ("missing_dependency", "import_error"):
                return await self.install_package(err.package_name, cwd)
            if err.type == "css_error":
                return await self._in_executor(_fix_asset_import, err)
            if err.type == "node_only_syntax":
                return await self._in_executor(self._fix_requires, err, cwd)
        except OSError as e:
            return FixResult(False, "skipped", f"Error fixing {err.type}: {e}")
        return FixResult(False, "skipped", f"Unknown error type: {err.type}")

    async def _in_executor(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def install_package(self, package: Optional[str], cwd: str) -> FixResult:
        if not package:
            return FixResult(False, "skipped", "Package name not found in error")
        declared = await self._in_executor(_declared_packages, cwd)
        if package in declared:
            return FixResult(True, "skipped", f"Package {package} is already installed")

        logger.info(f"Auto-heal: installing {package} in {cwd}")
        stdout, stderr, rc = await self.backend.run_command(
            f"pnpm add {package}", cwd=cwd, timeout=self.install_timeout,
        )
        if rc != 0 or (stderr.strip() and "WARN" not in stderr):
            detail = stderr.strip() or stdout.strip() or f"exit code {rc}"
            return FixResult(False, "installed", f"Failed to install {package}: {detail[:500]}")
        return FixResult(True, "installed", f"Successfully installed {package}")

    def _fix_requires(self, err: DetectedError, cwd: str) -> FixResult:
        if err.file_path and os.path.isfile(err.file_path):
            targets = [err.file_path]
        else:
            targets = _source_files(os.path.join(cwd, "src"))
        rewritten = []
        for path in targets:
            if _rewrite_file(path):
                rewritten.append(os.path.relpath(path, cwd))
        if not rewritten:
            return FixResult(False, "skipped", "No require() calls found to rewrite")
        return FixResult(True, "rewrote_require", f"Rewrote require() as ES imports in {', '.join(rewritten)}")


# ============================================================
# Loop
# ============================================================

@dataclass
class HealReport:
    attempts: int = 0
    healthy: bool = False
    fixes: List[FixResult] = field(default_factory=list)
    remaining: List[DetectedError] = field(default_factory=list)
    cancelled: bool = False

    def summary(self) -> str:
        lines = []
        if self.healthy:
            lines.append(f"[Auto-heal] Page loaded without errors after {self.attempts} check(s).")
        elif self.cancelled:
            lines.append("[Auto-heal] Stopped: task was aborted.")
        else:
            lines.append(f"[Auto-heal] Page still has problems after {self.attempts} check(s).")
        applied = [f for f in self.fixes if f.applied]
        if applied:
            lines.append("Applied fixes:")
            lines.extend(f"- {f.message}" for f in applied)
        if self.remaining and not self.healthy:
            lines.append(f"⚠️ Detected {len(self.remaining)} error(s) that need attention:")
            for err in self.remaining:
                extra = f" (package: {err.package_name})" if err.package_name else ""
                where = f" at {err.file_path}:{err.line}" if err.file_path and err.line else ""
                lines.append(f"- {err.type}: {err.message}{extra}{where}")
        return "\n".join(lines)


def _read_log(path: Optional[str], offset: int = 0, limit: int = 8000) -> Tuple[str, int]:
    """Log text written since ``offset`` (capped to the last ``limit`` chars) and the new offset."""
    if not path:
        return "", offset
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            f.seek(offset)
            text = f.read()
            return text[-limit:], f.tell()
    except OSError:
        return "", offset


class AutoHealLoop:
    def __init__(
        self,
        backend: Backend,
        settings: AppConfig,
        detector: Optional[ErrorDetector] = None,
        fixer: Optional[ErrorFixer] = None,
        check: Callable[[str, float], Awaitable[PageCheck]] = check_page,
    ):
        self.settings = settings
        self.detector = detector or ErrorDetector()
        self.fixer = fixer or ErrorFixer(backend, install_timeout=settings.install_timeout)
        self.check = check

    async def _pause(self, seconds: float, cancel: Optional[CancellationToken]) -> bool:
        """Sleep, waking early on abort. Returns False if the task was cancelled."""
        if cancel is None:
            await asyncio.sleep(seconds)
            return True
        if cancel.cancelled:
            return False
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def heal(self, url: str, cwd: str, cancel: Optional[CancellationToken] = None,
                   log_path: Optional[str] = None) -> HealReport:
        report = HealReport()
        log_offset = 0
        for attempt in range(1, self.settings.auto_heal_attempts + 1):
            if attempt > 1 and not await self._pause(self.settings.auto_heal_retry_delay, cancel):
                report.cancelled = True
                break
            if cancel is not None and cancel.cancelled:
                report.cancelled = True
                break

            report.attempts = attempt
            page = await self.check(url, self.settings.validate_timeout)
            log_text, log_offset = _read_log(log_path, log_offset)
            errors = self.detector.detect(f"{page.details}\n{log_text}", cwd)
            report.remaining = errors
            if page.ok and not errors:
                report.healthy = True
                break

            fixable = [e for e in errors if e.fixable]
            logger.info(f"Auto-heal attempt {attempt}: {len(errors)} error(s), {len(fixable)} fixable")
            if not fixable:
                break
            results = []
            for err in fixable:
                if cancel is not None and cancel.cancelled:
                    break
                results.append(await self.fixer.fix(err, cwd))
            report.fixes.extend(results)
            if not any(r.applied for r in results):
                break
        return report

    async def run(self, url: str, cwd: str, cancel: Optional[CancellationToken] = None,
                  log_path: Optional[str] = None) -> str:
        report = await self.heal(url, cwd, cancel=cancel, log_path=log_path)
        return report.summary()
