"""Browser-facing tools: open_browser_preview and validate_page."""

import asyncio
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tools._common import ToolContext, ToolResult

logger = logging.getLogger(__name__)

_MAX_BODY_BYTES = 512_000

# Markers a dev server (Vite overlay, webpack, Node) puts in an error page
ERROR_MARKERS = (
    "Failed to resolve import",
    "[plugin:vite:import-analysis]",
    "Cannot find module",
    "Module not found",
    "require is not defined",
    "SyntaxError",
)


def normalize_url(url: str) -> str:
    url = (url or "").strip()
    if url and not re.match(r"^https?://", url, re.IGNORECASE):
        url = f"http://{url}"
    return url


@dataclass
class PageCheck:
    url: str
    status: Optional[int] = None
    body: str = ""
    error: Optional[str] = None
    problems: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.status == 200 and not self.problems

    @property
    def details(self) -> str:
        """Text fed to the error detector: problems first, then the raw page."""
        parts = list(self.problems)
        if self.error:
            parts.append(self.error)
        if self.body:
            parts.append(self.body)
        return "\n".join(parts)


def fetch_page(url: str, timeout: float) -> PageCheck:
    """Blocking HTTP GET; run it in an executor."""
    check = PageCheck(url=url)
    req = urllib.request.Request(url, headers={"User-Agent": "BedrockOrchestrator/1.0"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            check.status = resp.status
            check.body = resp.read(_MAX_BODY_BYTES).decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        check.status = e.code
        try:
            check.body = e.read(_MAX_BODY_BYTES).decode("utf-8", errors="replace")
        except OSError:
            check.body = ""
    except (urllib.error.URLError, OSError) as e:
        reason = getattr(e, "reason", e)
        check.error = f"Could not load page: {reason}"
        return check

    for marker in ERROR_MARKERS:
        for line in check.body.splitlines():
            if marker in line:
                check.problems.append(line.strip()[:500])
                break
    if check.status != 200:
        check.problems.append(f"HTTP status {check.status}")
    return check


async def check_page(url: str, timeout: float) -> PageCheck:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fetch_page, normalize_url(url), timeout)


def describe_check(check: PageCheck) -> ToolResult:
    if check.ok:
        return ToolResult(
            success=True,
            output=f"✅ Page validation successful: {check.url} loaded correctly (HTTP {check.status}), no errors detected.",
        )
    lines = [f"❌ Page validation failed: {check.url}"]
    if check.error:
        lines.append(check.error)
    for problem in check.problems:
        lines.append(f"- {problem}")
    if any("require is not defined" in p for p in check.problems):
        lines.append("Note: Node-only syntax (require) is being used in browser code; use ES imports instead.")
    return ToolResult(success=False, output="", error="\n".join(lines))


async def validate_page(tc: ToolContext, args: Dict[str, Any]) -> ToolResult:
    url = normalize_url(args.get("url") or "")
    if not url:
        return ToolResult(success=False, output="", error="Error: url is required")
    timeout = tc.settings.validate_timeout
    if args.get("timeout"):
        try:
            timeout = max(1.0, float(args["timeout"]) / 1000.0)
        except (TypeError, ValueError):
            pass
    check = await check_page(url, timeout)
    logger.info(f"validate_page {url}: status={check.status} problems={len(check.problems)}")
    return describe_check(check)


async def open_browser_preview(tc: ToolContext, args: Dict[str, Any]) -> ToolResult:
    url = normalize_url(args.get("url") or "")
    if not url:
        return ToolResult(success=False, output="", error="Error: url is required")
    if tc.open_preview is None:
        return ToolResult(success=False, output="", error="Error: No browser preview is attached to this runtime.")
    await tc.open_preview(url)
    return ToolResult(success=True, output=f"Opened {url} in the built-in browser preview.")
