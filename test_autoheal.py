"""Tests for dev-server error detection, fixing and the heal loop."""

import json
import os

import pytest

from conftest import read, write
from runtime.autoheal import (
    AutoHealLoop,
    ErrorDetector,
    ErrorFixer,
    HealReport,
    extract_package_name,
    is_relative_import,
)
from runtime.registry import CancellationToken
from tools.browser_ops import PageCheck


class FakeBackend:
    def __init__(self, result=("done", "", 0)):
        self.result = result
        self.commands = []

    async def run_command(self, command, cwd, timeout=60):
        self.commands.append((command, cwd))
        return self.result


def scripted_check(*pages):
    remaining = list(pages)
    seen = []

    async def check(url, timeout):
        seen.append(url)
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    check.seen = seen
    return check


def broken_page(body):
    return PageCheck(url="http://localhost:3000", status=500, body=body, problems=["HTTP status 500"])


def healthy_page():
    return PageCheck(url="http://localhost:3000", status=200, body="<div id='root'></div>")


@pytest.mark.parametrize("path,expected", [
    ("lodash", "lodash"),
    ("lodash/debounce", "lodash"),
    ("@ant-design/icons/lib/x", "@ant-design/icons"),
    ("codemirror/theme/default.css", "codemirror"),
    ("dayjs?v=123", "dayjs"),
])
def test_extract_package_name(path, expected):
    assert extract_package_name(path) == expected


def test_relative_imports():
    assert is_relative_import("./a")
    assert is_relative_import("@/components/x")
    assert not is_relative_import("react")


# ============================================================
# Detection
# ============================================================

def test_missing_dependency(tmp_path):
    errors = ErrorDetector().detect('Failed to resolve import "lodash/debounce" from "src/main.js". Does the file exist?', str(tmp_path))
    assert len(errors) == 1
    err = errors[0]
    assert err.type == "missing_dependency"
    assert err.fixable
    assert err.package_name == "lodash"


def test_relative_import_is_not_fixable(tmp_path):
    err = ErrorDetector().detect('Failed to resolve import "./utils/helper" from "src/main.js"', str(tmp_path))[0]
    assert err.type == "import_error"
    assert not err.fixable
    assert err.file_path == os.path.join(str(tmp_path), "src", "main.js")


def test_missing_stylesheet_is_css_error(tmp_path):
    err = ErrorDetector().detect('Failed to resolve import "./styles/missing.css" from "src/main.js"', str(tmp_path))[0]
    assert err.type == "css_error"
    assert err.fixable
    assert err.import_path == "./styles/missing.css"


def test_vite_import_analysis(tmp_path):
    err = ErrorDetector().detect('[plugin:vite:import-analysis] Cannot import from "react-icons/fa"', str(tmp_path))[0]
    assert err.type == "import_error"
    assert err.fixable
    assert err.package_name == "react-icons"


def test_require_in_browser_and_syntax_error(tmp_path):
    text = (
        "Uncaught ReferenceError: require is not defined at http://localhost:3000/src/main.js:3:15\n"
        "SyntaxError: Unexpected token (5:10) at src/App.jsx:5:10\n"
    )
    errors = ErrorDetector().detect(text, str(tmp_path))
    assert [e.type for e in errors] == ["node_only_syntax", "syntax_error"]
    assert errors[0].fixable
    assert not errors[1].fixable
    assert errors[1].line == 5


def test_duplicates_are_collapsed(tmp_path):
    line = 'Cannot find module "express"'
    assert len(ErrorDetector().detect(f"{line}\n{line}\n", str(tmp_path))) == 1


# ============================================================
# Fixing
# ============================================================

@pytest.mark.asyncio
async def test_install_missing_package(tmp_path):
    backend = FakeBackend(("+ lodash 4.17.21", "", 0))
    result = await ErrorFixer(backend).install_package("lodash", str(tmp_path))
    assert result.success and result.applied
    assert backend.commands == [("pnpm add lodash", str(tmp_path))]


@pytest.mark.asyncio
async def test_declared_package_is_skipped(tmp_path):
    write(str(tmp_path / "package.json"), json.dumps({"dependencies": {"lodash": "^4.0.0"}}))
    backend = FakeBackend()
    result = await ErrorFixer(backend).install_package("lodash", str(tmp_path))
    assert result.success
    assert not result.applied
    assert backend.commands == []


@pytest.mark.asyncio
async def test_install_failure_and_warnings(tmp_path):
    failed = await ErrorFixer(FakeBackend(("", "ERR_PNPM_FETCH_404", 1))).install_package("nope-pkg", str(tmp_path))
    assert not failed.success
    assert "ERR_PNPM_FETCH_404" in failed.message

    warned = await ErrorFixer(FakeBackend(("ok", "WARN deprecated inflight", 0))).install_package("glob", str(tmp_path))
    assert warned.success


@pytest.mark.asyncio
async def test_missing_stylesheet_import_is_removed(tmp_path):
    main = str(tmp_path / "src" / "main.js")
    write(main, "import './styles/missing.css';\nimport App from './App';\n")
    err = ErrorDetector().detect('Failed to resolve import "./styles/missing.css" from "src/main.js"', str(tmp_path))[0]
    result = await ErrorFixer(FakeBackend()).fix(err, str(tmp_path))
    assert result.action == "removed_import"
    assert read(main) == "import App from './App';\n"


@pytest.mark.asyncio
async def test_missing_theme_is_swapped_for_existing_one(tmp_path):
    main = str(tmp_path / "src" / "main.js")
    write(main, "import './theme/missing.css';\n")
    write(str(tmp_path / "src" / "theme" / "light.css"), "")
    write(str(tmp_path / "src" / "theme" / "dark.css"), "")
    err = ErrorDetector().detect('Failed to resolve import "./theme/missing.css" from "src/main.js"', str(tmp_path))[0]
    result = await ErrorFixer(FakeBackend()).fix(err, str(tmp_path))
    assert result.action == "fixed_import"
    assert read(main) == "import './theme/dark.css';\n"


@pytest.mark.asyncio
async def test_require_calls_are_rewritten(tmp_path):
    main = str(tmp_path / "src" / "main.js")
    write(main, "const _ = require('lodash');\nlet { a, b } = require(\"./x\");\nconsole.log(_);\n")
    err = ErrorDetector().detect("require is not defined at http://localhost:3000/src/main.js:1:11", str(tmp_path))[0]
    result = await ErrorFixer(FakeBackend()).fix(err, str(tmp_path))
    assert result.action == "rewrote_require"
    assert read(main) == "import _ from 'lodash';\nimport { a, b } from './x';\nconsole.log(_);\n"


@pytest.mark.asyncio
async def test_unfixable_error_is_skipped(tmp_path):
    err = ErrorDetector().detect("SyntaxError: Unexpected token at src/App.jsx:5:10", str(tmp_path))[0]
    result = await ErrorFixer(FakeBackend()).fix(err, str(tmp_path))
    assert not result.success
    assert result.action == "skipped"


# ============================================================
# Loop
# ============================================================

@pytest.mark.asyncio
async def test_loop_installs_then_reports_healthy(tmp_path, settings):
    backend = FakeBackend()
    check = scripted_check(broken_page('Failed to resolve import "lodash" from "src/main.js".'), healthy_page())
    report = await AutoHealLoop(backend, settings, check=check).heal("http://localhost:3000", str(tmp_path))

    assert report.healthy
    assert report.attempts == 2
    assert backend.commands == [("pnpm add lodash", str(tmp_path))]
    summary = report.summary()
    assert "[Auto-heal] Page loaded without errors after 2 check(s)." in summary
    assert "Successfully installed lodash" in summary


@pytest.mark.asyncio
async def test_loop_stops_when_nothing_is_fixable(tmp_path, settings):
    check = scripted_check(broken_page("SyntaxError: Unexpected token at src/App.jsx:5:10"))
    report = await AutoHealLoop(FakeBackend(), settings, check=check).heal("http://localhost:3000", str(tmp_path))

    assert not report.healthy
    assert report.attempts == 1
    assert report.remaining[0].type == "syntax_error"
    assert "syntax_error" in report.summary()


@pytest.mark.asyncio
async def test_loop_is_bounded(tmp_path, settings):
    # every install "succeeds" yet the page never recovers
    check = scripted_check(broken_page('Cannot find module "left-pad"'))
    backend = FakeBackend()
    report = await AutoHealLoop(backend, settings, check=check).heal("http://localhost:3000", str(tmp_path))

    assert report.attempts == settings.auto_heal_attempts
    assert len(backend.commands) == settings.auto_heal_attempts
    assert not report.healthy


@pytest.mark.asyncio
async def test_loop_reads_new_log_output(tmp_path, settings):
    log_path = str(tmp_path / "dev.log")
    write(log_path, "VITE ready\nError: Cannot find module 'express'\n")
    backend = FakeBackend()
    check = scripted_check(healthy_page())
    report = await AutoHealLoop(backend, settings, check=check).heal(
        "http://localhost:3000", str(tmp_path), log_path=log_path,
    )
    assert report.healthy
    assert report.attempts == 2
    assert backend.commands == [("pnpm add express", str(tmp_path))]


@pytest.mark.asyncio
async def test_loop_honours_cancellation(tmp_path, settings):
    token = CancellationToken()
    token.cancel()
    check = scripted_check(healthy_page())
    report = await AutoHealLoop(FakeBackend(), settings, check=check).heal(
        "http://localhost:3000", str(tmp_path), cancel=token,
    )
    assert report.cancelled
    assert check.seen == []
    assert "aborted" in report.summary()


@pytest.mark.asyncio
async def test_dispatcher_runs_auto_heal_after_server_start(make_runtime, settings, workspace):
    settings.auto_heal_enabled = True
    runtime, _, _ = make_runtime()
    runtime.dispatcher.auto_heal = AutoHealLoop(FakeBackend(), settings, check=scripted_check(healthy_page()))
    ctx = runtime.registry.acquire("t1")
    tc = runtime.dispatcher.tool_context(ctx, runtime.emit)

    summary = await tc.on_server_started("http://localhost:3000", workspace, "")
    assert summary.startswith("[Auto-heal] Page loaded without errors after 1 check(s).")


def test_report_summary_lists_remaining_errors():
    report = HealReport(attempts=2)
    assert "still has problems after 2 check(s)" in report.summary()
