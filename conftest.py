"""Shared fakes and fixtures for the test suite."""

import json
import os
import threading
from typing import Any, Dict, List, Optional

import pytest

from config import AppConfig, RuntimeConfig
from runtime.core import AgentRuntime
from runtime.events import AgentEvent

# Marker a script can contain to stall the stream until released (or 2s pass)
HANG = object()


def text_chunks(text: str, stop_reason: str = "end_turn") -> List[Dict[str, Any]]:
    return [
        {"type": "usage_start", "content": "", "usage": {"input_tokens": 12}},
        {"type": "text_start", "content": ""},
        {"type": "text", "content": text},
        {"type": "text_end", "content": ""},
        {"type": "message_end", "content": "", "stop_reason": stop_reason, "usage": {"output_tokens": 7}},
    ]


def tool_chunks(tool_id: str, name: str, args: Any, text: str = "", raw: Optional[str] = None) -> List[Dict[str, Any]]:
    payload = raw if raw is not None else json.dumps(args)
    half = len(payload) // 2
    chunks: List[Dict[str, Any]] = []
    if text:
        chunks += [
            {"type": "text_start", "content": ""},
            {"type": "text", "content": text},
            {"type": "text_end", "content": ""},
        ]
    chunks += [
        {"type": "tool_use_start", "content": "", "data": {"id": tool_id, "name": name}},
        {"type": "tool_use_delta", "content": payload[:half]},
        {"type": "tool_use_delta", "content": payload[half:]},
        {"type": "tool_use_end", "content": ""},
        {"type": "message_end", "content": "", "stop_reason": "tool_use", "usage": {}},
    ]
    return chunks


class FakeService:
    """Stands in for BedrockService: each call pops one scripted response.

    A script is a list of chunks (an exception inside it is raised mid-stream)
    or an exception raised before anything is streamed.
    """

    def __init__(self, scripts=None):
        self.scripts = list(scripts or [])
        self.calls: List[Dict[str, Any]] = []
        self.release = threading.Event()
        self.reconfigured: List[RuntimeConfig] = []

    def generate_response_stream(self, messages, system_prompt=None, tools=None, runtime_config=None):
        self.calls.append({
            "messages": messages,
            "system_prompt": system_prompt,
            "tools": tools,
            "runtime_config": runtime_config,
        })
        if not self.scripts:
            raise AssertionError("unexpected model call")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if item is HANG:
                self.release.wait(2)
                continue
            yield item

    def reconfigure(self, runtime_config: RuntimeConfig) -> None:
        self.reconfigured.append(runtime_config)


class Recorder:
    def __init__(self):
        self.events: List[AgentEvent] = []

    async def __call__(self, event: AgentEvent) -> None:
        self.events.append(event)

    def of(self, event_type: str) -> List[AgentEvent]:
        return [e for e in self.events if e.type == event_type]

    @property
    def types(self) -> List[str]:
        return [e.type for e in self.events]


@pytest.fixture
def settings(tmp_path):
    return AppConfig(
        data_dir=str(tmp_path / "data"),
        max_tool_iterations=6,
        max_intent_reminders=1,
        max_recoveries=2,
        stream_idle_timeout=5.0,
        confirmation_timeout=0,
        auto_heal_enabled=False,
        auto_heal_attempts=3,
        auto_heal_startup_delay=0,
        auto_heal_retry_delay=0,
        authorized_folders=[],
    )


@pytest.fixture
def runtime_config():
    return RuntimeConfig(model_id="test-model", max_tokens=1024)


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return str(path)


@pytest.fixture
def make_runtime(settings, runtime_config, workspace, tmp_path):
    """Build an AgentRuntime over a FakeService; returns (runtime, service, recorder)."""
    built = []

    def factory(scripts=None, trust: str = "trust", **kwargs):
        service = FakeService(scripts)
        runtime = AgentRuntime(
            settings=settings,
            runtime_config=runtime_config,
            service=service,
            data_dir=str(tmp_path / "data"),
            **kwargs,
        )
        runtime.authorize_folder(workspace, trust)
        recorder = Recorder()
        runtime.add_listener(recorder)
        built.append(service)
        return runtime, service, recorder

    yield factory
    for service in built:
        service.release.set()


def read(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def write(path: str, content: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
