"""Tests for skills and the plugin tool bridge."""

import asyncio

import pytest

from tools.providers import MAX_TOOL_NAME, PluginBridge, Skill, SkillProvider, namespaced_tool_name


class FakePluginClient:
    def __init__(self, tools=None, fail_listing=False, delay=0.0):
        self.tools = tools or []
        self.fail_listing = fail_listing
        self.delay = delay
        self.calls = []

    async def list_tools(self):
        if self.fail_listing:
            raise RuntimeError("server offline")
        return self.tools

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if name == "slow":
            await asyncio.sleep(self.delay)
        if name == "explode":
            raise RuntimeError("boom")
        return {"echo": arguments}


def test_namespaced_names_are_sanitized_and_capped():
    assert namespaced_tool_name("my server", "do.thing") == "myserver__dothing"
    long_name = namespaced_tool_name("s" * 40, "t" * 40)
    assert len(long_name) == MAX_TOOL_NAME
    assert namespaced_tool_name("a", "b", taken={"a__b"}) != "a__b"


def test_skill_names_are_sanitized():
    provider = SkillProvider()
    assert provider.add(Skill("web search!", "Search", "steps")) == "websearch"
    assert provider.has("websearch")
    assert provider.schemas()[0]["input_schema"] == {"type": "object", "properties": {}}


@pytest.mark.asyncio
async def test_skill_returns_its_instructions_without_running_anything(tmp_path):
    provider = SkillProvider([Skill("deploy", "Ship it", "Run ./run.sh from the skill directory.", str(tmp_path))])
    result = await provider.invoke("deploy", {"force": True})
    assert result.success
    assert result.text.startswith("[SKILL LOADED: deploy]\n")
    assert f"SKILL DIRECTORY: {tmp_path}" in result.text
    assert "Run ./run.sh from the skill directory." in result.text


@pytest.mark.asyncio
async def test_unknown_skill_is_not_found():
    result = await SkillProvider().invoke("ghost", {})
    assert not result.success
    assert result.text == "Error: Tool 'ghost' not found."


@pytest.mark.asyncio
async def test_refresh_merges_servers_and_skips_failures():
    bridge = PluginBridge(timeout=1)
    bridge.add_server("files", FakePluginClient([
        {"name": "search", "description": "Search files", "inputSchema": {"type": "object", "properties": {"q": {"type": "string"}}}},
    ]))
    bridge.add_server("broken", FakePluginClient(fail_listing=True))
    schemas = await bridge.refresh(reserved={"read_file"})
    assert [s["name"] for s in schemas] == ["files__search"]
    assert schemas[0]["input_schema"]["properties"]["q"]["type"] == "string"
    assert bridge.has("files__search")


@pytest.mark.asyncio
async def test_invoke_routes_to_original_tool_name():
    client = FakePluginClient([{"name": "search"}])
    bridge = PluginBridge(timeout=1)
    bridge.add_server("files", client)
    await bridge.refresh()
    result = await bridge.invoke("files__search", {"q": "todo"})
    assert result.success
    assert client.calls == [("search", {"q": "todo"})]
    assert '"echo"' in result.output


@pytest.mark.asyncio
async def test_invoke_failures_become_error_results():
    bridge = PluginBridge(timeout=0.05)
    bridge.add_server("srv", FakePluginClient([{"name": "explode"}, {"name": "slow"}], delay=0.5))
    await bridge.refresh()

    exploded = await bridge.invoke("srv__explode", {})
    assert not exploded.success
    assert "boom" in exploded.text

    slow = await bridge.invoke("srv__slow", {})
    assert not slow.success
    assert "timed out" in slow.text

    missing = await bridge.invoke("srv__nothing", {})
    assert missing.text == "Error: Tool 'srv__nothing' not found."


@pytest.mark.asyncio
async def test_removed_server_drops_its_tools():
    bridge = PluginBridge()
    bridge.add_server("srv", FakePluginClient([{"name": "a"}]))
    await bridge.refresh()
    bridge.remove_server("srv")
    assert not bridge.has("srv__a")
    assert await bridge.refresh() == []
