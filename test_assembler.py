"""Tests for the streaming response assembler."""

from conftest import text_chunks, tool_chunks
from runtime.assembler import INTERRUPTED_MARKER, AssemblerState, StreamAssembler, parse_tool_input
from runtime.events import STREAM_THINKING, STREAM_TOKEN
from runtime.messages import TextBlock, ThinkingBlock, ToolUseBlock


def feed_all(chunks):
    asm = StreamAssembler()
    notes = []
    for chunk in chunks:
        notes.extend(asm.feed(chunk))
    return asm, notes


def test_text_response_becomes_one_block():
    asm, notes = feed_all(text_chunks("Hello there"))
    blocks = asm.finish()
    assert blocks == [TextBlock("Hello there")]
    assert [n.type for n in notes] == [STREAM_TOKEN]
    assert asm.stop_reason == "end_turn"
    assert asm.usage == {"input_tokens": 12, "output_tokens": 7}


def test_tool_input_is_joined_and_parsed():
    asm, _ = feed_all(tool_chunks("tu_1", "read_file", {"path": "/tmp/a.txt"}, text="Reading"))
    blocks = asm.finish()
    assert blocks[0] == TextBlock("Reading")
    assert blocks[1] == ToolUseBlock("tu_1", "read_file", {"path": "/tmp/a.txt"})
    assert asm.tool_uses == [blocks[1]]


def test_malformed_tool_json_becomes_marker():
    asm, _ = feed_all(tool_chunks("tu_1", "write_file", None, raw='{"path": "/x", "content": '))
    block = asm.finish()[0]
    assert isinstance(block, ToolUseBlock)
    assert block.malformed
    assert block.input["raw"] == '{"path": "/x", "content": '


def test_empty_tool_input_is_empty_dict():
    assert parse_tool_input("") == {}
    assert parse_tool_input("[1, 2]")["error"] == "Invalid JSON input"


def test_thinking_keeps_signature_and_order():
    chunks = [
        {"type": "thinking_start", "content": ""},
        {"type": "thinking", "content": "Let me "},
        {"type": "thinking", "content": "think."},
        {"type": "thinking_end", "content": "", "signature": "sig-abc"},
        {"type": "text_start", "content": ""},
        {"type": "text", "content": "Done."},
        {"type": "text_end", "content": ""},
        {"type": "message_end", "content": "", "stop_reason": "end_turn", "usage": {}},
    ]
    asm, notes = feed_all(chunks)
    assert asm.finish() == [ThinkingBlock("Let me think.", "sig-abc"), TextBlock("Done.")]
    assert [n.type for n in notes] == [STREAM_THINKING, STREAM_THINKING, STREAM_TOKEN]


def test_text_without_start_event_is_accepted():
    asm, _ = feed_all([{"type": "text", "content": "implicit"}])
    assert asm.finish() == [TextBlock("implicit")]


def test_stray_events_are_ignored():
    asm = StreamAssembler()
    assert asm.feed({"type": "tool_use_delta", "content": "{}"}) == []
    assert asm.feed({"type": "text_end", "content": ""}) == []
    assert asm.feed({"type": "bogus", "content": ""}) == []
    assert asm.state is AssemblerState.IDLE
    assert asm.finish() == []


def test_consecutive_tool_uses_without_end_events():
    chunks = [
        {"type": "tool_use_start", "content": "", "data": {"id": "a", "name": "list_dir"}},
        {"type": "tool_use_delta", "content": '{"path": "."}'},
        {"type": "tool_use_start", "content": "", "data": {"id": "b", "name": "read_file"}},
        {"type": "tool_use_delta", "content": '{"path": "x"}'},
        {"type": "message_end", "content": "", "stop_reason": "tool_use", "usage": {}},
    ]
    asm, _ = feed_all(chunks)
    assert [b.id for b in asm.finish()] == ["a", "b"]


def test_interrupt_marks_text_and_drops_partial_tool():
    asm = StreamAssembler()
    for chunk in tool_chunks("tu_1", "write_file", {"path": "/a"}, text="Writing now")[:5]:
        asm.feed(chunk)
    assert asm.started
    blocks = asm.interrupt()
    assert blocks == [TextBlock(f"Writing now\n\n{INTERRUPTED_MARKER}")]
    assert asm.state is AssemblerState.FINISHED


def test_interrupt_with_nothing_streamed():
    asm = StreamAssembler()
    assert not asm.started
    assert asm.interrupt() == [TextBlock(INTERRUPTED_MARKER)]
