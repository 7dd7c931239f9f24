"""Tests for Bedrock request building, stream decoding and error translation."""

import json
import os

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from bedrock_service import BedrockError, BedrockService, StreamDecoder, bedrock_error_from
from config import RuntimeConfig


class FakeClient:
    def __init__(self, events=(), error=None):
        self.events = events
        self.error = error
        self.requests = []

    def invoke_model_with_response_stream(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        return {"body": [{"chunk": {"bytes": json.dumps(e).encode()}} for e in self.events]}


@pytest.fixture
def service(monkeypatch):
    client = FakeClient()
    monkeypatch.setattr(BedrockService, "_create_client", lambda self, rc: client)
    svc = BedrockService(RuntimeConfig("anthropic.claude-3-5-haiku-20241022-v1:0", 20000))
    svc.fake = client
    return svc


WIRE_EVENTS = [
    {"type": "message_start", "message": {"usage": {"input_tokens": 12}}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}},
    {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "hmm"}},
    {"type": "content_block_delta", "delta": {"type": "signature_delta", "signature": "ab"}},
    {"type": "content_block_delta", "delta": {"type": "signature_delta", "signature": "cd"}},
    {"type": "content_block_stop", "index": 0},
    {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "tu_1", "name": "list_dir"}},
    {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '{"path": '}},
    {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": ""}},
    {"type": "content_block_stop", "index": 1},
    {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
    {"type": "message_stop"},
]


def test_decoder_flattens_wire_events():
    decoder = StreamDecoder()
    chunks = [c for event in WIRE_EVENTS for c in decoder.feed(event)]
    assert [c["type"] for c in chunks] == [
        "usage_start", "thinking_start", "thinking", "thinking_end",
        "tool_use_start", "tool_use_delta", "tool_use_end", "message_end",
    ]
    assert chunks[3]["signature"] == "abcd"
    assert chunks[4]["data"] == {"id": "tu_1", "name": "list_dir"}
    assert chunks[-1]["stop_reason"] == "tool_use"


def test_stream_goes_through_client(service):
    service.fake.events = WIRE_EVENTS
    chunks = list(service.generate_response_stream([{"role": "user", "content": "hi"}], "sys"))
    assert chunks[-1]["type"] == "message_end"
    request = service.fake.requests[0]
    assert request["modelId"] == "anthropic.claude-3-5-haiku-20241022-v1:0"
    body = json.loads(request["body"])
    assert body["system"] == "sys"
    # capped to what the model can produce
    assert body["max_tokens"] == 8192


def test_stream_errors_become_bedrock_errors(service):
    service.fake.error = ClientError(
        {"Error": {"Code": "ThrottlingException", "Message": "Too many requests"}}, "InvokeModelWithResponseStream",
    )
    with pytest.raises(BedrockError) as info:
        list(service.generate_response_stream([{"role": "user", "content": "hi"}]))
    assert info.value.status == 429
    assert info.value.code == "ThrottlingException"


def test_thinking_budget_leaves_room_for_answer(service):
    rc = RuntimeConfig("us.anthropic.claude-sonnet-4-5-20250929-v1:0", 4000, enable_thinking=True)
    body = service.format_request_body([], None, rc)
    assert body["thinking"] == {"type": "enabled", "budget_tokens": 2000}
    assert "system" not in body


def test_inference_profile_prefix(service):
    assert service._get_model_identifier("anthropic.claude-sonnet-4-5-20250929-v1:0", "eu-west-1") == \
        "eu.anthropic.claude-sonnet-4-5-20250929-v1:0"
    assert service._get_model_identifier("us.anthropic.claude-opus-4-5-20251101-v1:0", "us-east-1") == \
        "us.anthropic.claude-opus-4-5-20251101-v1:0"


def test_error_translation():
    dropped = bedrock_error_from(EndpointConnectionError(endpoint_url="https://bedrock"))
    assert (dropped.status, dropped.code) == (503, "ConnectionError")
    assert bedrock_error_from(ValueError("odd")).message == "odd"


def test_reconfigure_rebuilds_client_only_for_connection_changes(service, monkeypatch):
    built = []
    monkeypatch.setattr(BedrockService, "_create_client", lambda self, rc: built.append(rc) or FakeClient())
    service.reconfigure(service.runtime_config.updated(model_id="other", max_tokens=10))
    assert built == []
    service.reconfigure(service.runtime_config.updated(endpoint_url="http://localhost:9999"))
    assert len(built) == 1
    assert service.model_id == "other"


def test_api_key_stays_on_its_own_client(monkeypatch):
    from botocore import UNSIGNED
    from botocore.awsrequest import AWSRequest

    import bedrock_service

    monkeypatch.delenv("AWS_BEARER_TOKEN_BEDROCK", raising=False)
    monkeypatch.setattr(bedrock_service.aws_config, "profile_name", "")
    first = BedrockService(RuntimeConfig("m", 1024, api_key="key-one"))
    second = BedrockService(RuntimeConfig("m", 1024, api_key="key-two"))

    def signed_header(service):
        request = AWSRequest(method="POST", url="https://bedrock-runtime.us-east-1.amazonaws.com", headers={})
        service.client.meta.events.emit(
            "before-sign.bedrock-runtime.InvokeModelWithResponseStream", request=request,
        )
        return request.headers.get("Authorization")

    assert signed_header(first) == "Bearer key-one"
    assert signed_header(second) == "Bearer key-two"
    assert first.client.meta.config.signature_version is UNSIGNED
    assert "AWS_BEARER_TOKEN_BEDROCK" not in os.environ

    first.reconfigure(first.runtime_config.updated(api_key=""))
    assert signed_header(first) is None
    assert signed_header(second) == "Bearer key-two"
