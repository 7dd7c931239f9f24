"""
Amazon Bedrock service module.
Streams Anthropic Messages responses from Bedrock and normalizes them into
plain chunk dicts the runtime's assembler understands.
"""

import json
import logging
from typing import Generator, List, Dict, Optional, Any

import boto3
from botocore import UNSIGNED
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from config import RuntimeConfig, aws_config, model_info

logger = logging.getLogger(__name__)

# Bedrock error codes -> HTTP-style status, so classification works the same
# way for throttling raised on the initial call and inside the event stream.
_CODE_STATUS = {
    "ThrottlingException": 429,
    "throttlingException": 429,
    "TooManyRequestsException": 429,
    "ServiceQuotaExceededException": 429,
    "ServiceUnavailableException": 503,
    "serviceUnavailableException": 503,
    "InternalServerException": 500,
    "internalServerException": 500,
    "ModelErrorException": 500,
    "ModelStreamErrorException": 500,
    "modelStreamErrorException": 500,
    "ModelTimeoutException": 504,
    "ModelNotReadyException": 503,
    "ValidationException": 400,
    "validationException": 400,
    "AccessDeniedException": 403,
    "UnrecognizedClientException": 401,
    "ExpiredTokenException": 401,
    "InvalidSignatureException": 401,
}


class BedrockError(Exception):
    """Backend failure carrying an HTTP-style status and the provider error code."""

    def __init__(self, message: str, status: Optional[int] = None, code: str = ""):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def __repr__(self) -> str:
        return f"BedrockError(status={self.status!r}, code={self.code!r}, message={self.message!r})"


def bedrock_error_from(exc: Exception) -> BedrockError:
    """Translate a botocore exception into a BedrockError."""
    if isinstance(exc, BedrockError):
        return exc
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        code = err.get("Code", "Unknown")
        message = err.get("Message", str(exc))
        status = _CODE_STATUS.get(code) or exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return BedrockError(message, status=status, code=code)
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)):
        return BedrockError(f"Connection to Bedrock lost: {exc}", status=503, code="ConnectionError")
    if isinstance(exc, NoCredentialsError):
        return BedrockError("AWS credentials not configured.", status=401, code="NoCredentials")
    return BedrockError(str(exc) or type(exc).__name__)


def _bearer_auth(api_key: str):
    """before-sign hook that authenticates one client with a Bedrock API key."""
    def add_header(request, **kwargs):
        request.headers["Authorization"] = f"Bearer {api_key}"
    return add_header


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    One client per service; ``reconfigure`` swaps it without touching callers.
    """

    def __init__(self, runtime_config: Optional[RuntimeConfig] = None):
        self.runtime_config = runtime_config or RuntimeConfig.from_env()
        self.client = self._create_client(self.runtime_config)
        logger.info(f"BedrockService initialized with model: {self.runtime_config.model_id}")

    @property
    def model_id(self) -> str:
        return self.runtime_config.model_id

    def _create_client(self, rc: RuntimeConfig) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": rc.region}
            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            boto_kwargs: Dict[str, Any] = {"read_timeout": 300, "retries": {"max_attempts": 1}}
            if rc.api_key:
                # bearer key replaces SigV4 for this client only
                boto_kwargs["signature_version"] = UNSIGNED
            client_kwargs: Dict[str, Any] = {"config": BotoConfig(**boto_kwargs)}
            if rc.endpoint_url:
                client_kwargs["endpoint_url"] = rc.endpoint_url
            client = session.client("bedrock-runtime", **client_kwargs)
            if rc.api_key:
                client.meta.events.register("before-sign.bedrock-runtime.*", _bearer_auth(rc.api_key))
            return client

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.", status=401, code="NoCredentials")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def reconfigure(self, runtime_config: RuntimeConfig) -> None:
        """Hot-swap model/endpoint/key/max tokens. The client is rebuilt only when needed."""
        previous = self.runtime_config
        needs_client = (
            runtime_config.endpoint_url != previous.endpoint_url
            or runtime_config.api_key != previous.api_key
            or runtime_config.region != previous.region
        )
        if needs_client:
            self.client = self._create_client(runtime_config)
        self.runtime_config = runtime_config
        logger.info(
            f"BedrockService reconfigured: model={runtime_config.model_id}, "
            f"max_tokens={runtime_config.max_tokens}, client_rebuilt={needs_client}"
        )

    def _get_model_identifier(self, model_id: str, region: str) -> str:
        """Use a cross-region inference profile id when the model requires one"""
        if model_id.startswith(("us.", "eu.", "ap.")):
            return model_id
        info = model_info(model_id)
        if info.requires_profile:
            region_prefix = "eu" if region.startswith("eu-") else "ap" if region.startswith("ap-") else "us"
            return f"{region_prefix}.{model_id}"
        return info.base_id

    def format_request_body(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        rc: RuntimeConfig,
        tools: Optional[List[Dict]] = None,
    ) -> Dict[str, Any]:
        """Anthropic Messages request body for Bedrock InvokeModel."""
        max_tokens = rc.effective_max_tokens
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": max_tokens,
            "messages": messages,
        }
        info = model_info(rc.model_id)
        if rc.enable_thinking and info.supports_thinking:
            budget = min(rc.thinking_budget, info.thinking_max_budget)
            # budget must stay below max_tokens with room for the answer
            if budget > max_tokens - 2000:
                budget = max(max_tokens - 2000, 1024)
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = tools
        return body

    def generate_response_stream(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        tools: Optional[List[Dict]] = None,
        runtime_config: Optional[RuntimeConfig] = None,
    ) -> Generator[Dict[str, Any], None, None]:
        """
        Stream a response as normalized chunks (see ``StreamDecoder``).
        Raises BedrockError for every backend failure, including mid-stream drops.
        """
        rc = runtime_config or self.runtime_config
        try:
            model_identifier = self._get_model_identifier(rc.model_id, rc.region)
            request_body = self.format_request_body(messages, system_prompt, rc, tools=tools)

            logger.info(f"Streaming from model: {model_identifier}")

            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json",
            )
            decoder = StreamDecoder()
            for event in response["body"]:
                yield from decoder.feed(json.loads(event["chunk"]["bytes"]))

        except (ClientError, EndpointConnectionError, ConnectionClosedError,
                ReadTimeoutError, NoCredentialsError) as e:
            err = bedrock_error_from(e)
            logger.error(f"Bedrock streaming error: {err.code} ({err.status}) - {err.message}")
            raise err


# ============================================================
# Wire decoding
# ============================================================

class StreamDecoder:
    """Turns Anthropic stream events into the flat chunk dicts the assembler reads.

    Chunk types: thinking_start, thinking, thinking_end, text_start, text,
    text_end, tool_use_start, tool_use_delta, tool_use_end, usage_start,
    message_end. Every chunk carries ``type`` and ``content``.
    """

    # delta type -> (payload key, chunk type)
    DELTAS = {
        "thinking_delta": ("thinking", "thinking"),
        "text_delta": ("text", "text"),
        "input_json_delta": ("partial_json", "tool_use_delta"),
    }

    def __init__(self):
        self.block_type = "text"
        self.signature: Optional[str] = None

    def feed(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        handler = getattr(self, "_on_" + event.get("type", ""), None)
        return handler(event) if handler else []

    def _on_message_start(self, event):
        usage = event.get("message", {}).get("usage", {})
        return [{"type": "usage_start", "content": "", "usage": usage}] if usage else []

    def _on_content_block_start(self, event):
        block = event.get("content_block", {})
        self.block_type = block.get("type", "text")
        if self.block_type not in ("thinking", "text", "tool_use"):
            return []
        chunk: Dict[str, Any] = {"type": f"{self.block_type}_start", "content": ""}
        if self.block_type == "tool_use":
            chunk["data"] = {"id": block.get("id", ""), "name": block.get("name", "")}
        return [chunk]

    def _on_content_block_delta(self, event):
        delta = event.get("delta", {})
        kind = delta.get("type", "")
        if kind == "signature_delta":
            self.signature = (self.signature or "") + delta.get("signature", "")
            return []
        if kind not in self.DELTAS:
            return []
        key, chunk_type = self.DELTAS[kind]
        piece = delta.get(key, "")
        return [{"type": chunk_type, "content": piece}] if piece else []

    def _on_content_block_stop(self, event):
        if self.block_type not in ("thinking", "text", "tool_use"):
            return []
        chunk: Dict[str, Any] = {"type": f"{self.block_type}_end", "content": ""}
        if self.block_type == "thinking":
            chunk["signature"] = self.signature or None
            self.signature = None
        return [chunk]

    def _on_message_delta(self, event):
        return [{
            "type": "message_end",
            "content": "",
            "usage": event.get("usage", {}),
            "stop_reason": event.get("delta", {}).get("stop_reason"),
        }]
