"""
Configuration module for Bedrock Orchestrator.
Handles environment variables, the model catalog, and per-invocation runtime settings.
"""

import os
from dataclasses import dataclass, field, replace
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [p for p in raw.split(os.pathsep) if p.strip()]


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")
    endpoint_url: str = os.getenv("BEDROCK_ENDPOINT_URL", "")
    # Bedrock API key (bearer token), alternative to IAM credentials
    api_key: str = os.getenv("AWS_BEARER_TOKEN_BEDROCK", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    enable_thinking: bool = os.getenv("ENABLE_THINKING", "false").lower() == "true"
    thinking_budget: int = int(os.getenv("THINKING_BUDGET", "8000"))


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Bedrock Orchestrator"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    data_dir: str = os.getenv(
        "DATA_DIR", os.path.join(os.path.expanduser("~"), ".bedrock-orchestrator")
    )
    # Conversation loop
    max_tool_iterations: int = int(os.getenv("MAX_TOOL_ITERATIONS", "30"))
    max_intent_reminders: int = int(os.getenv("MAX_INTENT_REMINDERS", "2"))
    # Task registry: an active task older than this is considered stuck
    task_stale_seconds: float = float(os.getenv("TASK_STALE_SECONDS", "60"))
    # Recovery controller
    max_recoveries: int = int(os.getenv("MAX_RECOVERIES", "3"))
    summary_excerpt_chars: int = int(os.getenv("SUMMARY_EXCERPT_CHARS", "200"))
    # Suspension point timeouts (seconds)
    stream_idle_timeout: float = float(os.getenv("STREAM_IDLE_TIMEOUT", "120"))
    command_timeout: float = float(os.getenv("COMMAND_TIMEOUT", "60"))
    validate_timeout: float = float(os.getenv("VALIDATE_TIMEOUT", "15"))
    plugin_timeout: float = float(os.getenv("PLUGIN_TIMEOUT", "15"))
    install_timeout: float = float(os.getenv("INSTALL_TIMEOUT", "120"))
    # 0 = wait until the user answers or the task is aborted
    confirmation_timeout: float = float(os.getenv("CONFIRMATION_TIMEOUT", "0"))
    # Auto-heal loop
    auto_heal_enabled: bool = os.getenv("AUTO_HEAL_ENABLED", "true").lower() == "true"
    auto_heal_attempts: int = int(os.getenv("AUTO_HEAL_ATTEMPTS", "5"))
    auto_heal_startup_delay: float = float(os.getenv("AUTO_HEAL_STARTUP_DELAY", "4"))
    auto_heal_retry_delay: float = float(os.getenv("AUTO_HEAL_RETRY_DELAY", "3"))
    dev_server_port: int = int(os.getenv("DEV_SERVER_PORT", "3000"))
    preview_server_port: int = int(os.getenv("PREVIEW_SERVER_PORT", "4173"))
    # Safety gate
    default_trust_level: str = os.getenv("DEFAULT_TRUST_LEVEL", "standard")
    authorized_folders: List[str] = field(default_factory=lambda: _env_list("AUTHORIZED_FOLDERS"))
    # Runtime manager
    idle_runtime_seconds: float = float(os.getenv("IDLE_RUNTIME_SECONDS", "1800"))
    idle_sweep_seconds: float = float(os.getenv("IDLE_SWEEP_SECONDS", "600"))


@dataclass(frozen=True)
class RuntimeConfig:
    """Backend settings passed explicitly to each invocation.

    Swapped wholesale by ``update_runtime_config``; never mutated in place, so a
    loop that already captured one keeps a consistent view until it finishes.
    """
    model_id: str
    max_tokens: int
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    api_key: Optional[str] = None
    enable_thinking: bool = False
    thinking_budget: int = 8000

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        return cls(
            model_id=model_config.model_id,
            max_tokens=model_config.max_tokens,
            region=aws_config.region,
            endpoint_url=aws_config.endpoint_url or None,
            api_key=aws_config.api_key or None,
            enable_thinking=model_config.enable_thinking,
            thinking_budget=model_config.thinking_budget,
        )

    def updated(
        self,
        model_id: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        api_key: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> "RuntimeConfig":
        """Return a copy with the given fields replaced; None keeps the current value."""
        changes: Dict[str, Any] = {}
        if model_id:
            changes["model_id"] = model_id
        if endpoint_url is not None:
            changes["endpoint_url"] = endpoint_url or None
        if api_key is not None:
            changes["api_key"] = api_key or None
        if max_tokens:
            changes["max_tokens"] = int(max_tokens)
        return replace(self, **changes)

    @property
    def effective_max_tokens(self) -> int:
        return min(self.max_tokens, get_max_output_tokens(self.model_id))


# ============================================================
# Model catalog -- Anthropic Claude on Bedrock
# ============================================================
@dataclass(frozen=True)
class ModelInfo:
    base_id: str
    max_output_tokens: int = 64000
    requires_profile: bool = False
    # 0 = no extended thinking
    thinking_max_budget: int = 0

    @property
    def supports_thinking(self) -> bool:
        return self.thinking_max_budget > 0


MODEL_CATALOG: Dict[str, ModelInfo] = {
    "us.anthropic.claude-opus-4-5-20251101-v1:0": ModelInfo(
        "anthropic.claude-opus-4-5-20251101-v1:0", requires_profile=True, thinking_max_budget=64000,
    ),
    "us.anthropic.claude-sonnet-4-5-20250929-v1:0": ModelInfo(
        "anthropic.claude-sonnet-4-5-20250929-v1:0", requires_profile=True, thinking_max_budget=64000,
    ),
    "us.anthropic.claude-haiku-4-5-20251001-v1:0": ModelInfo(
        "anthropic.claude-haiku-4-5-20251001-v1:0", requires_profile=True, thinking_max_budget=64000,
    ),
    "anthropic.claude-3-5-haiku-20241022-v1:0": ModelInfo(
        "anthropic.claude-3-5-haiku-20241022-v1:0", max_output_tokens=8192,
    ),
}


def model_info(model_id: str) -> ModelInfo:
    """Catalog entry by profile id or base id; unknown ids get a permissive default."""
    if model_id in MODEL_CATALOG:
        return MODEL_CATALOG[model_id]
    for info in MODEL_CATALOG.values():
        if info.base_id == model_id:
            return info
    return ModelInfo(base_id=model_id)


def get_max_output_tokens(model_id: str) -> int:
    return model_info(model_id).max_output_tokens


aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()


def describe_credentials() -> str:
    """One line for the startup banner saying which credential source boto3 will use."""
    if aws_config.api_key:
        return "Bedrock API key"
    if aws_config.has_profile():
        return f"AWS profile {aws_config.profile_name}"
    if aws_config.has_explicit_credentials():
        return "explicit credentials" + (" (with session token)" if aws_config.has_session_token() else "")
    return "default credential chain"
