"""
Configuration package for the voice agent.

This package contains:
- schema: pydantic models (AppConfig and its sections)
- loaders: YAML file loading and parsing
- security: credential injection and environment overrides
"""

import os
from typing import List, Tuple

from ..logging_config import get_logger
from .loaders import DEFAULT_CONFIG_PATH, load_yaml_with_env_expansion, resolve_config_path
from .schema import (
    HEYPIXA_CHECKPOINTS,
    SUPPORTED_TELEPHONY_RATES,
    AppConfig,
    AudioConfig,
    CerebrasConfig,
    DeepgramConfig,
    EchoConfig,
    ElevenLabsConfig,
    HeyPixaConfig,
    LLMConfig,
    LoggingConfig,
    OpenAIConfig,
    ServerConfig,
    SessionConfig,
    TelephonyConfig,
    TTSConfig,
    TurnConfig,
)
from .security import apply_env_overrides, inject_provider_api_keys

logger = get_logger(__name__)


def load_config(path: str = DEFAULT_CONFIG_PATH) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    A missing file is not an error: the service runs on model defaults plus
    environment variables, which is how container deployments configure it.

    Raises:
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If a value fails validation
    """
    path = resolve_config_path(path)
    if os.path.exists(path):
        config_data = load_yaml_with_env_expansion(path)
    else:
        logger.info("Configuration file not found; using defaults", path=path)
        config_data = {}

    inject_provider_api_keys(config_data)
    apply_env_overrides(config_data)

    return AppConfig(**config_data)


def validate_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Validate configuration before serving calls.

    Returns:
        (errors, warnings): errors block startup, warnings are logged.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not config.deepgram.api_key:
        errors.append("DEEPGRAM_API_KEY is not set")

    llm_provider = config.llm.provider.lower()
    if llm_provider == "cerebras":
        if not config.cerebras.api_key:
            errors.append("llm.provider is cerebras but CEREBRAS_API_KEY is not set")
    elif llm_provider == "openai":
        if not config.openai.api_key:
            errors.append("OPENAI_API_KEY is not set")
    else:
        errors.append(f"Unknown llm.provider: {config.llm.provider} (must be openai or cerebras)")

    uses_elevenlabs = config.tts.provider == "elevenlabs" or bool(config.tts.elevenlabs_number)
    uses_heypixa = config.tts.provider == "heypixa" or bool(config.tts.heypixa_number)

    if uses_elevenlabs and not config.elevenlabs.api_key:
        message = "ElevenLabs routing is configured but ELEVENLABS_API_KEY is not set"
        if config.tts.provider == "elevenlabs":
            errors.append(message)
        else:
            warnings.append(message)

    if uses_heypixa:
        if config.heypixa.active_checkpoint not in HEYPIXA_CHECKPOINTS:
            errors.append(
                f"Unknown HeyPixa checkpoint: {config.heypixa.active_checkpoint} (must be one of {', '.join(HEYPIXA_CHECKPOINTS)})"
            )
        elif not config.heypixa.active_endpoint:
            errors.append(f"HeyPixa endpoint not configured for checkpoint: {config.heypixa.active_checkpoint}")

    if config.session.history_limit < 2:
        errors.append(f"session.history_limit must be >= 2 (got {config.session.history_limit})")

    if not 1 <= config.server.port <= 65535:
        errors.append(f"server.port {config.server.port} out of valid range (1-65535)")

    if config.turn.silence_timeout_ms < 100:
        warnings.append(f"Silence timeout very small: {config.turn.silence_timeout_ms}ms (turns may be cut short)")
    if config.echo.echo_window_ms > 8000:
        warnings.append(f"Echo window very large: {config.echo.echo_window_ms}ms (caller speech may be ignored)")
    if not (config.telephony.auth_id and config.telephony.auth_token):
        warnings.append("Plivo credentials not set (PLIVO_AUTH_ID / PLIVO_AUTH_TOKEN)")
    if config.server.host.startswith("localhost") or config.server.host.startswith("127."):
        warnings.append("server.host is local; Plivo cannot reach the media stream URL from outside")
    if config.logging.level.upper() == "DEBUG" or os.getenv("LOG_LEVEL", "info").lower() == "debug":
        warnings.append("Debug logging enabled (logs transcripts, increases volume)")

    return errors, warnings


__all__ = [
    "SUPPORTED_TELEPHONY_RATES",
    "HEYPIXA_CHECKPOINTS",
    "AppConfig",
    "AudioConfig",
    "CerebrasConfig",
    "DeepgramConfig",
    "EchoConfig",
    "ElevenLabsConfig",
    "HeyPixaConfig",
    "LLMConfig",
    "LoggingConfig",
    "OpenAIConfig",
    "ServerConfig",
    "SessionConfig",
    "TelephonyConfig",
    "TTSConfig",
    "TurnConfig",
    "load_config",
    "validate_config",
]
