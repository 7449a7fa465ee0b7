"""
Security-critical configuration injection.

This module handles:
- Provider API keys and Plivo credentials (ONLY from environment variables)
- Deployment overrides read from the environment (voices, endpoints, routing)
- Environment variable token expansion

SECURITY POLICY:
- API keys and auth tokens MUST NEVER be in YAML files
- All credentials MUST come from environment variables only
"""

import os
from typing import Any, Dict, Optional

from .loaders import expand_env_refs

# section -> (field, env var)
_SECRET_ENV_VARS = {
    "deepgram": (("api_key", "DEEPGRAM_API_KEY"),),
    "openai": (("api_key", "OPENAI_API_KEY"),),
    "cerebras": (("api_key", "CEREBRAS_API_KEY"),),
    "elevenlabs": (("api_key", "ELEVENLABS_API_KEY"),),
    "telephony": (("auth_id", "PLIVO_AUTH_ID"), ("auth_token", "PLIVO_AUTH_TOKEN")),
}

_OVERRIDE_ENV_VARS = {
    "tts": (
        ("provider", "TTS_PROVIDER"),
        ("elevenlabs_number", "ELEVENLABS_PHONE_NUMBER"),
        ("heypixa_number", "HEYPIXA_PHONE_NUMBER"),
    ),
    "openai": (("model", "OPENAI_MODEL"),),
    "heypixa": (
        ("active_checkpoint", "HEYPIXA_ACTIVE_CHECKPOINT"),
        ("voice", "HEYPIXA_VOICE"),
    ),
    "elevenlabs": (
        ("voice_id", "ELEVENLABS_VOICE_ID"),
        ("model_id", "ELEVENLABS_MODEL_ID"),
    ),
    "server": (
        ("host", "SERVER_HOST"),
        ("port", "PORT"),
    ),
}


def _is_nonempty_string(val: Any) -> bool:
    """True if val is a string with non-whitespace content."""
    return isinstance(val, str) and val.strip() != ""


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    block = config_data.get(name)
    if not isinstance(block, dict):
        block = {}
    config_data[name] = block
    return block


def expand_string_tokens(value: str) -> str:
    """
    Expand environment variable tokens in a string.

    Same rules as the YAML loader: ${VAR} and ${VAR:-default}; an undefined
    variable is left unchanged and a bare $ is literal text.
    """
    return expand_env_refs(value or "")


def inject_provider_api_keys(config_data: Dict[str, Any]) -> None:
    """
    Inject provider API keys and Plivo credentials from environment variables ONLY.

    Any value present in YAML is overwritten, including with None when the
    variable is unset.

    Environment variables:
    - DEEPGRAM_API_KEY, OPENAI_API_KEY, CEREBRAS_API_KEY, ELEVENLABS_API_KEY
    - PLIVO_AUTH_ID, PLIVO_AUTH_TOKEN
    """
    for section_name, fields in _SECRET_ENV_VARS.items():
        block = _section(config_data, section_name)
        for field_name, env_var in fields:
            value: Optional[str] = os.getenv(env_var)
            block[field_name] = value if _is_nonempty_string(value) else None


def apply_env_overrides(config_data: Dict[str, Any]) -> None:
    """
    Apply non-secret deployment overrides from the environment.

    Precedence: env var (if non-empty) > YAML > model default.
    HEYPIXA_ENDPOINT_V1..V3 override the per-checkpoint endpoint map.
    """
    for section_name, fields in _OVERRIDE_ENV_VARS.items():
        for field_name, env_var in fields:
            value = os.getenv(env_var)
            if _is_nonempty_string(value):
                _section(config_data, section_name)[field_name] = value.strip()

    heypixa = _section(config_data, "heypixa")
    endpoints = heypixa.get("endpoints")
    if not isinstance(endpoints, dict):
        endpoints = {}
    for checkpoint in ("V1", "V2", "V3"):
        value = os.getenv(f"HEYPIXA_ENDPOINT_{checkpoint}")
        if _is_nonempty_string(value):
            endpoints[checkpoint] = value.strip()
    if endpoints:
        heypixa["endpoints"] = endpoints

    llm = _section(config_data, "llm")
    prompt_val = llm.get("system_prompt")
    if _is_nonempty_string(prompt_val):
        llm["system_prompt"] = expand_string_tokens(prompt_val)
