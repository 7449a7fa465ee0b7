"""
Configuration file loading.

Relative paths resolve against the project root. Only the braced forms
``${VAR}`` and ``${VAR:-default}`` are expanded: prompts and greetings are
free text and may contain a bare ``$``.
"""

import os
import re
from pathlib import Path
from typing import Mapping, Optional

import yaml

from ..errors import ConfigurationError

# Project root directory (parent of the voice_agent package)
_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()

DEFAULT_CONFIG_PATH = "config/voice-agent.yaml"

_ENV_REF = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}")


def resolve_config_path(path: str) -> str:
    if not os.path.isabs(path):
        return os.path.join(_PROJ_DIR, path)
    return path


def expand_env_refs(text: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Substitute ``${VAR}`` / ``${VAR:-default}`` references.

    An unset variable with no default is left as written so the bad value is
    visible in validation errors rather than silently becoming empty.
    """
    env = os.environ if environ is None else environ

    def _replace(match: "re.Match[str]") -> str:
        value = env.get(match.group("name"))
        if value:
            return value
        default = match.group("default")
        if default is not None:
            return default
        return match.group(0) if value is None else value

    return _ENV_REF.sub(_replace, text)


def load_yaml_with_env_expansion(path: str) -> dict:
    """
    Read a YAML config file, expand environment references, and parse it.

    An empty file yields an empty dict.

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        ConfigurationError: If the document is not a mapping of sections
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            config_str = f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        config_data = yaml.safe_load(expand_env_refs(config_str))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration {path}: {e}")

    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping of sections, got {type(config_data).__name__}")
    return config_data
