"""
willow/config.py — YAML settings for the conversation service and intake client.

``load_config`` reads a YAML file, substitutes ``${NAME}`` / ``${NAME:-fallback}``
environment references, and validates the result into :class:`WillowConfig`.
The module-level ``config`` holds the settings named by ``$WILLOW_CONFIG``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "config.yaml"


class ServerConfig(BaseModel):
    """Where ``willow serve`` listens. An empty ``api_key`` disables Bearer auth."""

    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""


class ModelsConfig(BaseModel):
    conversation: str = "claude-sonnet-4-5-20250929"
    extraction: str = "claude-sonnet-4-5-20250929"


class ApiKeysConfig(BaseModel):
    anthropic: Optional[str] = None
    openai: Optional[str] = None


class GenerationConfig(BaseModel):
    max_tokens: int = 1024
    extract_max_tokens: int = 512
    temperature: float = 0.7


class IntakeConfig(BaseModel):
    """Where an intake session sends its conversation and backing-entity calls."""

    api_base_url: str = "http://localhost:8000/api/v1"
    access_token: str = ""
    request_timeout: float = 60.0


class WillowConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    api_keys: ApiKeysConfig = Field(default_factory=ApiKeysConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    intake: IntakeConfig = Field(default_factory=IntakeConfig)


# ---------------------------------------------------------------------------
# ${ENV} substitution
# ---------------------------------------------------------------------------

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}")


def _substitute(match: re.Match) -> str:
    value = os.environ.get(match.group("name"))
    if value is not None:
        return value
    fallback = match.group("fallback")
    # Unset with no fallback: leave the reference visible in the config
    return fallback if fallback is not None else match.group(0)


def _expand_env_vars(node: Any) -> Any:
    """Walk parsed YAML and substitute environment references inside strings."""
    if isinstance(node, str):
        return _ENV_REF.sub(_substitute, node)
    if isinstance(node, list):
        return [_expand_env_vars(item) for item in node]
    if isinstance(node, dict):
        return {key: _expand_env_vars(item) for key, item in node.items()}
    return node


def load_config(path: str | Path = DEFAULT_CONFIG_PATH) -> WillowConfig:
    """Read ``path`` into a :class:`WillowConfig`.

    Sections and keys left out of the file keep their defaults; an empty file
    yields an all-default config.

    Raises:
        FileNotFoundError: ``path`` does not exist.
        yaml.YAMLError: The file is not valid YAML.
        pydantic.ValidationError: A value has the wrong type.
    """
    source = Path(path)
    if not source.is_file():
        raise FileNotFoundError(f"No Willow config at {source.resolve()}")
    data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    return WillowConfig.model_validate(_expand_env_vars(data))


#: Settings named by $WILLOW_CONFIG; defaults when that file is absent.
config: WillowConfig = WillowConfig()


def _init_global_config(path: str | None = None) -> None:
    global config
    try:
        config = load_config(path or os.environ.get("WILLOW_CONFIG", DEFAULT_CONFIG_PATH))
    except FileNotFoundError:
        config = WillowConfig()


_init_global_config()
