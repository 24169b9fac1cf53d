"""
Engine configuration for agentrelay.

Settings live in config/agentrelay.yaml (override with AGENTRELAY_CONFIG).
Every section is optional; missing keys fall back to the defaults declared
on the pydantic models below.
"""
import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .core.exceptions import ConfigurationError
from .core.schemas import BashPolicy, PermissionMode, PermissionRule

logger = logging.getLogger(__name__)

PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = PROJECT_ROOT / "config"
DEFAULT_CONFIG_PATH: Path = CONFIG_DIR / "agentrelay.yaml"

# Per-user configuration directory. Always readable/writable by tools.
USER_CONFIG_DIR: Path = Path(
    os.environ.get("AGENTRELAY_HOME", str(Path.home() / ".agentrelay"))
)

# Per-workspace settings file, relative to the workspace root
WORKSPACE_SETTINGS_FILE: str = ".agentrelay/settings.yaml"

# User-level list of external tool servers
TOOL_SERVERS_FILE: Path = USER_CONFIG_DIR / "tool_servers.yaml"


class OrchestratorConfig(BaseModel):
    """Tool loop limits and the default permission policy."""

    max_iterations: int = Field(default=10, ge=1)
    approval_timeout_seconds: Optional[float] = Field(
        default=None, description="None waits for a decision indefinitely"
    )
    permission_mode: PermissionMode = "safe"
    bash_policy: BashPolicy = "auto"
    permission_rules: list[PermissionRule] = Field(default_factory=list)


class ExternalToolsConfig(BaseModel):
    """External tool server discovery and execution."""

    discovery_timeout_seconds: float = 5.0
    execution_timeout_seconds: float = 30.0
    cache_ttl_seconds: float = 300.0
    danger_patterns: list[str] = Field(
        default_factory=lambda: [
            "write", "delete", "remove", "exec", "create", "update", "kill",
        ]
    )
    client_name: str = "agentrelay"


class SessionsConfig(BaseModel):
    """Session registry and event buffering."""

    default_backend: str = "claude-cli"
    max_buffered_events: int = Field(default=5000, ge=1)
    terminate_grace_seconds: float = 5.0


class ToolsConfig(BaseModel):
    """Built-in tool limits."""

    bash_default_timeout_ms: int = 120_000
    bash_max_timeout_ms: int = 600_000
    max_output_chars: int = 30_000
    glob_max_results: int = 500
    grep_max_results: int = 500
    webfetch_timeout_seconds: int = 30
    webfetch_max_bytes: int = 5 * 1024 * 1024
    websearch_endpoint: str = "https://html.duckduckgo.com/html/"
    websearch_max_results: int = 10


class BackendsConfig(BaseModel):
    """Backend executables and endpoints."""

    claude_cli_path: str = "claude"
    messages_api_url: str = "https://api.anthropic.com"
    messages_api_key_env: str = "ANTHROPIC_API_KEY"
    messages_api_version: str = "2023-06-01"
    messages_api_max_tokens: int = 8192
    messages_api_timeout_seconds: float = 300.0
    default_model: str = "claude-sonnet-4-5"


class ApiConfig(BaseModel):
    """HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8765
    reload: bool = False
    heartbeat_seconds: float = 15.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


class EngineConfig(BaseModel):
    """Root configuration model."""

    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    external_tools: ExternalToolsConfig = Field(default_factory=ExternalToolsConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    backends: BackendsConfig = Field(default_factory=BackendsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Read a YAML mapping from disk.

    Returns an empty dict when the file does not exist or is empty.

    Raises:
        ConfigurationError: If the file cannot be parsed or is not a mapping.
    """
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a mapping at the top of {path}")
    return data


def load_engine_config(path: Optional[Path] = None) -> EngineConfig:
    """
    Load and validate the engine configuration.

    Args:
        path: Explicit config path. Defaults to AGENTRELAY_CONFIG or
              config/agentrelay.yaml.

    Raises:
        ConfigurationError: If the YAML is malformed or fails validation.
    """
    if path is None:
        env_path = os.environ.get("AGENTRELAY_CONFIG")
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    data = load_yaml_file(path)
    try:
        config = EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e

    logger.info(f"Loaded engine config from {path}" if data else "Using default engine config")
    return config


_engine_config: Optional[EngineConfig] = None


def get_engine_config() -> EngineConfig:
    """Get the process-wide engine config, loading it on first use."""
    global _engine_config
    if _engine_config is None:
        _engine_config = load_engine_config()
    return _engine_config


def reset_engine_config() -> None:
    """Drop the cached config (used by tests)."""
    global _engine_config
    _engine_config = None
