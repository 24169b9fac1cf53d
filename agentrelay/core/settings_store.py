"""
Workspace settings store.

Reads the YAML files that configure sandboxing and external tool servers:

- <workspace>/.agentrelay/settings.yaml, section `sandbox`:
      sandbox:
        enabled: true
        allowed_paths: [".", "/data/shared"]
        blocked_commands: ["git push --force"]
- <workspace>/.agentrelay/settings.yaml, section `permissions`:
      permissions:
        mode: fast
        bash_policy: auto
        rules:
          - {type: deny, tool: Bash, pattern: "rm *"}
- ~/.agentrelay/tool_servers.yaml:
      servers:
        - name: files
          command: npx
          args: ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]

Files are re-read on every call so edits take effect without a restart.
"""
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import TOOL_SERVERS_FILE, WORKSPACE_SETTINGS_FILE, load_yaml_file
from .exceptions import ConfigurationError
from .schemas import BashPolicy, ExternalToolServerConfig, PermissionMode, PermissionRule

logger = logging.getLogger(__name__)


class SandboxSettings(BaseModel):
    """Raw per-workspace sandbox section before merging with defaults."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: Optional[bool] = None
    allowed_paths: Optional[list[str]] = Field(default=None, alias="allowedPaths")
    blocked_commands: list[str] = Field(default_factory=list, alias="blockedCommands")


class PermissionSettings(BaseModel):
    """Per-workspace permission section. Rules are added after the engine-wide ones."""

    model_config = ConfigDict(populate_by_name=True)

    mode: Optional[PermissionMode] = None
    bash_policy: Optional[BashPolicy] = Field(default=None, alias="bashPolicy")
    rules: list[PermissionRule] = Field(default_factory=list)


class WorkspaceSettingsStore:
    """YAML-backed source of sandbox settings and tool-server configuration."""

    def __init__(self, tool_servers_file: Optional[Path] = None) -> None:
        self._tool_servers_file = tool_servers_file or TOOL_SERVERS_FILE

    @staticmethod
    def settings_path(workspace: Path) -> Path:
        return workspace / WORKSPACE_SETTINGS_FILE

    def sandbox_settings(self, workspace: Path) -> Optional[SandboxSettings]:
        """
        Load the sandbox section for a workspace.

        Returns None when the workspace has no settings file or no `sandbox`
        section.

        Raises:
            ConfigurationError: If the section is present but invalid.
        """
        path = self.settings_path(workspace)
        data = load_yaml_file(path)
        section = data.get("sandbox")
        if section is None:
            return None
        try:
            return SandboxSettings.model_validate(section)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid sandbox settings in {path}: {e}") from e

    def permission_settings(self, workspace: Path) -> Optional[PermissionSettings]:
        """
        Load the permissions section for a workspace, or None if absent.

        Raises:
            ConfigurationError: If the section is present but invalid.
        """
        path = self.settings_path(workspace)
        section = load_yaml_file(path).get("permissions")
        if section is None:
            return None
        try:
            return PermissionSettings.model_validate(section)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid permission settings in {path}: {e}") from e

    def tool_servers(self) -> list[ExternalToolServerConfig]:
        """
        Load enabled external tool servers.

        Invalid entries are skipped with a warning so one bad server does not
        hide the others.
        """
        data = load_yaml_file(self._tool_servers_file)
        servers: list[ExternalToolServerConfig] = []
        for entry in data.get("servers") or []:
            try:
                server = ExternalToolServerConfig.model_validate(entry)
            except ValidationError as e:
                logger.warning(
                    f"Skipping invalid tool server entry in {self._tool_servers_file}: {e}"
                )
                continue
            if server.enabled:
                servers.append(server)
        return servers
