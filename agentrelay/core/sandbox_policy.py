"""
Sandbox policy guard for built-in tools.

Single source of truth for deciding whether a tool may touch a path or run a
command. Policies are resolved per workspace; the per-user configuration
directory is always reachable so tools can read and update agent settings.

Containment is checked on resolved paths with Path.relative_to, so
"/workspace/../other" and "/workspace-old" are both outside "/workspace".
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import USER_CONFIG_DIR
from .schemas import SandboxPolicy
from .settings_store import WorkspaceSettingsStore

logger = logging.getLogger(__name__)

# Destructive operations blocked in every enabled policy. Matched as
# case-insensitive literal substrings.
DEFAULT_BLOCKED_COMMANDS: tuple[str, ...] = (
    "rm -rf /",
    "rm -rf ~",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",
    "> /dev/sda",
    "chmod -R 777 /",
    "curl | sh",
    "curl | bash",
    "wget | sh",
    "wget | bash",
)


@dataclass
class PathVerdict:
    """Result of a path check."""

    allowed: bool
    path: str
    resolved: Optional[Path] = None
    reason: str = ""


def _resolve(path: str | Path, base: Optional[Path] = None) -> Path:
    candidate = Path(os.path.expanduser(str(path)))
    if not candidate.is_absolute():
        candidate = (base or Path.cwd()) / candidate
    return candidate.resolve()


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def validate_path(
    path: str | Path,
    policy: SandboxPolicy,
    user_config_dir: Optional[Path] = None,
) -> PathVerdict:
    """
    Check a path against a policy.

    Relative paths are resolved against the first allowed root (or the
    process cwd when the policy has none).

    Args:
        path: Path as provided by the model.
        policy: Effective sandbox policy.
        user_config_dir: Directory that is always allowed.

    Returns:
        PathVerdict with the resolved path, and the denial reason if any.
    """
    roots = [Path(root) for root in policy.allowed_paths]
    base = roots[0] if roots else None
    resolved = _resolve(path, base)

    if not policy.enabled:
        return PathVerdict(allowed=True, path=str(path), resolved=resolved)

    config_dir = _resolve(user_config_dir or USER_CONFIG_DIR)
    if _is_within(resolved, config_dir):
        logger.debug(f"SANDBOX: ALLOWED (config dir) {resolved}")
        return PathVerdict(allowed=True, path=str(path), resolved=resolved)

    for root in roots:
        if _is_within(resolved, _resolve(root)):
            logger.debug(f"SANDBOX: ALLOWED {resolved} (root={root})")
            return PathVerdict(allowed=True, path=str(path), resolved=resolved)

    allowed = ", ".join(str(root) for root in roots) or "(none)"
    reason = f'Path "{path}" is outside the sandbox. Allowed: {allowed}'
    logger.warning(f"SANDBOX: BLOCKED {resolved} - {reason}")
    return PathVerdict(allowed=False, path=str(path), resolved=resolved, reason=reason)


def is_command_blocked(command: str, policy: SandboxPolicy) -> bool:
    """
    Case-insensitive literal substring match against the blocked list.

    Applies even when path sandboxing is disabled.
    """
    normalized = command.strip().lower()
    for blocked in policy.blocked_commands:
        pattern = blocked.strip().lower()
        if pattern and pattern in normalized:
            logger.warning(f"SANDBOX: BLOCKED command matching '{blocked}': {command[:200]}")
            return True
    return False


class SandboxPolicyGuard:
    """
    Resolves per-workspace policies and validates paths and commands.

    Usage:
        guard = SandboxPolicyGuard()
        policy = guard.resolve(Path("/home/me/project"))
        verdict = guard.validate_path("src/main.py", policy)
        if not verdict.allowed:
            ...
    """

    def __init__(
        self,
        settings_store: Optional[WorkspaceSettingsStore] = None,
        user_config_dir: Optional[Path] = None,
    ) -> None:
        self._settings = settings_store or WorkspaceSettingsStore()
        self._user_config_dir = user_config_dir or USER_CONFIG_DIR

    @property
    def user_config_dir(self) -> Path:
        return self._user_config_dir

    def resolve(self, workspace_path: Optional[Path]) -> SandboxPolicy:
        """
        Build the effective policy for a workspace.

        No workspace means an unrestricted (disabled) policy. Otherwise the
        workspace's sandbox settings are merged with the defaults: allowed
        paths default to the workspace root and blocked commands always
        include the built-in destructive list.
        """
        if workspace_path is None:
            return SandboxPolicy(
                enabled=False,
                allowed_paths=[],
                blocked_commands=list(DEFAULT_BLOCKED_COMMANDS),
            )

        workspace = _resolve(workspace_path)
        settings = self._settings.sandbox_settings(workspace)
        if settings is None:
            return SandboxPolicy(
                enabled=True,
                allowed_paths=[workspace],
                blocked_commands=list(DEFAULT_BLOCKED_COMMANDS),
            )

        if settings.allowed_paths:
            allowed = [_resolve(p, workspace) for p in settings.allowed_paths]
        else:
            allowed = [workspace]

        policy = SandboxPolicy(
            enabled=settings.enabled is not False,
            allowed_paths=allowed,
            blocked_commands=[*DEFAULT_BLOCKED_COMMANDS, *settings.blocked_commands],
        )
        logger.info(
            f"SANDBOX: Resolved policy for {workspace} "
            f"(enabled={policy.enabled}, roots={[str(p) for p in policy.allowed_paths]})"
        )
        return policy

    def validate_path(self, path: str | Path, policy: SandboxPolicy) -> PathVerdict:
        return validate_path(path, policy, user_config_dir=self._user_config_dir)

    def is_command_blocked(self, command: str, policy: SandboxPolicy) -> bool:
        return is_command_blocked(command, policy)
