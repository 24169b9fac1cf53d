"""
Pytest configuration and fixtures for backend tests.

Provides fixtures for:
- Temporary workspace and per-user config directory
- Sandbox guard / settings store bound to those directories
- Session manager wired to a scripted fake backend
"""
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path before importing project modules
PROJECT_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from agentrelay.config import EngineConfig  # noqa: E402
from agentrelay.core.sandbox_policy import SandboxPolicyGuard  # noqa: E402
from agentrelay.core.settings_store import WorkspaceSettingsStore  # noqa: E402
from agentrelay.services.approvals import ApprovalHub  # noqa: E402
from agentrelay.services.session_manager import SessionManager  # noqa: E402

from fakes import BackendPool  # noqa: E402


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """
    Skip e2e tests by default unless explicitly requested.

    Run all tests including e2e: pytest --run-e2e
    """
    if config.getoption("--run-e2e", default=False):
        return

    skip_e2e = pytest.mark.skip(reason="E2E test skipped by default. Use --run-e2e to run.")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests that require a real Claude CLI or API key",
    )


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create a temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace.resolve()


@pytest.fixture
def user_config_dir(tmp_path: Path) -> Path:
    """Per-user config directory outside the workspace."""
    path = tmp_path / "home" / ".agentrelay"
    path.mkdir(parents=True)
    return path.resolve()


@pytest.fixture
def settings_store(user_config_dir: Path) -> WorkspaceSettingsStore:
    return WorkspaceSettingsStore(tool_servers_file=user_config_dir / "tool_servers.yaml")


@pytest.fixture
def guard(settings_store: WorkspaceSettingsStore, user_config_dir: Path) -> SandboxPolicyGuard:
    return SandboxPolicyGuard(settings_store, user_config_dir=user_config_dir)


@pytest.fixture
def engine_config() -> EngineConfig:
    """Defaults with short timeouts so failing tests fail fast."""
    config = EngineConfig()
    config.sessions.terminate_grace_seconds = 1.0
    config.external_tools.discovery_timeout_seconds = 2.0
    config.external_tools.execution_timeout_seconds = 5.0
    return config


@pytest.fixture
def backend_pool() -> BackendPool:
    """Scripted backends handed out to sessions in creation order."""
    return BackendPool()


@pytest_asyncio.fixture
async def session_manager(
    engine_config: EngineConfig,
    settings_store: WorkspaceSettingsStore,
    guard: SandboxPolicyGuard,
    backend_pool: BackendPool,
):
    """SessionManager whose sessions run on scripted backends."""
    manager = SessionManager(
        engine_config,
        settings_store=settings_store,
        guard=guard,
        approvals=ApprovalHub(),
        backend_factory=backend_pool.create,
    )
    yield manager
    await manager.shutdown()
