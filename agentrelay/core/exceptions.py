"""
Error taxonomy for agentrelay.

Only BackendError, SessionNotFoundError, SessionStateError and
ConfigurationError ever reach callers of the session manager. Tool-level
errors are converted to error results at the dispatcher boundary.
"""
from typing import Optional


class AgentRelayError(Exception):
    """Base class for all agentrelay errors."""


class ConfigurationError(AgentRelayError):
    """Raised when a configuration file is missing required data or malformed."""


class BackendError(AgentRelayError):
    """Backend failed to spawn, connect, or produced unusable output."""

    def __init__(self, message: str, backend: str = "", exit_code: Optional[int] = None):
        self.backend = backend
        self.exit_code = exit_code
        super().__init__(message)


class ToolExecutionError(AgentRelayError):
    """A tool handler failed (I/O, bad arguments, non-zero exit)."""

    def __init__(self, message: str, tool_name: str = ""):
        self.tool_name = tool_name
        super().__init__(message)


class SandboxViolation(ToolExecutionError):
    """A path or command was rejected by the sandbox policy."""

    def __init__(self, message: str, tool_name: str = "", target: str = ""):
        self.target = target
        super().__init__(message, tool_name=tool_name)


class ProtocolError(AgentRelayError):
    """An external tool server answered with an error or broke the protocol."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class IterationLimitExceeded(AgentRelayError):
    """The tool loop hit its iteration cap for the current turn."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Tool loop stopped after {limit} model turns")


class SessionNotFoundError(AgentRelayError):
    """No session is registered under the given id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionStateError(AgentRelayError):
    """The session cannot accept the requested operation in its current state."""
