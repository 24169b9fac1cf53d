"""
Services package for agentrelay.

Contains the session manager and the collaborators it wires together:
tool dispatch, external tool servers, approvals and conversation storage.
"""
from .approvals import ApprovalHub
from .external_tools import ExternalToolRegistry
from .session_manager import AgentSession, EventBuffer, SessionManager
from .stores import ConversationStore, InMemoryConversationStore
from .tool_dispatcher import ToolDispatcher

__all__ = [
    "AgentSession",
    "ApprovalHub",
    "ConversationStore",
    "EventBuffer",
    "ExternalToolRegistry",
    "InMemoryConversationStore",
    "SessionManager",
    "ToolDispatcher",
]
