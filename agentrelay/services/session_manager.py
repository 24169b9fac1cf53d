"""
Session manager.

Owns the table of live agent sessions. Each send_message() starts one
background generation task that runs the tool orchestrator and appends the
resulting canonical events to the session's EventBuffer; any number of
readers replay that buffer concurrently, so a client that drops its SSE
connection can reconnect and pick the stream up again.

The manager is an explicit object handed to the API through app.state, not
module-level state.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional

from ..backends import AgentBackend, TurnContext, create_backend
from ..config import EngineConfig, get_engine_config
from ..core.event_translator import to_native_dict
from ..core.events import CanonicalEvent, error_event
from ..core.exceptions import BackendError, SessionNotFoundError, SessionStateError
from ..core.sandbox_policy import SandboxPolicyGuard
from ..core.schemas import SessionOptions, SessionStatus, WorkspaceContext
from ..core.settings_store import WorkspaceSettingsStore
from ..core.tool_orchestrator import ToolOrchestrator
from ..core.tool_schemas import DangerPolicy, builtin_tool_schemas, filter_tools
from ..tools import ToolEnvironment
from .approvals import ApprovalHub
from .external_tools import ExternalToolRegistry
from .stores import ConversationStore, InMemoryConversationStore
from .tool_dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)

BackendFactory = Callable[..., AgentBackend]


def generate_session_id() -> str:
    """Generate a unique session ID."""
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    uid = uuid.uuid4().hex[:8]
    return f"{ts}_{uid}"


class EventBuffer:
    """
    Append-only, capped event log with concurrent replay.

    Once more than max_events have been appended the oldest are dropped;
    replays that fell behind skip ahead to the oldest retained event.
    """

    def __init__(self, max_events: int = 5000) -> None:
        self._max_events = max_events
        self._events: list[CanonicalEvent] = []
        self._dropped = 0
        self._closed = False
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._events)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        return self._dropped

    def snapshot(self) -> list[CanonicalEvent]:
        return list(self._events)

    def append(self, event: CanonicalEvent) -> None:
        if self._closed:
            raise SessionStateError("Event buffer is closed")
        self._events.append(event)
        overflow = len(self._events) - self._max_events
        if overflow > 0:
            del self._events[:overflow]
            self._dropped += overflow
        self._notify()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._notify()

    def _notify(self) -> None:
        # Wake every waiting reader, then arm a fresh event for the next append
        self._changed.set()
        self._changed = asyncio.Event()

    async def replay(self) -> AsyncIterator[CanonicalEvent]:
        """Yield every retained event, then follow new ones until closed."""
        cursor = self._dropped
        while True:
            cursor = max(cursor, self._dropped)
            index = cursor - self._dropped
            if index < len(self._events):
                cursor += 1
                yield self._events[index]
                continue
            if self._closed:
                return
            await self._changed.wait()


@dataclass
class AgentSession:
    id: str
    conversation_id: str
    backend_kind: str
    options: SessionOptions
    context: WorkspaceContext
    backend: AgentBackend
    buffer: EventBuffer
    status: SessionStatus = SessionStatus.IDLE
    native_session_id: Optional[str] = None
    danger_policy: Optional[DangerPolicy] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def stream_complete(self) -> bool:
        return self.buffer.closed

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "backend": self.backend_kind,
            "status": self.status.value,
            "native_session_id": self.native_session_id,
            "stream_complete": self.stream_complete,
            "buffered_events": len(self.buffer),
            "created_at": self.created_at.isoformat(),
        }


class SessionManager:
    """
    Creates, drives and tears down agent sessions.

    Usage:
        manager = SessionManager()
        session_id = await manager.create_session("conv-1", SessionOptions(workspace_path=ws))
        async for event in await manager.send_message(session_id, "hello"):
            ...
        await manager.terminate_session(session_id)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        settings_store: Optional[WorkspaceSettingsStore] = None,
        guard: Optional[SandboxPolicyGuard] = None,
        registry: Optional[ExternalToolRegistry] = None,
        dispatcher: Optional[ToolDispatcher] = None,
        approvals: Optional[ApprovalHub] = None,
        conversations: Optional[ConversationStore] = None,
        backend_factory: BackendFactory = create_backend,
    ) -> None:
        self.config = config or get_engine_config()
        self.settings_store = settings_store or WorkspaceSettingsStore()
        self.guard = guard or SandboxPolicyGuard(self.settings_store)
        orchestrator_config = self.config.orchestrator
        self.danger_policy = DangerPolicy(
            self.config.external_tools.danger_patterns,
            rules=orchestrator_config.permission_rules,
            mode=orchestrator_config.permission_mode,
            bash_policy=orchestrator_config.bash_policy,
        )
        self.registry = registry or ExternalToolRegistry(
            settings_store=self.settings_store,
            danger_policy=self.danger_policy,
            config=self.config.external_tools,
        )
        self.dispatcher = dispatcher or ToolDispatcher(self.registry, self.guard, self.config.tools)
        self.approvals = approvals or ApprovalHub()
        self.conversations = conversations or InMemoryConversationStore()
        self._backend_factory = backend_factory
        self._sessions: dict[str, AgentSession] = {}

    # --- lookup -----------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[AgentSession]:
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> list[dict[str, Any]]:
        return [session.to_dict() for session in self._sessions.values()]

    def describe_session(self, session_id: str) -> dict[str, Any]:
        """Session details plus pending approvals, for reconnecting clients."""
        session = self._require(session_id)
        info = session.to_dict()
        info["options"] = session.options.model_dump(mode="json", exclude_none=True)
        info["pending_approvals"] = self.approvals.list_pending(session_id)
        return info

    # --- lifecycle --------------------------------------------------------

    async def create_session(self, conversation_id: str, options: Optional[SessionOptions] = None) -> str:
        """
        Allocate an idle session.

        Raises:
            ConfigurationError: If the backend kind is unknown or the
                workspace settings are invalid.
        """
        options = options or SessionOptions()
        if options.workspace_path is not None:
            options = options.model_copy(update={"workspace_path": options.workspace_path.expanduser().resolve()})
        kind = options.backend or self.config.sessions.default_backend
        session_id = generate_session_id()

        context = WorkspaceContext(
            session_id=session_id,
            workspace_path=options.workspace_path,
            policy=self.guard.resolve(options.workspace_path),
        )
        danger_policy = self._session_danger_policy(options)
        tool_env = ToolEnvironment(context=context, guard=self.guard, config=self.config.tools)
        backend = self._backend_factory(kind, self.config.backends, tool_env)

        session = AgentSession(
            id=session_id,
            conversation_id=conversation_id,
            backend_kind=kind,
            options=options,
            context=context,
            backend=backend,
            buffer=EventBuffer(self.config.sessions.max_buffered_events),
            native_session_id=options.resume_session_id,
            danger_policy=danger_policy,
        )
        self._sessions[session_id] = session
        logger.info(
            f"SESSION: Created {session_id} (conversation={conversation_id}, backend={kind}, "
            f"workspace={options.workspace_path})"
        )
        return session_id

    async def send_message(self, session_id: str, text: str) -> AsyncIterator[CanonicalEvent]:
        """
        Start a generation and return a live replay of its events.

        Raises:
            SessionNotFoundError: Unknown session.
            SessionStateError: Session terminated or already generating.
        """
        session = self._require(session_id)
        if session.status == SessionStatus.TERMINATED:
            raise SessionStateError(f"Session {session_id} is terminated")
        if session.task is not None and not session.task.done():
            raise SessionStateError(f"Session {session_id} already has a generation running")

        # A fresh session already holds an open buffer that early readers may follow
        if session.buffer.closed:
            session.buffer = EventBuffer(self.config.sessions.max_buffered_events)
        session.cancel_event = asyncio.Event()
        session.status = SessionStatus.RUNNING
        session.task = asyncio.create_task(self._run_generation(session, text))
        logger.info(f"SESSION: Generation started for {session_id}")
        return session.buffer.replay()

    def reconnect_stream(self, session_id: str) -> Optional[AsyncIterator[CanonicalEvent]]:
        """
        Replay for a session.

        A session whose stream is still open (including one that has not
        generated yet) gets a live stream. None if the session is unknown or
        its stream finished with nothing buffered.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.stream_complete and len(session.buffer) == 0:
            return None
        return session.buffer.replay()

    def cancel_generation(self, session_id: str) -> bool:
        """
        Ask the running generation to stop.

        Returns:
            True if a generation was running and has been signalled.
        """
        session = self._require(session_id)
        if session.task is None or session.task.done():
            return False
        session.cancel_event.set()
        logger.info(f"SESSION: Cancellation requested for {session_id}")
        return True

    def resolve_approval(self, session_id: str, tool_call_id: str, approved: bool) -> bool:
        self._require(session_id)
        return self.approvals.resolve(session_id, tool_call_id, approved)

    async def terminate_session(self, session_id: str) -> bool:
        """
        Tear a session down. Safe to call repeatedly.

        Returns:
            True if the session existed.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        session.status = SessionStatus.TERMINATED
        session.cancel_event.set()
        task = session.task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self.config.sessions.terminate_grace_seconds)
            if not done:
                logger.warning(f"SESSION: Generation for {session_id} did not stop in time, cancelling")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        dropped = self.approvals.discard_session(session_id)
        if dropped:
            logger.info(f"SESSION: Dropped {dropped} pending approvals for {session_id}")
        try:
            await session.backend.aclose()
        except Exception as e:
            logger.warning(f"SESSION: Backend cleanup failed for {session_id}: {e}")
        session.buffer.close()
        logger.info(f"SESSION: Terminated {session_id}")
        return True

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.terminate_session(session_id)

    # --- generation -------------------------------------------------------

    def _capture_native_session(self, session: AgentSession, native: Any) -> None:
        data = to_native_dict(native)
        if not data or data.get("type") not in ("system", "result"):
            return
        native_id = data.get("session_id")
        if native_id and native_id != session.native_session_id:
            session.native_session_id = native_id
            logger.info(f"SESSION: {session.id} bound to native session {native_id}")

    def _session_danger_policy(self, options: SessionOptions) -> DangerPolicy:
        """
        Engine-wide policy plus the workspace `permissions` section.

        Workspace rules are appended to the engine rules. The mode comes from
        the session options, else the workspace, else the engine config.

        Raises:
            ConfigurationError: If the workspace permissions section is invalid.
        """
        settings = None
        if options.workspace_path is not None:
            settings = self.settings_store.permission_settings(options.workspace_path)
        if settings is None:
            return self.danger_policy.with_overrides(mode=options.permission_mode)
        return self.danger_policy.with_overrides(
            rules=settings.rules,
            mode=options.permission_mode or settings.mode,
            bash_policy=settings.bash_policy,
        )

    async def _build_turn(self, session: AgentSession, text: str) -> TurnContext:
        user_message = {"role": "user", "content": text}
        history = await self.conversations.load_messages(session.conversation_id)

        tools: list[dict[str, Any]] = []
        if not session.backend.handles_tools:
            schemas = builtin_tool_schemas() + await self.registry.to_tool_schemas()
            tools = filter_tools(schemas, session.options.allowed_tools, session.options.disallowed_tools)

        return TurnContext(
            prompt=text,
            messages=[*history, user_message],
            tools=tools,
            options=session.options,
            resume_id=session.native_session_id,
        )

    async def _run_generation(self, session: AgentSession, text: str) -> None:
        buffer = session.buffer
        try:
            session.context.policy = self.guard.resolve(session.options.workspace_path)
            session.danger_policy = self._session_danger_policy(session.options)
            turn = await self._build_turn(session, text)
            orchestrator = ToolOrchestrator(
                backend=session.backend,
                dispatcher=self.dispatcher,
                approvals=self.approvals,
                danger_policy=session.danger_policy,
                config=self.config.orchestrator,
                on_native_event=lambda native: self._capture_native_session(session, native),
            )
            async for event in orchestrator.run(turn, session.context, session.cancel_event):
                buffer.append(event)

            exchange = [{"role": "user", "content": text}]
            if orchestrator.final_text:
                exchange.append({"role": "assistant", "content": orchestrator.final_text})
            await self.conversations.append_messages(session.conversation_id, exchange)
            logger.info(
                f"SESSION: Generation for {session.id} ended in state {orchestrator.state.value} "
                f"after {orchestrator.iterations} model turns"
            )
        except BackendError as e:
            logger.error(f"SESSION: Backend failure in {session.id}: {e}")
            buffer.append(error_event("backend_error", str(e)))
        except Exception as e:
            logger.exception(f"SESSION: Generation failed for {session.id}")
            buffer.append(error_event("internal_error", f"Internal error: {e}"))
        finally:
            buffer.close()
            if session.status != SessionStatus.TERMINATED:
                session.status = SessionStatus.IDLE
            session.task = None
