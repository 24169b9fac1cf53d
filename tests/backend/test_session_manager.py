"""
Tests for SessionManager and EventBuffer.

Sessions run on ScriptedBackend instances handed out by the BackendPool
fixture, so every test controls exactly what the "model" says.
"""
import asyncio
from pathlib import Path

import pytest

from agentrelay.core.events import MessageStopEvent, PingEvent, error_event
from agentrelay.core.exceptions import BackendError, ConfigurationError, SessionNotFoundError, SessionStateError
from agentrelay.core.schemas import SessionOptions, SessionStatus
from agentrelay.core.tool_orchestrator import POLICY_DENIED_MESSAGE
from agentrelay.services.session_manager import EventBuffer, SessionManager, generate_session_id
from agentrelay.services.stores import ConversationStore, InMemoryConversationStore

from fakes import HANG, BackendPool, ScriptedBackend, assistant_text, assistant_tool_use, result, system_init


async def drain(stream) -> list:
    return [event async for event in stream]


async def wait_idle(manager: SessionManager, session_id: str) -> None:
    session = manager.get_session(session_id)
    for _ in range(200):
        if session.task is None:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("generation did not finish")


@pytest.mark.unit
class TestEventBuffer:

    @pytest.mark.asyncio
    async def test_cap_drops_oldest(self) -> None:
        buffer = EventBuffer(max_events=3)
        for i in range(5):
            buffer.append(error_event("e", str(i)))
        buffer.close()

        assert len(buffer) == 3
        assert buffer.dropped == 2
        assert [e.error.message for e in await drain(buffer.replay())] == ["2", "3", "4"]

    @pytest.mark.asyncio
    async def test_replay_follows_live_appends(self) -> None:
        buffer = EventBuffer()
        buffer.append(PingEvent())
        reader = asyncio.create_task(drain(buffer.replay()))
        await asyncio.sleep(0)

        buffer.append(MessageStopEvent())
        await asyncio.sleep(0)
        buffer.close()

        events = await asyncio.wait_for(reader, timeout=1)
        assert [e.type for e in events] == ["ping", "message_stop"]

    @pytest.mark.asyncio
    async def test_concurrent_readers_see_everything(self) -> None:
        buffer = EventBuffer()
        readers = [asyncio.create_task(drain(buffer.replay())) for _ in range(3)]
        await asyncio.sleep(0)
        for _ in range(4):
            buffer.append(PingEvent())
            await asyncio.sleep(0)
        buffer.close()
        results = await asyncio.wait_for(asyncio.gather(*readers), timeout=1)
        assert [len(r) for r in results] == [4, 4, 4]

    @pytest.mark.asyncio
    async def test_append_after_close(self) -> None:
        buffer = EventBuffer()
        buffer.close()
        with pytest.raises(SessionStateError):
            buffer.append(PingEvent())


@pytest.mark.unit
def test_generate_session_id_format() -> None:
    session_id = generate_session_id()
    date, time_part, suffix = session_id.split("_")
    assert len(date) == 8 and date.isdigit()
    assert len(time_part) == 6 and time_part.isdigit()
    assert len(suffix) == 8
    assert generate_session_id() != session_id


@pytest.mark.unit
class TestSessionLifecycle:

    @pytest.mark.asyncio
    async def test_create_list_describe(
        self, session_manager: SessionManager, backend_pool: BackendPool, workspace: Path
    ) -> None:
        session_id = await session_manager.create_session(
            "conv-1", SessionOptions(backend="messages-api", workspace_path=workspace, model="m1")
        )

        assert backend_pool.kinds == ["messages-api"]
        assert backend_pool.tool_envs[0].context.workspace_path == workspace
        listed = session_manager.list_sessions()
        assert [s["id"] for s in listed] == [session_id]
        assert listed[0]["status"] == "idle"
        assert listed[0]["stream_complete"] is False
        assert listed[0]["buffered_events"] == 0

        info = session_manager.describe_session(session_id)
        assert info["conversation_id"] == "conv-1"
        assert info["backend"] == "messages-api"
        assert info["options"]["model"] == "m1"
        assert info["pending_approvals"] == []

    @pytest.mark.asyncio
    async def test_default_backend_kind(self, session_manager: SessionManager, backend_pool: BackendPool) -> None:
        await session_manager.create_session("conv")
        assert backend_pool.kinds == ["claude-cli"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, session_manager: SessionManager) -> None:
        with pytest.raises(SessionNotFoundError, match="Session not found: nope"):
            await session_manager.send_message("nope", "hi")
        with pytest.raises(SessionNotFoundError):
            session_manager.cancel_generation("nope")
        with pytest.raises(SessionNotFoundError):
            session_manager.describe_session("nope")

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self, session_manager: SessionManager, backend_pool: BackendPool) -> None:
        backend = backend_pool.add(ScriptedBackend())
        session_id = await session_manager.create_session("conv")

        assert await session_manager.terminate_session(session_id) is True
        assert backend.closed is True
        assert await session_manager.terminate_session(session_id) is False
        assert session_manager.get_session(session_id) is None

    @pytest.mark.asyncio
    async def test_invalid_workspace_settings(self, session_manager: SessionManager, workspace: Path) -> None:
        (workspace / ".agentrelay").mkdir()
        (workspace / ".agentrelay" / "settings.yaml").write_text("sandbox: [not, a, mapping]\n")
        with pytest.raises(ConfigurationError):
            await session_manager.create_session("conv", SessionOptions(workspace_path=workspace))

    @pytest.mark.asyncio
    async def test_real_factory_rejects_unknown_backend(self, engine_config, settings_store, guard) -> None:
        manager = SessionManager(engine_config, settings_store=settings_store, guard=guard)
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            await manager.create_session("conv", SessionOptions(backend="nope"))


@pytest.mark.unit
class TestGeneration:

    @pytest.mark.asyncio
    async def test_send_message_streams_and_returns_to_idle(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend_pool.add(ScriptedBackend([[assistant_text("Hello there"), result()]]))
        session_id = await session_manager.create_session("conv")

        events = await drain(await session_manager.send_message(session_id, "hi"))

        assert [e.type for e in events] == [
            "message_start", "content_block_start", "content_block_delta", "content_block_stop",
            "message_delta", "message_stop",
        ]
        await wait_idle(session_manager, session_id)
        session = session_manager.get_session(session_id)
        assert session.status == SessionStatus.IDLE
        assert session.stream_complete is True

    @pytest.mark.asyncio
    async def test_second_send_while_running(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend = backend_pool.add(ScriptedBackend([[assistant_text("..."), HANG]]))
        session_id = await session_manager.create_session("conv")
        await session_manager.send_message(session_id, "first")
        await asyncio.wait_for(backend.hanging.wait(), timeout=2)

        with pytest.raises(SessionStateError):
            await session_manager.send_message(session_id, "second")
        assert session_manager.get_session(session_id).status == SessionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_send_after_terminate(self, session_manager: SessionManager) -> None:
        session_id = await session_manager.create_session("conv")
        session = session_manager.get_session(session_id)
        await session_manager.terminate_session(session_id)
        session_manager._sessions[session_id] = session
        with pytest.raises(SessionStateError, match="terminated"):
            await session_manager.send_message(session_id, "hi")

    @pytest.mark.asyncio
    async def test_cancel(self, session_manager: SessionManager, backend_pool: BackendPool) -> None:
        backend = backend_pool.add(ScriptedBackend([[assistant_text("partial"), HANG]]))
        session_id = await session_manager.create_session("conv")
        stream = await session_manager.send_message(session_id, "go")
        await asyncio.wait_for(backend.hanging.wait(), timeout=2)

        assert session_manager.cancel_generation(session_id) is True
        events = await asyncio.wait_for(drain(stream), timeout=2)

        assert events[-1].to_wire() == {"type": "message_stop", "reason": "cancelled"}
        assert backend.interrupts == 1
        await wait_idle(session_manager, session_id)
        assert session_manager.cancel_generation(session_id) is False

    @pytest.mark.asyncio
    async def test_backend_error_becomes_error_event(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend_pool.add(ScriptedBackend([[BackendError("Claude CLI exited with code 1", backend="claude-cli")]]))
        session_id = await session_manager.create_session("conv")

        events = await drain(await session_manager.send_message(session_id, "hi"))

        assert events[-1].type == "error"
        assert events[-1].error.type == "backend_error"
        assert events[-1].error.message == "Claude CLI exited with code 1"
        await wait_idle(session_manager, session_id)
        assert session_manager.get_session(session_id).status == SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal_error(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend_pool.add(ScriptedBackend([[RuntimeError("kaboom")]]))
        session_id = await session_manager.create_session("conv")

        events = await drain(await session_manager.send_message(session_id, "hi"))

        assert events[-1].error.type == "internal_error"
        assert events[-1].error.message == "Internal error: kaboom"

    @pytest.mark.asyncio
    async def test_native_session_id_is_captured_and_resumed(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend = backend_pool.add(ScriptedBackend(
            [
                [system_init("native-42"), assistant_text("one"), result()],
                [assistant_text("two"), result()],
            ],
            handles_tools=True,
        ))
        session_id = await session_manager.create_session("conv")

        await drain(await session_manager.send_message(session_id, "first"))
        await wait_idle(session_manager, session_id)
        assert session_manager.get_session(session_id).native_session_id == "native-42"

        await drain(await session_manager.send_message(session_id, "second"))
        assert backend.received[0].resume_id is None
        assert backend.received[1].resume_id == "native-42"
        assert backend.received[1].tools == []

    @pytest.mark.asyncio
    async def test_resume_session_id_option(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend = backend_pool.add(ScriptedBackend([[assistant_text("x"), result()]], handles_tools=True))
        session_id = await session_manager.create_session("conv", SessionOptions(resume_session_id="old-7"))
        await drain(await session_manager.send_message(session_id, "hi"))
        assert backend.received[0].resume_id == "old-7"

    @pytest.mark.asyncio
    async def test_tools_offered_to_orchestrated_backends(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend = backend_pool.add(ScriptedBackend([[assistant_text("x"), result()]]))
        session_id = await session_manager.create_session(
            "conv", SessionOptions(allowed_tools=["Read", "Grep"])
        )
        await drain(await session_manager.send_message(session_id, "hi"))
        assert [t["name"] for t in backend.received[0].tools] == ["Read", "Grep"]

    @pytest.mark.asyncio
    async def test_conversation_history_is_stored_and_replayed(
        self, engine_config, settings_store, guard, backend_pool: BackendPool
    ) -> None:
        store = InMemoryConversationStore()
        assert isinstance(store, ConversationStore)
        manager = SessionManager(
            engine_config,
            settings_store=settings_store,
            guard=guard,
            conversations=store,
            backend_factory=backend_pool.create,
        )
        backend_pool.add(ScriptedBackend([[assistant_text("Hi!"), result()]]))
        backend = backend_pool.add(ScriptedBackend([[assistant_text("Again"), result()]]))
        try:
            first = await manager.create_session("conv-x")
            await drain(await manager.send_message(first, "hello"))
            await wait_idle(manager, first)

            second = await manager.create_session("conv-x")
            await drain(await manager.send_message(second, "and now?"))
        finally:
            await manager.shutdown()

        assert backend.received[0].messages == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "Hi!"},
            {"role": "user", "content": "and now?"},
        ]
        assert len(await store.load_messages("conv-x")) == 4


@pytest.mark.unit
class TestApprovalsThroughManager:

    @pytest.mark.asyncio
    async def test_pending_approval_is_visible_and_resolvable(
        self, session_manager: SessionManager, backend_pool: BackendPool, workspace: Path
    ) -> None:
        backend_pool.add(ScriptedBackend([
            [assistant_tool_use("toolu_w", "Write", {"file_path": "out.txt", "content": "data"}), result("tool_use")],
            [assistant_text("Written."), result()],
        ]))
        session_id = await session_manager.create_session("conv", SessionOptions(workspace_path=workspace))
        stream = await session_manager.send_message(session_id, "write it")

        seen = []
        async for event in stream:
            seen.append(event.type)
            if event.type == "tool_approval_request":
                pending = session_manager.describe_session(session_id)["pending_approvals"]
                assert [p["toolCallId"] for p in pending] == ["toolu_w"]
                assert session_manager.resolve_approval(session_id, "toolu_w", True) is True

        assert "tool_result" in seen
        assert (workspace / "out.txt").read_text() == "data"

    @pytest.mark.asyncio
    async def test_terminate_drops_pending_approvals(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend_pool.add(ScriptedBackend([
            [assistant_tool_use("toolu_b", "Bash", {"command": "ls"}), result("tool_use")],
        ]))
        session_id = await session_manager.create_session("conv")
        stream = await session_manager.send_message(session_id, "run")

        async for event in stream:
            if event.type == "tool_approval_request":
                break

        assert await session_manager.terminate_session(session_id) is True
        assert session_manager.approvals.list_pending(session_id) == []

    @pytest.mark.asyncio
    async def test_workspace_deny_rule(
        self, session_manager: SessionManager, backend_pool: BackendPool, workspace: Path
    ) -> None:
        (workspace / ".agentrelay").mkdir()
        (workspace / ".agentrelay" / "settings.yaml").write_text(
            "permissions:\n  rules:\n    - {type: deny, tool: Write, pattern: '*.lock'}\n"
        )
        backend_pool.add(ScriptedBackend([
            [assistant_tool_use("toolu_l", "Write", {"file_path": "poetry.lock", "content": "x"}), result("tool_use")],
            [assistant_text("Left it alone."), result()],
        ]))
        session_id = await session_manager.create_session("conv", SessionOptions(workspace_path=workspace))

        events = await drain(await session_manager.send_message(session_id, "edit the lock file"))

        assert "tool_approval_request" not in [e.type for e in events]
        assert [e.result for e in events if e.type == "tool_result"] == [POLICY_DENIED_MESSAGE]
        assert not (workspace / "poetry.lock").exists()

    @pytest.mark.asyncio
    async def test_session_mode_overrides_workspace_mode(
        self, session_manager: SessionManager, backend_pool: BackendPool, workspace: Path
    ) -> None:
        (workspace / ".agentrelay").mkdir()
        (workspace / ".agentrelay" / "settings.yaml").write_text("permissions:\n  mode: plan\n")
        backend_pool.add(ScriptedBackend([
            [assistant_tool_use("toolu_w", "Write", {"file_path": "out.txt", "content": "data"}), result("tool_use")],
            [assistant_text("Written."), result()],
        ]))
        options = SessionOptions(workspace_path=workspace, permission_mode="unrestricted")
        session_id = await session_manager.create_session("conv", options)
        assert session_manager.get_session(session_id).danger_policy.mode == "unrestricted"

        events = await drain(await session_manager.send_message(session_id, "write it"))

        assert "tool_approval_request" not in [e.type for e in events]
        assert (workspace / "out.txt").read_text() == "data"


@pytest.mark.unit
class TestReconnect:

    @pytest.mark.asyncio
    async def test_unknown_session(self, session_manager: SessionManager) -> None:
        assert session_manager.reconnect_stream("missing") is None

    @pytest.mark.asyncio
    async def test_fresh_session_gets_live_stream(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend_pool.add(ScriptedBackend([[assistant_text("hello"), result()]]))
        session_id = await session_manager.create_session("conv")

        early = session_manager.reconnect_stream(session_id)
        assert early is not None
        reader = asyncio.create_task(drain(early))
        await asyncio.sleep(0.05)
        assert not reader.done()

        events = await drain(await session_manager.send_message(session_id, "hi"))
        assert await asyncio.wait_for(reader, timeout=2) == events

    @pytest.mark.asyncio
    async def test_completed_stream_with_empty_buffer(self, session_manager: SessionManager) -> None:
        session_id = await session_manager.create_session("conv")
        session_manager.get_session(session_id).buffer.close()
        assert session_manager.reconnect_stream(session_id) is None

    @pytest.mark.asyncio
    async def test_terminate_ends_waiting_reader(self, session_manager: SessionManager) -> None:
        session_id = await session_manager.create_session("conv")
        reader = asyncio.create_task(drain(session_manager.reconnect_stream(session_id)))
        await asyncio.sleep(0.01)

        await session_manager.terminate_session(session_id)
        assert await asyncio.wait_for(reader, timeout=2) == []

    @pytest.mark.asyncio
    async def test_replays_completed_generation(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend_pool.add(ScriptedBackend([[assistant_text("done"), result()]]))
        session_id = await session_manager.create_session("conv")
        first = await drain(await session_manager.send_message(session_id, "hi"))
        await wait_idle(session_manager, session_id)

        replay = session_manager.reconnect_stream(session_id)
        assert replay is not None
        assert await drain(replay) == first

    @pytest.mark.asyncio
    async def test_reconnect_mid_stream(
        self, session_manager: SessionManager, backend_pool: BackendPool
    ) -> None:
        backend = backend_pool.add(ScriptedBackend([[assistant_text("partial"), HANG]]))
        session_id = await session_manager.create_session("conv")
        await session_manager.send_message(session_id, "go")
        await asyncio.wait_for(backend.hanging.wait(), timeout=2)

        replay = session_manager.reconnect_stream(session_id)
        reader = asyncio.create_task(drain(replay))
        await asyncio.sleep(0.05)
        assert not reader.done()

        session_manager.cancel_generation(session_id)
        events = await asyncio.wait_for(reader, timeout=2)
        assert events[0].type == "message_start"
        assert events[-1].to_wire() == {"type": "message_stop", "reason": "cancelled"}
