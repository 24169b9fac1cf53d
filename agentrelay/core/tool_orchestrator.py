"""
Tool orchestrator: the multi-turn tool-calling loop.

One run() drives a backend until the model stops asking for tools:

    AWAITING_MODEL -> MODEL_STREAMING -> TOOL_REQUESTED
        -> [AWAITING_APPROVAL ->] TOOL_EXECUTING -> RESULT_INJECTED
        (a call refused by the permission policy goes straight to RESULT_INJECTED)
        -> AWAITING_MODEL ...
    terminal: DONE, CANCELLED, ERROR

run() is an async generator of canonical events. Cancellation is
cooperative: the cancel event is raced against every suspension point
(backend stream, approval wait, tool execution). A tool execution in flight
when cancel arrives is abandoned, not awaited.

Backends that run tools themselves (handles_tools) are passed through: their
tool calls are announced with tool_use_start but never dispatched here.
"""
import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from ..config import OrchestratorConfig
from .event_translator import EventTranslator
from .events import (
    CanonicalEvent,
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ContentBlockStopEvent,
    MessageDeltaEvent,
    MessageStopEvent,
    ToolApprovalRequestEvent,
    ToolResultEvent,
    ToolUseStartEvent,
    cancelled_stop,
    error_event,
)
from .exceptions import IterationLimitExceeded, SessionStateError
from .schemas import ToolInvocationRequest, ToolResult, WorkspaceContext
from .tool_schemas import DangerPolicy, ToolDecision

logger = logging.getLogger(__name__)

DENIED_MESSAGE: str = "Tool execution denied by user"
POLICY_DENIED_MESSAGE: str = "Tool execution denied by permission policy"


class OrchestratorState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    MODEL_STREAMING = "model_streaming"
    TOOL_REQUESTED = "tool_requested"
    AWAITING_APPROVAL = "awaiting_approval"
    TOOL_EXECUTING = "tool_executing"
    RESULT_INJECTED = "result_injected"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATES: frozenset[OrchestratorState] = frozenset({
    OrchestratorState.DONE,
    OrchestratorState.CANCELLED,
    OrchestratorState.ERROR,
})


class _Cancelled(Exception):
    """Internal signal: the cancel event won a race."""


class _TurnCapture:
    """What one model turn produced, rebuilt from its canonical events."""

    def __init__(self) -> None:
        self.blocks: dict[int, dict[str, Any]] = {}
        self.order: list[int] = []
        self.requests: list[ToolInvocationRequest] = []
        self.held: list[CanonicalEvent] = []
        self.saw_stop = False

    def start(self, event: ContentBlockStartEvent) -> None:
        block = event.content_block
        entry: dict[str, Any] = {"type": block.type, "parts": []}
        if block.type == "tool_use":
            entry["id"] = block.id
            entry["name"] = block.name
        self.blocks[event.index] = entry
        self.order.append(event.index)

    def delta(self, event: ContentBlockDeltaEvent) -> None:
        entry = self.blocks.get(event.index)
        if entry is None:
            return
        delta = event.delta
        piece = delta.text if delta.type == "text_delta" else (
            delta.thinking if delta.type == "thinking_delta" else delta.partial_json
        )
        entry["parts"].append(piece or "")

    def stop(self, event: ContentBlockStopEvent, session_id: str) -> Optional[ToolInvocationRequest]:
        entry = self.blocks.get(event.index)
        if entry is None or entry["type"] != "tool_use":
            return None
        raw = "".join(entry["parts"])
        try:
            arguments = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning(f"ORCHESTRATOR: Unparseable input for tool {entry['name']}: {raw[:200]}")
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {"input": arguments}
        entry["input"] = arguments
        request = ToolInvocationRequest(
            id=entry["id"],
            name=entry["name"],
            arguments=arguments,
            session_id=session_id,
            parent_id=event.parent_tool_use_id,
        )
        self.requests.append(request)
        return request

    def text(self) -> str:
        return "".join(
            "".join(self.blocks[i]["parts"]) for i in self.order if self.blocks[i]["type"] == "text"
        )

    def assistant_content(self) -> list[dict[str, Any]]:
        """Anthropic-format content for replaying this turn to the model."""
        content = []
        for i in self.order:
            entry = self.blocks[i]
            if entry["type"] == "text":
                text = "".join(entry["parts"])
                if text:
                    content.append({"type": "text", "text": text})
            elif entry["type"] == "tool_use":
                content.append({
                    "type": "tool_use",
                    "id": entry["id"],
                    "name": entry["name"],
                    "input": entry.get("input", {}),
                })
        return content


class ToolOrchestrator:
    """
    Runs the model/tool loop for one session.

    Usage:
        orchestrator = ToolOrchestrator(backend, dispatcher, approvals)
        async for event in orchestrator.run(turn, context, cancel_event):
            buffer.append(event)
    """

    def __init__(
        self,
        backend: Any,
        dispatcher: Any,
        approvals: Any,
        danger_policy: Optional[DangerPolicy] = None,
        config: Optional[OrchestratorConfig] = None,
        translator: Optional[EventTranslator] = None,
        on_native_event: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self.backend = backend
        self.dispatcher = dispatcher
        self.approvals = approvals
        self.danger_policy = danger_policy or DangerPolicy()
        self.config = config or OrchestratorConfig()
        self.translator = translator or EventTranslator()
        self.on_native_event = on_native_event

        self.state = OrchestratorState.AWAITING_MODEL
        self.iterations = 0
        self.final_text = ""
        self._session_id = ""
        self._running = False
        self._abandoned: set[asyncio.Task] = set()

    def _set_state(self, state: OrchestratorState) -> None:
        if state != self.state:
            logger.debug(f"ORCHESTRATOR: {self._session_id} {self.state.value} -> {state.value}")
        self.state = state

    async def _race(self, awaitable: Awaitable[Any], cancel_event: asyncio.Event, abandon: bool = False) -> Any:
        """
        Await `awaitable` unless cancel_event fires first.

        On cancel the awaitable is cancelled, or left running when `abandon`
        is set, and _Cancelled is raised.
        """
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        if abandon:
            self._abandon(task)
        else:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        raise _Cancelled()

    def _abandon(self, task: asyncio.Task) -> None:
        self._abandoned.add(task)

        def _done(t: asyncio.Task) -> None:
            self._abandoned.discard(t)
            if t.cancelled():
                return
            if t.exception() is not None:
                logger.warning(f"ORCHESTRATOR: Abandoned tool execution failed: {t.exception()}")
            else:
                logger.info(f"ORCHESTRATOR: Abandoned tool execution finished for {self._session_id}")

        task.add_done_callback(_done)
        logger.info(f"ORCHESTRATOR: Abandoning in-flight tool execution for {self._session_id}")

    async def run(
        self,
        turn: Any,
        context: WorkspaceContext,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[CanonicalEvent]:
        """
        Drive the loop, yielding canonical events until a terminal state.

        turn is a backends.TurnContext. Its messages list is extended in
        place with each assistant turn and the tool results that answer it.
        """
        if self._running:
            raise SessionStateError("A generation is already running for this orchestrator")
        self._running = True
        self._session_id = context.session_id
        self.iterations = 0
        self.final_text = ""
        self._set_state(OrchestratorState.AWAITING_MODEL)
        try:
            async for event in self._loop(turn, context, cancel_event):
                yield event
        finally:
            self._running = False

    async def _loop(
        self,
        turn: Any,
        context: WorkspaceContext,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[CanonicalEvent]:
        max_iterations = self.config.max_iterations
        while True:
            if cancel_event.is_set():
                yield self._finish_cancelled()
                return
            if self.iterations >= max_iterations:
                logger.warning(
                    f"ORCHESTRATOR: {self._session_id} hit the iteration limit ({max_iterations})"
                )
                self._set_state(OrchestratorState.ERROR)
                yield error_event("iteration_limit", str(IterationLimitExceeded(max_iterations)))
                return

            self.iterations += 1
            capture = _TurnCapture()
            try:
                async for event in self._stream_model_turn(turn, capture, cancel_event):
                    yield event
            except _Cancelled:
                yield self._finish_cancelled()
                return

            self.final_text = capture.text()

            if self.backend.handles_tools or not capture.requests:
                for event in capture.held:
                    yield event
                if not capture.saw_stop:
                    yield MessageStopEvent()
                self._set_state(OrchestratorState.DONE)
                return

            turn.messages.append({"role": "assistant", "content": capture.assistant_content()})
            results: list[ToolResult] = []
            try:
                for request in capture.requests:
                    async for event in self._handle_request(request, context, cancel_event, results):
                        yield event
            except _Cancelled:
                yield self._finish_cancelled()
                return

            turn.messages.append({
                "role": "user",
                "content": [result.to_content_block() for result in results],
            })
            self._set_state(OrchestratorState.AWAITING_MODEL)

    async def _stream_model_turn(
        self,
        turn: Any,
        capture: _TurnCapture,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[CanonicalEvent]:
        self._set_state(OrchestratorState.MODEL_STREAMING)
        self.translator.begin_turn()
        hold_close = not self.backend.handles_tools
        stream = self.backend.stream_turn(turn).__aiter__()
        try:
            while True:
                try:
                    native = await self._race(stream.__anext__(), cancel_event)
                except StopAsyncIteration:
                    break
                except _Cancelled:
                    await self.backend.interrupt()
                    raise
                if self.on_native_event is not None:
                    self.on_native_event(native)

                for event in self.translator.translate(native):
                    if isinstance(event, (MessageDeltaEvent, MessageStopEvent)):
                        if isinstance(event, MessageStopEvent):
                            capture.saw_stop = True
                        if hold_close:
                            capture.held.append(event)
                            continue
                        yield event
                        continue

                    yield event
                    if isinstance(event, ContentBlockStartEvent):
                        capture.start(event)
                    elif isinstance(event, ContentBlockDeltaEvent):
                        capture.delta(event)
                    elif isinstance(event, ContentBlockStopEvent):
                        request = capture.stop(event, self._session_id)
                        if request is not None:
                            self._set_state(OrchestratorState.TOOL_REQUESTED)
                            yield ToolUseStartEvent(
                                tool_call_id=request.id,
                                tool_name=request.name,
                                input=request.arguments,
                                parent_tool_use_id=request.parent_id,
                            )
                            self._set_state(OrchestratorState.MODEL_STREAMING)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _handle_request(
        self,
        request: ToolInvocationRequest,
        context: WorkspaceContext,
        cancel_event: asyncio.Event,
        results: list[ToolResult],
    ) -> AsyncIterator[CanonicalEvent]:
        self._set_state(OrchestratorState.TOOL_REQUESTED)
        if cancel_event.is_set():
            raise _Cancelled()

        started = time.monotonic()
        result: Optional[ToolResult] = None

        decision = self.danger_policy.decide(request.name, request.arguments) if request.is_actionable else None
        if decision is None:
            logger.warning(f"ORCHESTRATOR: Refusing tool call {request.id} with no usable name")
            result = ToolResult(
                tool_call_id=request.id,
                content=f"Unknown tool: {request.name or '(empty)'}",
                is_error=True,
            )
        elif decision is ToolDecision.DENY:
            logger.info(f"ORCHESTRATOR: {request.name} ({request.id}) refused by permission policy")
            result = ToolResult(tool_call_id=request.id, content=POLICY_DENIED_MESSAGE, is_error=True)
        elif decision is ToolDecision.ASK:
            self._set_state(OrchestratorState.AWAITING_APPROVAL)
            # Registered before the event goes out so an immediate answer is kept
            self.approvals.register(context.session_id, request.id, request.name, request.arguments)
            yield ToolApprovalRequestEvent(
                tool_call_id=request.id,
                tool_name=request.name,
                input=request.arguments,
            )
            try:
                approved = await self._race(
                    self.approvals.request(
                        context.session_id,
                        request.id,
                        request.name,
                        request.arguments,
                        timeout=self.config.approval_timeout_seconds,
                    ),
                    cancel_event,
                )
            except _Cancelled:
                self.approvals.discard_session(context.session_id)
                raise
            if not approved:
                logger.info(f"ORCHESTRATOR: {request.name} ({request.id}) denied")
                result = ToolResult(tool_call_id=request.id, content=DENIED_MESSAGE, is_error=True)

        if result is None:
            self._set_state(OrchestratorState.TOOL_EXECUTING)
            result = await self._race(
                self.dispatcher.execute_request(request, context),
                cancel_event,
                abandon=True,
            )

        self._set_state(OrchestratorState.RESULT_INJECTED)
        results.append(result)
        yield ToolResultEvent(
            tool_call_id=request.id,
            result=result.content,
            is_error=result.is_error,
            tool_name=request.name,
            duration=int((time.monotonic() - started) * 1000),
        )

    def _finish_cancelled(self) -> MessageStopEvent:
        logger.info(f"ORCHESTRATOR: {self._session_id} cancelled in state {self.state.value}")
        self._set_state(OrchestratorState.CANCELLED)
        return cancelled_stop()
