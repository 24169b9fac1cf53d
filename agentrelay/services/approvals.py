"""
Approval channel for dangerous tool calls.

The orchestrator registers a pending approval and awaits its future; the API
resolves it when the user answers. Pending approvals are keyed by
(session_id, tool_call_id) and live in memory only.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class PendingApproval:
    """One tool call waiting for a human decision."""

    session_id: str
    tool_call_id: str
    tool_name: str
    tool_input: dict[str, Any]
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)


class ApprovalHub:
    """
    In-process registry of pending approvals.

    Usage:
        hub = ApprovalHub()
        approved = await hub.request(session_id, call_id, "Bash", {"command": "ls"})
        # elsewhere:
        hub.resolve(session_id, call_id, approved=True)
    """

    def __init__(self) -> None:
        self._pending: dict[tuple[str, str], PendingApproval] = {}

    def register(
        self,
        session_id: str,
        tool_call_id: str,
        tool_name: str,
        tool_input: Optional[dict[str, Any]] = None,
    ) -> PendingApproval:
        """
        Register a pending approval.

        An entry that already exists for the same call is returned as is, so a
        decision delivered between register() and request() still counts.
        """
        key = (session_id, tool_call_id)
        existing = self._pending.get(key)
        if existing is not None:
            return existing

        future = asyncio.get_running_loop().create_future()
        pending = PendingApproval(
            session_id=session_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            tool_input=tool_input or {},
            future=future,
        )
        self._pending[key] = pending
        logger.info(f"APPROVAL: Waiting for decision on {tool_name} ({tool_call_id}) in {session_id}")
        return pending

    async def request(
        self,
        session_id: str,
        tool_call_id: str,
        tool_name: str,
        tool_input: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Wait for a decision.

        Args:
            timeout: Seconds to wait; None waits indefinitely. Expiry counts
                     as a denial.

        Returns:
            True if approved, False if denied or timed out.
        """
        pending = self.register(session_id, tool_call_id, tool_name, tool_input)
        try:
            if timeout is None:
                return await pending.future
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"APPROVAL: Timed out after {timeout}s for {tool_call_id}")
            return False
        finally:
            if self._pending.get((session_id, tool_call_id)) is pending:
                del self._pending[(session_id, tool_call_id)]
                if not pending.future.done():
                    pending.future.cancel()

    def resolve(self, session_id: str, tool_call_id: str, approved: bool) -> bool:
        """
        Deliver a decision.

        Returns:
            True if a pending approval was found and resolved.
        """
        pending = self._pending.get((session_id, tool_call_id))
        if pending is None or pending.future.done():
            logger.warning(f"APPROVAL: No pending approval for {tool_call_id} in {session_id}")
            return False
        pending.future.set_result(bool(approved))
        logger.info(
            f"APPROVAL: {'APPROVED' if approved else 'DENIED'} "
            f"{pending.tool_name} ({tool_call_id}) in {session_id}"
        )
        return True

    def list_pending(self, session_id: str) -> list[dict[str, Any]]:
        """Pending approvals for a session, oldest first (for reconnecting clients)."""
        items = sorted(
            (p for (sid, _), p in self._pending.items() if sid == session_id),
            key=lambda p: p.created_at,
        )
        now = time.monotonic()
        return [
            {
                "toolCallId": p.tool_call_id,
                "toolName": p.tool_name,
                "input": p.tool_input,
                "ageMs": int((now - p.created_at) * 1000),
            }
            for p in items
        ]

    def discard_session(self, session_id: str) -> int:
        """Cancel every pending approval of a session. Returns how many were dropped."""
        keys = [key for key in self._pending if key[0] == session_id]
        for key in keys:
            pending = self._pending.pop(key)
            if not pending.future.done():
                pending.future.cancel()
        return len(keys)
