"""Approval gate: tracks stage executions awaiting human sign-off.

An entry exists only while its stage execution is ``waiting_approval`` and
is removed exactly once, when the stage is approved, rejected, or (in
blocking mode) abandoned because the execution was cancelled.

The gate itself never touches execution records; the executor updates the
store and then calls ``PendingApproval.resolve`` to wake a waiting stage.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from conveyor.errors import ApprovalNotFoundError
from conveyor.utils.helpers import utc_now_iso

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """Outcome of a pending approval."""

    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"  # Execution cancelled while waiting


class ApprovalMode(str, Enum):
    """How the stage loop treats stages that require approval."""

    ADVISORY = "advisory"  # Record the request and move on to the next stage
    BLOCKING = "blocking"  # Suspend the stage loop until a decision arrives


@dataclass
class PendingApproval:
    """A stage execution parked in the gate."""

    stage_execution_id: str
    execution_id: str
    stage_id: str
    requested_at: str = field(default_factory=utc_now_iso)
    decision: Optional[ApprovalDecision] = None
    _resolved: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def resolve(self, decision: ApprovalDecision) -> None:
        """Record the decision and wake any waiter."""
        self.decision = decision
        self._resolved.set()

    def wait(
        self,
        cancel_event: Optional[threading.Event] = None,
        poll_interval: float = 0.1,
    ) -> ApprovalDecision:
        """
        Block until a decision is recorded or the execution is cancelled.

        Args:
            cancel_event: Execution cancel event
            poll_interval: How often to check cancel_event

        Returns:
            The recorded decision, or CANCELLED
        """
        while not self._resolved.wait(poll_interval):
            if cancel_event is not None and cancel_event.is_set():
                return ApprovalDecision.CANCELLED
        return self.decision

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stageExecutionId": self.stage_execution_id,
            "executionId": self.execution_id,
            "stageId": self.stage_id,
            "requestedAt": self.requested_at,
        }


class ApprovalGate:
    """Thread-safe registry of pending approvals keyed by stage execution id."""

    def __init__(self):
        self._pending: Dict[str, PendingApproval] = {}
        self._lock = threading.RLock()

    def register(self, stage_execution_id: str, execution_id: str, stage_id: str) -> PendingApproval:
        pending = PendingApproval(
            stage_execution_id=stage_execution_id,
            execution_id=execution_id,
            stage_id=stage_id,
        )
        with self._lock:
            self._pending[stage_execution_id] = pending
        logger.info(f"Stage {stage_id} ({stage_execution_id}) of execution {execution_id} awaits approval")
        return pending

    def get(self, stage_execution_id: str) -> PendingApproval:
        with self._lock:
            pending = self._pending.get(stage_execution_id)
        if pending is None:
            raise ApprovalNotFoundError(stage_execution_id)
        return pending

    def pop(self, stage_execution_id: str) -> PendingApproval:
        """Remove a registration; raises ApprovalNotFoundError if it is already gone."""
        with self._lock:
            pending = self._pending.pop(stage_execution_id, None)
        if pending is None:
            raise ApprovalNotFoundError(stage_execution_id)
        return pending

    def is_pending(self, stage_execution_id: str) -> bool:
        with self._lock:
            return stage_execution_id in self._pending

    def list(self, execution_id: Optional[str] = None) -> List[PendingApproval]:
        with self._lock:
            pending = list(self._pending.values())
        if execution_id:
            pending = [p for p in pending if p.execution_id == execution_id]
        return pending
