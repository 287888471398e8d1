"""In-memory execution registry.

Owns every PipelineExecution record of one executor together with its
cancel event. All mutations happen under the store lock; readers receive
deep copies so callers never observe a record mid-update.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from conveyor.errors import ExecutionNotFoundError, StageExecutionNotFoundError
from conveyor.pipeline.schema import (
    ExecutionStatus,
    PipelineExecution,
    StageExecution,
    StageStatus,
)
from conveyor.utils.helpers import new_id, utc_now_iso

logger = logging.getLogger(__name__)


class ExecutionStore:
    """Thread-safe directory of executions, keyed by execution id."""

    def __init__(self):
        self._executions: Dict[str, PipelineExecution] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.RLock()

    def create(self, pipeline_id: str, working_directory: Optional[str] = None) -> PipelineExecution:
        """Register a new pending execution under a fresh unique id."""
        with self._lock:
            execution_id = new_id()
            while execution_id in self._executions:
                execution_id = new_id()
            execution = PipelineExecution(
                id=execution_id,
                pipeline_id=pipeline_id,
                status=ExecutionStatus.PENDING,
                started_at=utc_now_iso(),
                working_directory=working_directory,
            )
            self._executions[execution_id] = execution
            self._cancel_events[execution_id] = threading.Event()
            return execution.model_copy(deep=True)

    def _require(self, execution_id: str) -> PipelineExecution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def get(self, execution_id: str) -> PipelineExecution:
        with self._lock:
            return self._require(execution_id).model_copy(deep=True)

    def exists(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._executions

    def list(self) -> List[PipelineExecution]:
        with self._lock:
            return [execution.model_copy(deep=True) for execution in self._executions.values()]

    def cancel_event(self, execution_id: str) -> threading.Event:
        with self._lock:
            self._require(execution_id)
            return self._cancel_events[execution_id]

    def is_cancelled(self, execution_id: str) -> bool:
        with self._lock:
            return self._require(execution_id).status == ExecutionStatus.CANCELLED

    def mark_running(self, execution_id: str) -> Optional[PipelineExecution]:
        """Promote pending -> running. Returns None when the execution is already terminal."""
        with self._lock:
            execution = self._require(execution_id)
            if execution.status.is_terminal:
                return None
            execution.status = ExecutionStatus.RUNNING
            return execution.model_copy(deep=True)

    def finish(self, execution_id: str, status: ExecutionStatus) -> Optional[PipelineExecution]:
        """Move to a terminal status. Returns None when another terminal status already won."""
        with self._lock:
            execution = self._require(execution_id)
            if execution.status.is_terminal:
                return None
            execution.status = status
            execution.completed_at = utc_now_iso()
            return execution.model_copy(deep=True)

    def cancel(self, execution_id: str) -> Tuple[PipelineExecution, bool]:
        """
        Mark an execution cancelled and raise its cancel event.

        Returns:
            (snapshot, changed) where changed is False if it was already terminal
        """
        with self._lock:
            execution = self._require(execution_id)
            if execution.status.is_terminal:
                return execution.model_copy(deep=True), False
            execution.status = ExecutionStatus.CANCELLED
            execution.completed_at = utc_now_iso()
            self._cancel_events[execution_id].set()
            return execution.model_copy(deep=True), True

    def append_stage(self, execution_id: str, stage_id: str) -> StageExecution:
        """Create a pending StageExecution at the end of the execution's list."""
        with self._lock:
            execution = self._require(execution_id)
            stage_execution = StageExecution(
                id=new_id(),
                stage_id=stage_id,
                status=StageStatus.PENDING,
                started_at=utc_now_iso(),
            )
            execution.stage_executions.append(stage_execution)
            return stage_execution.model_copy(deep=True)

    def get_stage(self, execution_id: str, stage_execution_id: str) -> StageExecution:
        with self._lock:
            stage_execution = self._require(execution_id).find_stage_execution(stage_execution_id)
            if stage_execution is None:
                raise StageExecutionNotFoundError(stage_execution_id)
            return stage_execution.model_copy(deep=True)

    def update_stage(
        self,
        execution_id: str,
        stage_execution_id: str,
        expected_status: Optional[StageStatus] = None,
        **changes: Any,
    ) -> StageExecution:
        """
        Apply field changes to a stage execution.

        Args:
            execution_id: Owning execution
            stage_execution_id: Stage execution to update
            expected_status: Only update if the stage currently has this status
            **changes: StageExecution field values

        Raises:
            ExecutionNotFoundError: Execution is gone
            StageExecutionNotFoundError: Stage is gone or not in expected_status
        """
        with self._lock:
            stage_execution = self._require(execution_id).find_stage_execution(stage_execution_id)
            if stage_execution is None:
                raise StageExecutionNotFoundError(stage_execution_id)
            if expected_status is not None and stage_execution.status != expected_status:
                raise StageExecutionNotFoundError(stage_execution_id)
            for key, value in changes.items():
                setattr(stage_execution, key, value)
            return stage_execution.model_copy(deep=True)
