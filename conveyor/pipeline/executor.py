"""Pipeline executor for ordered stage execution.

Runs each submitted pipeline as one tracked execution on its own thread,
emitting lifecycle events for progress tracking. Stages inside an execution
run strictly in sequence; separate executions run concurrently.

Approval stages follow ``approval_mode``:
- advisory: the stage is parked in the approval gate and the loop moves on
  to the next stage immediately. Approval only records sign-off.
- blocking: the loop waits until the stage is approved, rejected, or the
  execution is cancelled.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from conveyor.errors import ApprovalNotFoundError, ExecutionNotFoundError
from conveyor.events import Event, EventBus, EventEmitter, EventType
from conveyor.pipeline.approval import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalMode,
    PendingApproval,
)
from conveyor.pipeline.command_runner import CommandRunner
from conveyor.pipeline.schema import (
    ExecutionStatus,
    PipelineConfig,
    PipelineExecution,
    Stage,
    StageExecution,
    StageStatus,
)
from conveyor.pipeline.stage_runner import (
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_TIMEOUT_MS,
    StageRunner,
)
from conveyor.pipeline.store import ExecutionStore
from conveyor.utils.helpers import debug_execution_log, utc_now_iso

logger = logging.getLogger(__name__)

StageInput = Union[Stage, Dict[str, Any]]


class PipelineExecutor:
    """Execute pipelines stage-by-stage with event broadcasting."""

    def __init__(
        self,
        store: Optional[ExecutionStore] = None,
        approval_gate: Optional[ApprovalGate] = None,
        event_bus: Optional[EventBus] = None,
        command_runner: Optional[CommandRunner] = None,
        approval_mode: Union[ApprovalMode, str] = ApprovalMode.ADVISORY,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ):
        """
        Initialize pipeline executor.

        Args:
            store: Execution registry (a private one is created if omitted)
            approval_gate: Pending approval registry
            event_bus: Bus that receives lifecycle events
            command_runner: Runner used for command stages
            approval_mode: "advisory" or "blocking"
            default_timeout_ms: Timeout for command stages without one
            retry_delay_seconds: Constant delay between command attempts
        """
        self.store = store or ExecutionStore()
        self.approval_gate = approval_gate or ApprovalGate()
        self.event_bus = event_bus or EventBus()
        self.approval_mode = ApprovalMode(approval_mode)
        self.stage_runner = StageRunner(
            store=self.store,
            approval_gate=self.approval_gate,
            event_bus=self.event_bus,
            command_runner=command_runner,
            approval_mode=self.approval_mode,
            default_timeout_ms=default_timeout_ms,
            retry_delay_seconds=retry_delay_seconds,
        )
        self._threads: Dict[str, threading.Thread] = {}
        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Any, event_bus: Optional[EventBus] = None) -> "PipelineExecutor":
        """Build an executor from a Config-like object."""
        return cls(
            event_bus=event_bus,
            command_runner=CommandRunner(
                allowlist=config.COMMAND_ALLOWLIST,
                kill_grace_seconds=config.KILL_GRACE_SECONDS,
            ),
            approval_mode=config.APPROVAL_MODE,
            default_timeout_ms=config.DEFAULT_TIMEOUT_MS,
            retry_delay_seconds=config.RETRY_DELAY_SECONDS,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        pipeline_id: str,
        stages: Iterable[StageInput],
        working_directory: Optional[str] = None,
    ) -> str:
        """
        Start a pipeline execution in the background.

        Args:
            pipeline_id: Identifier of the pipeline being run
            stages: Stage definitions (Stage models or dicts)
            working_directory: Default working directory for command stages

        Returns:
            Execution ID; no stage has necessarily started yet

        Raises:
            pydantic.ValidationError: If a stage definition is invalid
        """
        parsed_stages = [s if isinstance(s, Stage) else Stage.model_validate(s) for s in stages]

        execution = self.store.create(pipeline_id, working_directory)
        emitter = EventEmitter(execution.id, self.event_bus)
        emitter.execution_started(execution.to_dict())

        debug_execution_log(
            f"[execution-debug] submit {execution.id} pipeline={pipeline_id} stages={len(parsed_stages)} "
            f"cwd={working_directory}"
        )

        future: Future = Future()
        thread = threading.Thread(
            target=self._run_tracked,
            args=(future, execution.id, parsed_stages, working_directory),
            name=f"pipeline-{execution.id[:8]}",
            daemon=True,
        )
        with self._futures_lock:
            self._futures[execution.id] = future
            self._threads[execution.id] = thread
        thread.start()

        return execution.id

    # Alias for callers using the longer name
    execute_pipeline = execute

    def execute_config(self, pipeline: PipelineConfig, working_directory: Optional[str] = None) -> str:
        """Start an execution of a loaded pipeline definition."""
        return self.execute(
            pipeline.name,
            pipeline.stages,
            working_directory or pipeline.working_directory,
        )

    def get_execution(self, execution_id: str) -> PipelineExecution:
        """Snapshot of one execution; raises ExecutionNotFoundError."""
        return self.store.get(execution_id)

    def get_all_executions(self) -> List[PipelineExecution]:
        """Snapshots of every execution since this executor was created."""
        return self.store.list()

    def cancel_execution(self, execution_id: str) -> PipelineExecution:
        """
        Cancel an execution.

        The status becomes ``cancelled`` immediately; the running command (if
        any) is terminated and no further stages start.

        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        execution, changed = self.store.cancel(execution_id)
        if not changed:
            logger.info(f"Execution {execution_id} already {execution.status.value}, cancel ignored")
            return execution

        logger.info(f"Execution {execution_id} cancelled")
        EventEmitter(execution_id, self.event_bus).execution_cancelled(execution.to_dict())
        return execution

    def approve_stage(self, stage_execution_id: str, approved_by: str) -> StageExecution:
        """
        Approve a stage execution that is waiting for approval.

        Raises:
            ApprovalNotFoundError: No pending approval with this id
            ExecutionNotFoundError: The owning execution is gone
            StageExecutionNotFoundError: The stage execution is gone or no longer waiting
        """
        return self._resolve_approval(
            stage_execution_id,
            ApprovalDecision.APPROVED,
            by=approved_by,
        )

    def reject_stage(self, stage_execution_id: str, rejected_by: str, reason: Optional[str] = None) -> StageExecution:
        """
        Reject a stage execution that is waiting for approval.

        The stage becomes ``failed``. In blocking mode the stage loop then
        applies the stage's continue-on-error policy.

        Raises:
            Same as approve_stage
        """
        return self._resolve_approval(
            stage_execution_id,
            ApprovalDecision.REJECTED,
            by=rejected_by,
            reason=reason,
        )

    def list_pending_approvals(self, execution_id: Optional[str] = None) -> List[PendingApproval]:
        return self.approval_gate.list(execution_id)

    def wait_for_completion(self, execution_id: str, timeout: Optional[float] = None) -> PipelineExecution:
        """
        Block until the background processing of an execution has finished.

        Raises:
            ExecutionNotFoundError: Unknown execution id
            concurrent.futures.TimeoutError: Not finished within timeout
        """
        with self._futures_lock:
            future = self._futures.get(execution_id)
        if future is None:
            raise ExecutionNotFoundError(execution_id)
        future.result(timeout=timeout)
        return self.store.get(execution_id)

    def get_event_history(self, execution_id: str) -> List[Event]:
        """Events of one execution still held by the bus, oldest first."""
        self.store.get(execution_id)
        return self.event_bus.get_history(execution_id=execution_id)

    def is_finished(self, execution_id: str) -> bool:
        """
        Whether the background processing of an execution is over.

        A cancelled execution reports ``cancelled`` at once but stays
        unfinished until its in-flight stage has been torn down and
        ``execution:completed`` has been emitted.

        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        with self._futures_lock:
            future = self._futures.get(execution_id)
        if future is None:
            raise ExecutionNotFoundError(execution_id)
        return future.done()

    def subscribe(
        self,
        event_type: Optional[EventType],
        callback: Callable[[Event], None],
        execution_id: Optional[str] = None,
    ) -> None:
        self.event_bus.subscribe(event_type, callback, execution_id=execution_id)

    def unsubscribe(
        self,
        event_type: Optional[EventType],
        callback: Callable[[Event], None],
        execution_id: Optional[str] = None,
    ) -> None:
        self.event_bus.unsubscribe(event_type, callback, execution_id=execution_id)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        """Optionally cancel unfinished executions, then optionally join their threads."""
        if cancel_running:
            for execution in self.store.list():
                if not execution.status.is_terminal:
                    self.cancel_execution(execution.id)
        if not wait:
            return
        with self._futures_lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join()

    # ------------------------------------------------------------------
    # Background processing
    # ------------------------------------------------------------------

    def _run_tracked(
        self,
        future: Future,
        execution_id: str,
        stages: List[Stage],
        working_directory: Optional[str],
    ) -> None:
        future.set_running_or_notify_cancel()
        try:
            self._run_supervised(execution_id, stages, working_directory)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(None)
        finally:
            with self._futures_lock:
                self._threads.pop(execution_id, None)

    def _run_supervised(self, execution_id: str, stages: List[Stage], working_directory: Optional[str]) -> None:
        """Run the stage loop; unexpected errors fail the execution instead of escaping."""
        emitter = EventEmitter(execution_id, self.event_bus)
        try:
            self._run_stages(execution_id, stages, working_directory, emitter)
        except Exception as e:
            logger.exception(f"Execution {execution_id} crashed: {e}")
            execution = self.store.finish(execution_id, ExecutionStatus.FAILED)
            if execution is not None:
                emitter.execution_completed(execution.to_dict())

    def _run_stages(
        self,
        execution_id: str,
        stages: List[Stage],
        working_directory: Optional[str],
        emitter: EventEmitter,
    ) -> None:
        execution = self.store.mark_running(execution_id)
        if execution is None:
            # Cancelled before its thread got going
            emitter.execution_completed(self.store.get(execution_id).to_dict())
            return
        emitter.execution_updated(execution.to_dict())

        cancel_event = self.store.cancel_event(execution_id)
        sorted_stages = sorted(stages, key=lambda stage: stage.order)

        for stage in sorted_stages:
            if self.store.is_cancelled(execution_id):
                self._finish_cancelled(execution_id, emitter)
                return

            stage_execution = self.stage_runner.run_stage(
                execution_id,
                stage,
                working_directory=working_directory,
                cancel_event=cancel_event,
            )
            debug_execution_log(
                f"[execution-debug] {execution_id} stage {stage.id} -> {stage_execution.status.value}"
            )

            if self.store.is_cancelled(execution_id):
                self._finish_cancelled(execution_id, emitter)
                return

            if stage_execution.status == StageStatus.FAILED and not stage.continue_on_error:
                logger.info(f"Execution {execution_id} halted: stage {stage.id} failed")
                execution = self.store.finish(execution_id, ExecutionStatus.FAILED)
                if execution is not None:
                    emitter.execution_completed(execution.to_dict())
                else:
                    self._finish_cancelled(execution_id, emitter)
                return

        execution = self.store.finish(execution_id, ExecutionStatus.SUCCESS)
        if execution is not None:
            logger.info(f"Execution {execution_id} succeeded")
            emitter.execution_completed(execution.to_dict())
        else:
            self._finish_cancelled(execution_id, emitter)

    def _finish_cancelled(self, execution_id: str, emitter: EventEmitter) -> None:
        emitter.execution_completed(self.store.get(execution_id).to_dict())

    def _resolve_approval(
        self,
        stage_execution_id: str,
        decision: ApprovalDecision,
        by: str,
        reason: Optional[str] = None,
    ) -> StageExecution:
        pending = self.approval_gate.get(stage_execution_id)

        # Validate before removing anything so a failed lookup mutates nothing
        stage_execution = self.store.get_stage(pending.execution_id, stage_execution_id)
        if stage_execution.status != StageStatus.WAITING_APPROVAL:
            raise ApprovalNotFoundError(stage_execution_id)

        self.approval_gate.pop(stage_execution_id)
        emitter = EventEmitter(pending.execution_id, self.event_bus)
        try:
            if decision == ApprovalDecision.APPROVED:
                stage_execution = self.store.update_stage(
                    pending.execution_id,
                    stage_execution_id,
                    expected_status=StageStatus.WAITING_APPROVAL,
                    status=StageStatus.SUCCESS,
                    completed_at=utc_now_iso(),
                    approved_by=by,
                )
                logger.info(f"Stage execution {stage_execution_id} approved by {by}")
                emitter.stage_approved(stage_execution.to_dict(), by)
            else:
                message = f"Rejected by {by}: {reason}" if reason else f"Rejected by {by}"
                stage_execution = self.store.update_stage(
                    pending.execution_id,
                    stage_execution_id,
                    expected_status=StageStatus.WAITING_APPROVAL,
                    status=StageStatus.FAILED,
                    error=message,
                    completed_at=utc_now_iso(),
                    rejected_by=by,
                )
                logger.info(f"Stage execution {stage_execution_id} rejected by {by}")
                emitter.stage_rejected(stage_execution.to_dict(), by, reason)
        finally:
            # Always wake a blocking stage loop, even if the record vanished
            pending.resolve(decision)

        return stage_execution
