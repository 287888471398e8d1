"""Stage runner: turns one Stage into a terminal (or waiting) StageExecution."""

import logging
import threading
from typing import Callable, Dict, Optional

from conveyor.errors import ApprovalNotFoundError, CommandError
from conveyor.events import EventBus, EventEmitter
from conveyor.pipeline.approval import ApprovalDecision, ApprovalGate, ApprovalMode
from conveyor.pipeline.command_runner import CommandResult, CommandRunner
from conveyor.pipeline.schema import Stage, StageExecution, StageStatus, StageType
from conveyor.pipeline.store import ExecutionStore
from conveyor.utils.helpers import utc_now_iso
from conveyor.utils.retry import RetryConfig, retry_sync

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 300000
DEFAULT_RETRY_DELAY_SECONDS = 1.0

# handler(stage, execution_id) -> optional output text
StageHandler = Callable[[Stage, str], Optional[str]]


class StageRunner:
    """Run a single stage: approval parking, command execution with retry, hook dispatch."""

    def __init__(
        self,
        store: ExecutionStore,
        approval_gate: ApprovalGate,
        event_bus: EventBus,
        command_runner: Optional[CommandRunner] = None,
        approval_mode: ApprovalMode = ApprovalMode.ADVISORY,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ):
        """
        Initialize stage runner.

        Args:
            store: Execution store that owns the stage records
            approval_gate: Gate that tracks stages awaiting sign-off
            event_bus: Bus for stage lifecycle events
            command_runner: Runner for command stages
            approval_mode: Advisory (continue immediately) or blocking (wait for a decision)
            default_timeout_ms: Timeout for stages that don't set one
            retry_delay_seconds: Constant delay between command attempts
        """
        self.store = store
        self.approval_gate = approval_gate
        self.event_bus = event_bus
        self.command_runner = command_runner or CommandRunner()
        self.approval_mode = ApprovalMode(approval_mode)
        self.default_timeout_ms = default_timeout_ms
        self.retry_delay_seconds = retry_delay_seconds
        self._handlers: Dict[StageType, StageHandler] = {}

    def register_handler(self, stage_type: StageType, handler: StageHandler) -> None:
        """Attach a handler for manual/approval/notification stages (no-op by default)."""
        if stage_type == StageType.COMMAND:
            raise ValueError("Command stages are run by the command runner")
        self._handlers[StageType(stage_type)] = handler

    def run_stage(
        self,
        execution_id: str,
        stage: Stage,
        working_directory: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StageExecution:
        """
        Run one stage of an execution.

        Args:
            execution_id: Owning execution
            stage: Stage definition
            working_directory: Pipeline-level working directory
            cancel_event: Execution cancel event

        Returns:
            Snapshot of the StageExecution (terminal, or waiting_approval in advisory mode)
        """
        emitter = EventEmitter(execution_id, self.event_bus)

        stage_execution = self.store.append_stage(execution_id, stage.id)
        emitter.stage_started(stage_execution.to_dict())

        if stage.requires_approval:
            return self._await_approval(execution_id, stage, stage_execution, emitter, cancel_event)

        stage_execution = self.store.update_stage(
            execution_id, stage_execution.id, status=StageStatus.RUNNING
        )
        emitter.stage_updated(stage_execution.to_dict())

        try:
            if stage.type == StageType.COMMAND:
                if stage.is_runnable_command:
                    self._execute_command(execution_id, stage_execution.id, stage, working_directory, cancel_event, emitter)
            else:
                self._run_handler(execution_id, stage_execution.id, stage)
        except Exception as e:
            logger.error(f"Stage {stage.id} of execution {execution_id} failed: {e}")
            stage_execution = self.store.update_stage(
                execution_id,
                stage_execution.id,
                status=StageStatus.FAILED,
                error=str(e),
                completed_at=utc_now_iso(),
            )
            emitter.stage_failed(stage_execution.to_dict())
            return stage_execution

        stage_execution = self.store.update_stage(
            execution_id,
            stage_execution.id,
            status=StageStatus.SUCCESS,
            completed_at=utc_now_iso(),
        )
        emitter.stage_completed(stage_execution.to_dict())
        return stage_execution

    def _run_handler(self, execution_id: str, stage_execution_id: str, stage: Stage) -> None:
        handler = self._handlers.get(stage.type)
        if handler is None:
            logger.debug(f"Stage {stage.id} ({stage.type.value}) has no handler, passing through")
            return
        output = handler(stage, execution_id)
        if output is not None:
            self.store.update_stage(execution_id, stage_execution_id, output=output)

    def _execute_command(
        self,
        execution_id: str,
        stage_execution_id: str,
        stage: Stage,
        working_directory: Optional[str],
        cancel_event: Optional[threading.Event],
        emitter: EventEmitter,
    ) -> CommandResult:
        """Run the stage command with constant-delay retries; re-raises the last error."""
        cwd = stage.working_directory or working_directory
        timeout_ms = stage.timeout if stage.timeout is not None else self.default_timeout_ms
        config = RetryConfig(
            max_retries=stage.retry_count,
            base_delay=self.retry_delay_seconds,
            exponential_base=1.0,
            jitter=False,
        )
        attempts = 0

        def attempt() -> CommandResult:
            nonlocal attempts
            attempts += 1
            self.store.update_stage(execution_id, stage_execution_id, attempts=attempts)
            try:
                result = self.command_runner.run(
                    stage.command,
                    stage.args,
                    cwd=cwd,
                    timeout_ms=timeout_ms,
                    cancel_event=cancel_event,
                    label=f"{execution_id}:{stage.id}",
                )
            except CommandError as e:
                self.store.update_stage(
                    execution_id,
                    stage_execution_id,
                    exit_code=e.exit_code if e.exit_code else 1,
                    output=e.stdout or None,
                )
                raise

            self.store.update_stage(
                execution_id,
                stage_execution_id,
                output=result.stdout,
                error=result.stderr or None,
                exit_code=0,
            )
            return result

        def on_retry(failed_attempt: int, error: Exception, delay: float) -> None:
            snapshot = self.store.get_stage(execution_id, stage_execution_id)
            emitter.stage_retrying(snapshot.to_dict(), failed_attempt, config.max_attempts, str(error))

        return retry_sync(attempt, config=config, cancel_event=cancel_event, on_retry=on_retry)

    def _await_approval(
        self,
        execution_id: str,
        stage: Stage,
        stage_execution: StageExecution,
        emitter: EventEmitter,
        cancel_event: Optional[threading.Event],
    ) -> StageExecution:
        stage_execution = self.store.update_stage(
            execution_id, stage_execution.id, status=StageStatus.WAITING_APPROVAL
        )
        pending = self.approval_gate.register(stage_execution.id, execution_id, stage.id)
        emitter.stage_waiting_approval(stage_execution.to_dict())

        if self.approval_mode == ApprovalMode.ADVISORY:
            return stage_execution

        decision = pending.wait(cancel_event)
        if decision != ApprovalDecision.CANCELLED:
            return self.store.get_stage(execution_id, stage_execution.id)

        try:
            self.approval_gate.pop(stage_execution.id)
        except ApprovalNotFoundError:
            # A decision arrived together with the cancellation; let it win
            pending.wait()
            return self.store.get_stage(execution_id, stage_execution.id)

        pending.resolve(ApprovalDecision.CANCELLED)
        stage_execution = self.store.update_stage(
            execution_id,
            stage_execution.id,
            status=StageStatus.FAILED,
            error="Execution cancelled",
            completed_at=utc_now_iso(),
        )
        emitter.stage_failed(stage_execution.to_dict())
        return stage_execution
