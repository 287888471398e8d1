#!/usr/bin/env python3
"""Test pipeline executor end to end with real shell commands."""

import sys
import time

import pytest
from pydantic import ValidationError

from conveyor.errors import ApprovalNotFoundError, ExecutionNotFoundError
from conveyor.events import EventType
from conveyor.pipeline import (
    CommandRunner,
    ExecutionStatus,
    PipelineConfig,
    PipelineExecutor,
    Stage,
    StageStatus,
    StageType,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")


def make_executor(**kwargs) -> PipelineExecutor:
    kwargs.setdefault("retry_delay_seconds", 0.05)
    kwargs.setdefault("command_runner", CommandRunner(kill_grace_seconds=1.0))
    return PipelineExecutor(**kwargs)


def run(executor: PipelineExecutor, stages, timeout: float = 15, **kwargs):
    execution_id = executor.execute("test-pipeline", stages, **kwargs)
    return executor.wait_for_completion(execution_id, timeout=timeout)


def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError("condition not met in time")


def record_events(executor: PipelineExecutor):
    events = []
    executor.subscribe(None, events.append)
    return events


def stage_ids(execution):
    return [se.stage_id for se in execution.stage_executions]


@pytest.fixture
def executor():
    executor = make_executor()
    yield executor
    executor.shutdown(wait=True, cancel_running=True)


# ============================================================================
# Stage ordering and outcomes
# ============================================================================

def test_all_stages_succeed_in_order(executor):
    """Test stages run by ascending order; ties keep input order."""
    execution = run(executor, [
        {"id": "third", "command": "echo", "args": ["3"], "order": 2},
        {"id": "first", "command": "echo", "args": ["1"], "order": 1},
        {"id": "second", "command": "echo", "args": ["2"], "order": 1},
    ])

    assert execution.status == ExecutionStatus.SUCCESS
    assert stage_ids(execution) == ["first", "second", "third"]
    assert all(se.status == StageStatus.SUCCESS for se in execution.stage_executions)
    assert [se.output for se in execution.stage_executions] == ["1\n", "2\n", "3\n"]
    assert all(se.exit_code == 0 and se.attempts == 1 for se in execution.stage_executions)
    assert execution.completed_at is not None


def test_failure_halts_pipeline(executor):
    """Test s1 true / s2 false / s3 true fails at s2 and never starts s3."""
    execution = run(executor, [
        {"id": "s1", "command": "true", "order": 1},
        {"id": "s2", "command": "false", "order": 2},
        {"id": "s3", "command": "true", "order": 3},
    ])

    assert execution.status == ExecutionStatus.FAILED
    assert stage_ids(execution) == ["s1", "s2"]
    failed = execution.stage_executions[1]
    assert failed.status == StageStatus.FAILED
    assert failed.exit_code == 1
    assert failed.error == "Command exited with code 1"


def test_continue_on_error_proceeds(executor):
    """Test a failing stage with continue_on_error doesn't stop the pipeline."""
    execution = run(executor, [
        {"id": "lint", "command": "false", "continueOnError": True, "order": 1},
        {"id": "test", "command": "true", "order": 2},
    ])

    assert execution.status == ExecutionStatus.SUCCESS
    assert [se.status for se in execution.stage_executions] == [StageStatus.FAILED, StageStatus.SUCCESS]


def test_stage_without_command_passes_through(executor):
    """Test command stages without a command and non-command stages succeed."""
    execution = run(executor, [
        Stage(id="noop", order=1),
        Stage(id="manual", type=StageType.MANUAL, order=2),
        Stage(id="notify", type=StageType.NOTIFICATION, command="false", order=3),
    ])

    assert execution.status == ExecutionStatus.SUCCESS
    assert all(se.status == StageStatus.SUCCESS for se in execution.stage_executions)


def test_registered_handler_runs_for_stage_type(executor):
    """Test a handler for a non-command stage type records its output."""
    calls = []

    def notify(stage, execution_id):
        calls.append((stage.id, execution_id))
        return f"notified about {stage.name}"

    executor.stage_runner.register_handler(StageType.NOTIFICATION, notify)
    execution = run(executor, [Stage(id="announce", name="release", type=StageType.NOTIFICATION)])

    assert calls == [("announce", execution.id)]
    assert execution.stage_executions[0].output == "notified about release"


def test_failing_handler_fails_stage(executor):
    """Test handler exceptions become stage failures."""
    def broken(stage, execution_id):
        raise RuntimeError("mail server down")

    executor.stage_runner.register_handler(StageType.NOTIFICATION, broken)
    execution = run(executor, [Stage(id="announce", type=StageType.NOTIFICATION)])

    assert execution.status == ExecutionStatus.FAILED
    assert execution.stage_executions[0].error == "mail server down"


def test_command_handler_cannot_be_registered(executor):
    """Test command stages are reserved for the command runner."""
    with pytest.raises(ValueError):
        executor.stage_runner.register_handler(StageType.COMMAND, lambda stage, execution_id: None)


def test_working_directory_resolution(executor, tmp_path):
    """Test stage working directory overrides the pipeline one."""
    pipeline_dir = tmp_path / "pipeline"
    stage_dir = tmp_path / "stage"
    pipeline_dir.mkdir()
    stage_dir.mkdir()

    execution = run(executor, [
        {"id": "default", "command": "pwd", "order": 1},
        {"id": "override", "command": "pwd", "workingDirectory": str(stage_dir), "order": 2},
    ], working_directory=str(pipeline_dir))

    assert execution.working_directory == str(pipeline_dir)
    outputs = [se.output.strip() for se in execution.stage_executions]
    assert outputs == [str(pipeline_dir.resolve()), str(stage_dir.resolve())]


def test_invalid_stage_definition_rejected(executor):
    """Test invalid stage input is rejected before an execution is created."""
    with pytest.raises(ValidationError):
        executor.execute("p", [{"id": "s1", "retryCount": -1}])

    assert executor.get_all_executions() == []


# ============================================================================
# Retry
# ============================================================================

def test_retry_count_gives_n_plus_one_attempts(executor):
    """Test a always-failing stage with retry_count=2 is attempted 3 times."""
    events = record_events(executor)
    execution = run(executor, [{"id": "flaky", "command": "false", "retryCount": 2}])

    stage_execution = execution.stage_executions[0]
    assert stage_execution.status == StageStatus.FAILED
    assert stage_execution.attempts == 3
    retrying = [e for e in events if e.type == EventType.STAGE_RETRYING]
    assert [e.data["attempt"] for e in retrying] == [1, 2]
    assert all(e.data["maxAttempts"] == 3 for e in retrying)


def test_retry_then_success(executor, tmp_path):
    """Test a stage that fails twice then succeeds ends successful."""
    counter = tmp_path / "count"
    script = (
        f"'n=$(cat {counter} 2>/dev/null || echo 0); n=$((n+1)); "
        f"echo $n > {counter}; echo attempt $n; [ $n -ge 3 ]'"
    )

    execution = run(executor, [{"id": "flaky", "command": "sh", "args": ["-c", script], "retryCount": 3}])

    stage_execution = execution.stage_executions[0]
    assert execution.status == ExecutionStatus.SUCCESS
    assert stage_execution.status == StageStatus.SUCCESS
    assert stage_execution.attempts == 3
    assert stage_execution.output == "attempt 3\n"
    assert stage_execution.exit_code == 0


def test_retries_are_spaced_by_default_delay():
    """Test consecutive attempts are at least one second apart by default."""
    executor = make_executor(retry_delay_seconds=1.0)
    try:
        start = time.monotonic()
        execution = run(executor, [{"id": "flaky", "command": "false", "retryCount": 1}])
        elapsed = time.monotonic() - start
    finally:
        executor.shutdown()

    assert execution.stage_executions[0].attempts == 2
    assert elapsed >= 1.0


def test_allowlist_rejection_is_not_retried():
    """Test commands outside the allowlist fail once without retries."""
    executor = make_executor(command_runner=CommandRunner(allowlist=["echo"]))
    try:
        execution = run(executor, [{"id": "danger", "command": "rm", "args": ["-rf", "nothing"], "retryCount": 3}])
    finally:
        executor.shutdown()

    stage_execution = execution.stage_executions[0]
    assert stage_execution.status == StageStatus.FAILED
    assert stage_execution.attempts == 1
    assert "not allowlisted" in stage_execution.error


def test_timeout_fails_stage(executor):
    """Test a command exceeding its timeout is killed and the stage fails."""
    start = time.monotonic()
    execution = run(executor, [{"id": "slow", "command": "sleep", "args": ["30"], "timeout": 200}])

    assert time.monotonic() - start < 10
    stage_execution = execution.stage_executions[0]
    assert stage_execution.status == StageStatus.FAILED
    assert "timed out after 200ms" in stage_execution.error
    assert stage_execution.exit_code == 1


# ============================================================================
# Events
# ============================================================================

def test_event_sequence_for_single_stage(executor):
    """Test the lifecycle events of a one-stage pipeline."""
    events = record_events(executor)
    execution = run(executor, [{"id": "only", "command": "true"}])

    own = [e.type for e in events if e.execution_id == execution.id]
    assert own == [
        EventType.EXECUTION_STARTED,
        EventType.EXECUTION_UPDATED,
        EventType.STAGE_STARTED,
        EventType.STAGE_UPDATED,
        EventType.STAGE_COMPLETED,
        EventType.EXECUTION_COMPLETED,
    ]
    completed = events[-1]
    assert completed.data["status"] == "success"
    assert events[2].data["stageExecution"]["stageId"] == "only"


def test_failure_emits_stage_failed(executor):
    """Test a failed stage is announced before the execution completes."""
    events = record_events(executor)
    run(executor, [{"id": "bad", "command": "false"}])

    types = [e.type for e in events]
    assert EventType.STAGE_FAILED in types
    assert types[-1] == EventType.EXECUTION_COMPLETED
    assert events[-1].data["status"] == "failed"


def test_unsubscribe_stops_delivery(executor):
    """Test unsubscribed callbacks receive nothing."""
    events = []
    executor.subscribe(None, events.append)
    executor.unsubscribe(None, events.append)

    run(executor, [{"id": "only", "command": "true"}])

    assert events == []


# ============================================================================
# Approvals (advisory mode)
# ============================================================================

def test_advisory_approval_does_not_block(executor, tmp_path):
    """Test an approval stage parks while later stages run and its command never runs."""
    marker = tmp_path / "approved-command-ran"
    execution = run(executor, [
        {"id": "gate", "requiresApproval": True, "command": "touch", "args": [str(marker)], "order": 1},
        {"id": "after", "command": "true", "order": 2},
    ])

    assert execution.status == ExecutionStatus.SUCCESS
    gate, after = execution.stage_executions
    assert gate.status == StageStatus.WAITING_APPROVAL
    assert after.status == StageStatus.SUCCESS
    assert not marker.exists()
    assert [p.stage_execution_id for p in executor.list_pending_approvals()] == [gate.id]


def test_approve_stage(executor):
    """Test approving records who approved and marks the stage successful."""
    events = record_events(executor)
    execution = run(executor, [{"id": "gate", "requiresApproval": True}])
    stage_execution_id = execution.stage_executions[0].id

    approved = executor.approve_stage(stage_execution_id, "alice")

    assert approved.status == StageStatus.SUCCESS
    assert approved.approved_by == "alice"
    assert approved.completed_at is not None
    assert executor.get_execution(execution.id).stage_executions[0].status == StageStatus.SUCCESS
    assert executor.list_pending_approvals() == []
    approved_events = [e for e in events if e.type == EventType.STAGE_APPROVED]
    assert approved_events[0].data["approvedBy"] == "alice"


def test_approve_twice_fails(executor):
    """Test a second approval of the same stage is rejected and changes nothing."""
    execution = run(executor, [{"id": "gate", "requiresApproval": True}])
    stage_execution_id = execution.stage_executions[0].id
    executor.approve_stage(stage_execution_id, "alice")

    with pytest.raises(ApprovalNotFoundError):
        executor.approve_stage(stage_execution_id, "bob")

    assert executor.get_execution(execution.id).stage_executions[0].approved_by == "alice"


def test_approve_unknown_stage_fails(executor):
    """Test approving an id that was never registered fails."""
    with pytest.raises(ApprovalNotFoundError):
        executor.approve_stage("does-not-exist", "alice")


def test_reject_stage(executor):
    """Test rejecting marks the stage failed with the rejection message."""
    events = record_events(executor)
    execution = run(executor, [{"id": "gate", "requiresApproval": True}])
    stage_execution_id = execution.stage_executions[0].id

    rejected = executor.reject_stage(stage_execution_id, "bob", reason="not today")

    assert rejected.status == StageStatus.FAILED
    assert rejected.rejected_by == "bob"
    assert rejected.error == "Rejected by bob: not today"
    assert any(e.type == EventType.STAGE_REJECTED for e in events)
    with pytest.raises(ApprovalNotFoundError):
        executor.approve_stage(stage_execution_id, "alice")


# ============================================================================
# Approvals (blocking mode)
# ============================================================================

@pytest.fixture
def blocking_executor():
    executor = make_executor(approval_mode="blocking")
    yield executor
    executor.shutdown(wait=True, cancel_running=True)


def _start_gated(executor, continue_on_error=False):
    execution_id = executor.execute("gated", [
        {"id": "gate", "requiresApproval": True, "continueOnError": continue_on_error, "order": 1},
        {"id": "after", "command": "true", "order": 2},
    ])
    wait_until(lambda: executor.list_pending_approvals(execution_id))
    return execution_id, executor.list_pending_approvals(execution_id)[0].stage_execution_id


def test_blocking_waits_for_approval(blocking_executor):
    """Test later stages only start once the approval stage is approved."""
    execution_id, stage_execution_id = _start_gated(blocking_executor)

    time.sleep(0.3)
    waiting = blocking_executor.get_execution(execution_id)
    assert waiting.status == ExecutionStatus.RUNNING
    assert stage_ids(waiting) == ["gate"]

    blocking_executor.approve_stage(stage_execution_id, "alice")
    execution = blocking_executor.wait_for_completion(execution_id, timeout=10)

    assert execution.status == ExecutionStatus.SUCCESS
    assert stage_ids(execution) == ["gate", "after"]


def test_blocking_reject_halts(blocking_executor):
    """Test a rejected approval stage halts the pipeline."""
    execution_id, stage_execution_id = _start_gated(blocking_executor)

    blocking_executor.reject_stage(stage_execution_id, "bob")
    execution = blocking_executor.wait_for_completion(execution_id, timeout=10)

    assert execution.status == ExecutionStatus.FAILED
    assert stage_ids(execution) == ["gate"]
    assert execution.stage_executions[0].error == "Rejected by bob"


def test_blocking_reject_with_continue_on_error(blocking_executor):
    """Test a rejected stage with continue_on_error lets the pipeline go on."""
    execution_id, stage_execution_id = _start_gated(blocking_executor, continue_on_error=True)

    blocking_executor.reject_stage(stage_execution_id, "bob")
    execution = blocking_executor.wait_for_completion(execution_id, timeout=10)

    assert execution.status == ExecutionStatus.SUCCESS
    assert stage_ids(execution) == ["gate", "after"]


def test_blocking_cancel_while_waiting(blocking_executor):
    """Test cancelling releases a stage waiting for approval."""
    execution_id, stage_execution_id = _start_gated(blocking_executor)

    blocking_executor.cancel_execution(execution_id)
    execution = blocking_executor.wait_for_completion(execution_id, timeout=10)

    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.stage_executions[0].status == StageStatus.FAILED
    assert execution.stage_executions[0].error == "Execution cancelled"
    assert blocking_executor.list_pending_approvals() == []


# ============================================================================
# Cancellation
# ============================================================================

def test_cancel_terminates_running_command(executor):
    """Test cancelling kills the running command well before it would finish."""
    events = record_events(executor)
    execution_id = executor.execute("p", [
        {"id": "slow", "command": "sleep", "args": ["30"], "order": 1},
        {"id": "never", "command": "true", "order": 2},
    ])
    wait_until(lambda: any(
        se.status == StageStatus.RUNNING
        for se in executor.get_execution(execution_id).stage_executions
    ))

    start = time.monotonic()
    cancelled = executor.cancel_execution(execution_id)
    execution = executor.wait_for_completion(execution_id, timeout=10)

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert time.monotonic() - start < 5
    assert execution.status == ExecutionStatus.CANCELLED
    assert stage_ids(execution) == ["slow"]
    assert execution.stage_executions[0].status == StageStatus.FAILED
    assert execution.stage_executions[0].error == "Execution cancelled"
    types = [e.type for e in events]
    assert EventType.EXECUTION_CANCELLED in types
    assert types[-1] == EventType.EXECUTION_COMPLETED


def test_cancel_finished_execution_is_noop(executor):
    """Test cancelling a finished execution keeps its status and emits nothing."""
    execution = run(executor, [{"id": "only", "command": "true"}])
    events = record_events(executor)

    result = executor.cancel_execution(execution.id)

    assert result.status == ExecutionStatus.SUCCESS
    assert executor.get_execution(execution.id).status == ExecutionStatus.SUCCESS
    assert events == []


def test_cancel_unknown_execution_fails(executor):
    """Test unknown execution ids raise ExecutionNotFoundError."""
    with pytest.raises(ExecutionNotFoundError):
        executor.cancel_execution("missing")
    with pytest.raises(ExecutionNotFoundError):
        executor.get_execution("missing")
    with pytest.raises(ExecutionNotFoundError):
        executor.wait_for_completion("missing")


# ============================================================================
# Concurrency and supervision
# ============================================================================

def test_executions_run_concurrently(executor):
    """Test separate executions don't wait for each other."""
    start = time.monotonic()
    first = executor.execute("a", [{"id": "sleep", "command": "sleep", "args": ["1"]}])
    second = executor.execute("b", [{"id": "sleep", "command": "sleep", "args": ["1"]}])

    assert executor.wait_for_completion(first, timeout=10).status == ExecutionStatus.SUCCESS
    assert executor.wait_for_completion(second, timeout=10).status == ExecutionStatus.SUCCESS
    assert time.monotonic() - start < 1.9
    assert first != second
    assert {e.id for e in executor.get_all_executions()} == {first, second}


def test_waiting_approvals_do_not_hold_back_other_executions():
    """Test executions parked on blocking approvals don't delay unrelated ones."""
    executor = make_executor(approval_mode="blocking")
    try:
        gated = [
            executor.execute(f"gated-{index}", [{"id": "gate", "requiresApproval": True}])
            for index in range(40)
        ]
        wait_until(lambda: len(executor.list_pending_approvals()) == len(gated))

        other = executor.execute("other", [{"id": "s1", "command": "true"}])
        execution = executor.wait_for_completion(other, timeout=10)

        assert execution.status == ExecutionStatus.SUCCESS
        assert all(
            executor.get_execution(execution_id).status == ExecutionStatus.RUNNING
            for execution_id in gated
        )
    finally:
        executor.shutdown(wait=True, cancel_running=True)

    assert all(executor.get_execution(execution_id).status == ExecutionStatus.CANCELLED for execution_id in gated)


def test_unexpected_error_fails_execution(executor):
    """Test a crash inside the stage loop fails the execution instead of escaping."""
    events = record_events(executor)

    def crash(*args, **kwargs):
        raise RuntimeError("engine bug")

    executor.stage_runner.run_stage = crash
    execution = run(executor, [{"id": "only", "command": "true"}])

    assert execution.status == ExecutionStatus.FAILED
    assert events[-1].type == EventType.EXECUTION_COMPLETED


def test_execute_config_uses_pipeline_name(executor, tmp_path):
    """Test running a loaded pipeline definition."""
    pipeline = PipelineConfig(
        name="release",
        working_directory=str(tmp_path),
        stages=[Stage(id="where", command="pwd")],
    )

    execution_id = executor.execute_config(pipeline)
    execution = executor.wait_for_completion(execution_id, timeout=10)

    assert execution.pipeline_id == "release"
    assert execution.stage_executions[0].output.strip() == str(tmp_path.resolve())


def test_shutdown_cancels_running_executions():
    """Test shutdown with cancel_running stops in-flight executions."""
    executor = make_executor()
    execution_id = executor.execute("p", [{"id": "slow", "command": "sleep", "args": ["30"]}])
    wait_until(lambda: executor.get_execution(execution_id).status == ExecutionStatus.RUNNING)

    start = time.monotonic()
    executor.shutdown(wait=True, cancel_running=True)

    assert time.monotonic() - start < 5
    assert executor.get_execution(execution_id).status == ExecutionStatus.CANCELLED
