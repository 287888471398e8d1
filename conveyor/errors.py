"""Error types shared by the execution engine and its API layer.

Two families matter to callers:
- NotFoundError: an execution, stage execution or pending approval is absent.
  Always raised to the caller of a query/mutation, never swallowed.
- CommandError: a command attempt failed (non-zero exit, spawn error,
  timeout, cancellation, allowlist rejection). Recovered by the retry loop
  and surfaced as a failed stage once attempts are exhausted.
"""

from typing import Optional


class ConveyorError(Exception):
    """Base class for all engine errors."""


class NotFoundError(ConveyorError):
    """Requested record does not exist."""


class ExecutionNotFoundError(NotFoundError):
    def __init__(self, execution_id: str):
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class StageExecutionNotFoundError(NotFoundError):
    def __init__(self, stage_execution_id: str):
        super().__init__(f"Stage execution not found: {stage_execution_id}")
        self.stage_execution_id = stage_execution_id


class ApprovalNotFoundError(NotFoundError):
    def __init__(self, stage_execution_id: str):
        super().__init__(f"Approval not found: {stage_execution_id}")
        self.stage_execution_id = stage_execution_id


class CommandError(ConveyorError):
    """A single command attempt failed."""

    def __init__(
        self,
        message: str,
        exit_code: int = 1,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    def __init__(self, command: str, timeout_ms: int, stdout: str = "", stderr: str = ""):
        super().__init__(
            f"Command timed out after {timeout_ms}ms: {command}",
            exit_code=1,
            stdout=stdout,
            stderr=stderr,
        )
        self.timeout_ms = timeout_ms


class CommandCancelledError(CommandError):
    def __init__(self, message: str = "Execution cancelled"):
        super().__init__(message, exit_code=1)


class CommandNotAllowedError(CommandError):
    def __init__(self, command: str, label: Optional[str] = None):
        super().__init__(f"Command not allowlisted: {command}", exit_code=1)
        self.command = command
        self.label = label
