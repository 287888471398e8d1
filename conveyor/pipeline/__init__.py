"""Pipeline execution engine for Conveyor.

This package provides:
- Stage / execution schema definitions (schema.py)
- Command runner with timeout and cancellation (command_runner.py)
- Stage runner with retry policy (stage_runner.py)
- Approval gate (approval.py)
- In-memory execution registry (store.py)
- Pipeline executor that sequences stages (executor.py)
- Pipeline loader for YAML definitions (loader.py)
"""

from conveyor.pipeline.schema import (
    ExecutionStatus,
    PipelineConfig,
    PipelineExecution,
    Stage,
    StageExecution,
    StageStatus,
    StageType,
)
from conveyor.pipeline.approval import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalMode,
    PendingApproval,
)
from conveyor.pipeline.command_runner import CommandResult, CommandRunner
from conveyor.pipeline.store import ExecutionStore
from conveyor.pipeline.stage_runner import StageRunner
from conveyor.pipeline.executor import PipelineExecutor
from conveyor.pipeline.loader import PipelineLoader, PipelineRegistry

__all__ = [
    "ExecutionStatus",
    "PipelineConfig",
    "PipelineExecution",
    "Stage",
    "StageExecution",
    "StageStatus",
    "StageType",
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalMode",
    "PendingApproval",
    "CommandResult",
    "CommandRunner",
    "ExecutionStore",
    "StageRunner",
    "PipelineExecutor",
    "PipelineLoader",
    "PipelineRegistry",
]
