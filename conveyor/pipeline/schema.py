"""Pipeline schema definitions using Pydantic for validation.

This module defines:
- Stage definitions submitted by callers (command, manual, approval, notification)
- StageExecution / PipelineExecution records tracked by the engine
- PipelineConfig for named pipeline definitions loaded from YAML

Field names are snake_case in Python and camelCase on the wire
(``retryCount``, ``continueOnError``, ...). Both spellings are accepted as input.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class StageType(str, Enum):
    """Type of pipeline stage."""
    COMMAND = "command"            # Run a shell command
    MANUAL = "manual"              # Human step, no-op for the engine
    APPROVAL = "approval"          # Sign-off checkpoint
    NOTIFICATION = "notification"  # Delivered by an external notifier


class StageStatus(str, Enum):
    """Status of a single stage execution."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # Reserved, not produced by the stage loop
    WAITING_APPROVAL = "waiting_approval"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.SUCCESS, StageStatus.FAILED, StageStatus.SKIPPED)


class ExecutionStatus(str, Enum):
    """Aggregate status of a pipeline execution."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class _WireModel(BaseModel):
    """Base model that speaks camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dict with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json")


class Stage(_WireModel):
    """A single declared unit of work in a pipeline."""
    id: str = Field(..., min_length=1, description="Stage identifier, unique within a pipeline")
    name: str = Field("", description="Human-readable stage name")
    type: StageType = Field(StageType.COMMAND, description="Type of stage")
    order: int = Field(0, description="Sort key; lower runs first, ties keep input order")
    requires_approval: bool = Field(False, description="Park the stage until a human approves it")

    # Command stage (type=command)
    command: Optional[str] = Field(None, description="Executable or shell snippet to run")
    args: List[str] = Field(default_factory=list, description="Arguments joined to the command with spaces")
    working_directory: Optional[str] = Field(None, description="Overrides the pipeline working directory")
    timeout: Optional[int] = Field(
        None, ge=0, description="Per-attempt timeout in ms (default 300000, 0 disables)"
    )
    retry_count: int = Field(0, ge=0, description="Extra attempts after the first failure")

    continue_on_error: bool = Field(False, description="Keep going when this stage fails")

    @field_validator("args", mode="before")
    @classmethod
    def coerce_args(cls, value: Any) -> List[str]:
        """Accept null and scalar YAML values as arguments."""
        if value is None:
            return []
        if isinstance(value, (str, int, float)):
            value = [value]
        return [str(item) for item in value]

    @property
    def is_runnable_command(self) -> bool:
        return self.type == StageType.COMMAND and bool(self.command and self.command.strip())


class StageExecution(_WireModel):
    """Record of one stage's attempt(s) within a pipeline execution."""
    id: str
    stage_id: str
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    attempts: int = 0
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None


class PipelineExecution(_WireModel):
    """One run of an ordered stage list with an aggregate status."""
    id: str
    pipeline_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    stage_executions: List[StageExecution] = Field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    working_directory: Optional[str] = None

    def find_stage_execution(self, stage_execution_id: str) -> Optional[StageExecution]:
        for stage_execution in self.stage_executions:
            if stage_execution.id == stage_execution_id:
                return stage_execution
        return None


class PipelineConfig(_WireModel):
    """Named pipeline definition, usually loaded from YAML."""
    name: str = Field(..., min_length=1, description="Pipeline name, used as the pipeline id")
    version: str = Field("1.0", description="Pipeline version for tracking changes")
    description: Optional[str] = Field(None, description="Human-readable description")
    working_directory: Optional[str] = Field(None, description="Default working directory for all stages")
    stages: List[Stage] = Field(..., description="Stages, executed by ascending order")

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, value: Any) -> str:
        return str(value)

    @field_validator("stages")
    @classmethod
    def validate_stages(cls, stages: List[Stage]) -> List[Stage]:
        """Validate stage list has at least one stage and unique IDs."""
        if not stages:
            raise ValueError("Pipeline must have at least one stage")

        stage_ids = [stage.id for stage in stages]
        if len(stage_ids) != len(set(stage_ids)):
            raise ValueError("Stage IDs must be unique")

        return stages
