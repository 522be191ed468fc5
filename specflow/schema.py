"""
Workflow Schema Definitions using Pydantic

This module defines the structure of workflow definitions, the live
runtime state, approval requests, progress events and persisted snapshots.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


DEFAULT_APPROVAL_OPTIONS = ["Approve", "Modify", "Reject"]


def _utc_now():
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class WorkflowStatus(str, Enum):
    """Status of a workflow instance."""
    IDLE = "idle"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (WorkflowStatus.RUNNING, WorkflowStatus.WAITING_APPROVAL)


class LogLevel(str, Enum):
    """Severity of a diagnostics log entry."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ApprovalStatus(str, Enum):
    """Resolution state of an approval request."""
    PENDING = "pending"
    RESOLVED = "resolved"


# ============================================================================
# Workflow Definition
# ============================================================================

class StepDef(BaseModel):
    """Definition of a single workflow step."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    template_ref: Optional[str] = None  # e.g. "requirements.prompt.md"
    requires_approval: bool = False
    approval_message: Optional[str] = None
    approval_options: list[str] = Field(default_factory=lambda: list(DEFAULT_APPROVAL_OPTIONS))
    required_context: list[str] = Field(default_factory=list)
    requires: list[str] = Field(default_factory=list)  # external dependencies

    @field_validator('id')
    @classmethod
    def id_must_be_valid(cls, v):
        if not v or not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('id must be alphanumeric with underscores or hyphens only')
        return v

    @field_validator('approval_options')
    @classmethod
    def options_must_be_distinct(cls, v):
        if not v:
            raise ValueError('approval_options must not be empty')
        if len(set(v)) != len(v):
            raise ValueError('approval_options must be distinct')
        return v


class WorkflowDef(BaseModel):
    """Complete workflow definition. Immutable once loaded."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    steps: list[StepDef]
    approval_timeout_seconds: Optional[float] = None  # None: use configured default
    approval_timeout_enabled: bool = True

    @field_validator('steps')
    @classmethod
    def steps_must_be_unique(cls, v):
        if not v:
            raise ValueError('workflow must have at least one step')
        ids = [s.id for s in v]
        if len(set(ids)) != len(ids):
            raise ValueError('step ids must be unique')
        return v

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def get_step(self, step_id: str) -> Optional[StepDef]:
        """Get a step by ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def get_step_index(self, step_id: str) -> int:
        """Get the index of a step, or -1."""
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return -1


# ============================================================================
# Runtime State
# ============================================================================

class WorkflowState(BaseModel):
    """Live runtime state of one workflow run. Mutated only by the orchestrator."""
    workflow_id: str = Field(default_factory=lambda: _new_id("wf"))
    session_id: str
    definition: WorkflowDef
    current_step_index: int = 0
    status: WorkflowStatus = WorkflowStatus.IDLE
    context_variables: dict[str, Any] = Field(default_factory=dict)
    initial_input: str = ""
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None

    @property
    def workflow_name(self) -> str:
        return self.definition.name

    @property
    def total_steps(self) -> int:
        return self.definition.step_count

    def get_current_step(self) -> Optional[StepDef]:
        """Get the step at the current index, or None past the end."""
        if 0 <= self.current_step_index < self.definition.step_count:
            return self.definition.steps[self.current_step_index]
        return None

    def update_timestamp(self):
        """Update the updated_at timestamp."""
        self.updated_at = _utc_now()


class ApprovalRequest(BaseModel):
    """A pending decision point embedded in a step transition."""
    id: str = Field(default_factory=lambda: _new_id("apr"))
    step_id: str
    step_name: str = ""
    message: str
    options: list[str]
    status: ApprovalStatus = ApprovalStatus.PENDING
    choice: Optional[str] = None
    resolved_by: Optional[str] = None  # "user", "subscriber", "timeout", "cancel"
    created_at: datetime = Field(default_factory=_utc_now)
    expires_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING


class ApprovalDecision(BaseModel):
    """A chosen option, optionally with context updates for a re-run."""
    choice: str
    context_updates: dict[str, Any] = Field(default_factory=dict)


class ProgressEvent(BaseModel):
    """Progress update emitted to subscribers."""
    workflow_name: str
    current_step_index: int
    total_steps: int
    current_step_name: str
    status: WorkflowStatus
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utc_now)
    session_id: Optional[str] = None
    workflow_id: Optional[str] = None


class LogEntry(BaseModel):
    """A single diagnostics entry for the progress log."""
    step_name: str
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: datetime = Field(default_factory=_utc_now)


# ============================================================================
# Persistence Snapshot
# ============================================================================

class WorkflowSnapshot(BaseModel):
    """Serializable subset of a WorkflowState, sufficient to resume it."""
    workflow_id: str
    definition_name: str
    current_step_index: int
    status: WorkflowStatus
    context_variables: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        """Serialize to a JSON-safe dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowSnapshot":
        """Deserialize from a dictionary produced by to_dict."""
        return cls.model_validate(data)
