"""
specflow - orchestration core for structured, multi-step development workflows.

This package contains:
- schema: Data models for definitions, runtime state, approvals and progress
- orchestrator: The per-session workflow state machine
- approval: Approval gates and option conventions
- progress: Diagnostics log, elapsed time and progress rendering
- registry: Built-in and YAML workflow definitions
- persistence: Snapshot save/load contract and bundled stores
- config: Configuration sources and logging setup
"""

from .schema import (
    WorkflowStatus,
    LogLevel,
    ApprovalStatus,
    StepDef,
    WorkflowDef,
    WorkflowState,
    ApprovalRequest,
    ApprovalDecision,
    ProgressEvent,
    LogEntry,
    WorkflowSnapshot,
)
from .errors import (
    OrchestratorError,
    AlreadyRunningError,
    UnknownWorkflowError,
    StateMismatchError,
    MissingDependencyError,
    ExecutionError,
    UnknownApprovalOptionError,
    WorkflowDefinitionError,
    ConfigurationError,
    PersistenceError,
)
from .approval import ApprovalGate, OptionKind, classify_option
from .executor import StepExecutor, StepResult, CallableStepExecutor
from .progress import ProgressLog, format_duration, render_compact, render_status_bar
from .registry import WorkflowRegistry, load_workflow_file, SPEC_MODE, VIBE_MODE
from .persistence import SessionStore, InMemorySessionStore, JsonFileSessionStore, snapshot_of
from .config import SpecflowConfig, ConfigManager, configure_logging, validate_config
from .orchestrator import WorkflowOrchestrator, build_orchestrator

__version__ = "0.1.0"

__all__ = [
    # Enums
    "WorkflowStatus",
    "LogLevel",
    "ApprovalStatus",
    # Definitions
    "StepDef",
    "WorkflowDef",
    # Runtime state
    "WorkflowState",
    "WorkflowSnapshot",
    "ApprovalRequest",
    "ApprovalDecision",
    "ProgressEvent",
    "LogEntry",
    # Errors
    "OrchestratorError",
    "AlreadyRunningError",
    "UnknownWorkflowError",
    "StateMismatchError",
    "MissingDependencyError",
    "ExecutionError",
    "UnknownApprovalOptionError",
    "WorkflowDefinitionError",
    "ConfigurationError",
    "PersistenceError",
    # Approval
    "ApprovalGate",
    "OptionKind",
    "classify_option",
    # Execution
    "StepExecutor",
    "StepResult",
    "CallableStepExecutor",
    # Progress
    "ProgressLog",
    "format_duration",
    "render_compact",
    "render_status_bar",
    # Definitions registry
    "WorkflowRegistry",
    "load_workflow_file",
    "SPEC_MODE",
    "VIBE_MODE",
    # Persistence
    "SessionStore",
    "InMemorySessionStore",
    "JsonFileSessionStore",
    "snapshot_of",
    # Configuration
    "SpecflowConfig",
    "ConfigManager",
    "configure_logging",
    "validate_config",
    # Orchestration
    "WorkflowOrchestrator",
    "build_orchestrator",
]
