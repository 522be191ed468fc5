"""
Error Taxonomy

Typed, catchable failures raised by orchestrator entry points and recorded
for failures that happen inside a running workflow.

Every error carries ``recoverable``: True means the user may simply retry
the workflow, False means a caller or configuration bug.
"""

from typing import Iterable, Optional


class OrchestratorError(Exception):
    """Base exception for orchestrator errors"""
    recoverable: bool = True


class AlreadyRunningError(OrchestratorError):
    """A non-terminal workflow already exists for the session"""

    def __init__(self, session_id: str, workflow_name: str):
        self.session_id = session_id
        self.workflow_name = workflow_name
        super().__init__(
            f"Workflow '{workflow_name}' is already running for session '{session_id}'"
        )


class UnknownWorkflowError(OrchestratorError):
    """No workflow definition is registered under the requested name"""
    recoverable = False

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown workflow: {name}")


class StateMismatchError(OrchestratorError):
    """A snapshot or request does not match what the orchestrator knows"""
    recoverable = False


class MissingDependencyError(OrchestratorError):
    """Pre-check failure: a step's required context or dependencies are absent"""

    def __init__(self, step_id: str, missing: Iterable[str]):
        self.step_id = step_id
        self.missing = list(missing)
        super().__init__(
            f"Step '{step_id}' is missing required dependencies: {', '.join(self.missing)}"
        )


class ExecutionError(OrchestratorError):
    """The external step executor reported a failure"""

    def __init__(self, step_id: str, message: str, cause: Optional[BaseException] = None):
        self.step_id = step_id
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class UnknownApprovalOptionError(OrchestratorError):
    """An approval response named a choice the request does not offer"""

    def __init__(self, choice: str, options: Iterable[str]):
        self.choice = choice
        self.options = list(options)
        super().__init__(
            f"Unknown approval option '{choice}'; expected one of: {', '.join(self.options)}"
        )


class WorkflowDefinitionError(OrchestratorError):
    """A workflow definition is malformed"""
    recoverable = False


class ConfigurationError(OrchestratorError):
    """Configuration is invalid"""
    recoverable = False


class PersistenceError(OrchestratorError):
    """A snapshot could not be written to the session store"""
    recoverable = False
