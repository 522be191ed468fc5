"""
Step executor contract.

The orchestrator never performs a step's work itself. It hands the step's
template reference and the current context variables to a StepExecutor and
interprets what comes back.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import ExecutionError
from .events import maybe_await
from .schema import StepDef


@dataclass
class StepResult:
    """Outcome of one external step execution"""
    success: bool = True
    context_patch: Dict[str, Any] = field(default_factory=dict)
    message: str = ""
    should_continue: bool = True  # False: finish the workflow after this step


class StepExecutor(ABC):
    """
    Interface for running workflow steps.
    Implementations must be safe to re-invoke for the same step on resume.
    """

    @abstractmethod
    async def execute(self, template_ref: Optional[str], context_variables: Dict[str, Any]) -> Any:
        """
        Execute one step.

        Args:
            template_ref: The step's template reference (may be None)
            context_variables: A copy of the current context variables

        Returns:
            StepResult, a context patch dict, or None for "no changes"

        Raises:
            Any exception; the orchestrator reports it as ExecutionError
        """
        pass


class CallableStepExecutor(StepExecutor):
    """Adapts a plain or async function ``fn(template_ref, context)``."""

    def __init__(self, fn: Callable[[Optional[str], Dict[str, Any]], Any]):
        self.fn = fn

    async def execute(self, template_ref, context_variables):
        return await maybe_await(self.fn(template_ref, context_variables))


def normalize_result(step: StepDef, raw: Any) -> StepResult:
    """
    Turn whatever an executor returned into a successful StepResult.

    Raises:
        ExecutionError: If the result reports failure or has an unknown shape
    """
    if raw is None:
        return StepResult()
    if isinstance(raw, StepResult):
        if not raw.success:
            raise ExecutionError(step.id, raw.message or f"Step '{step.name}' failed")
        return raw
    if isinstance(raw, dict):
        return StepResult(context_patch=dict(raw))
    raise ExecutionError(
        step.id, f"Step '{step.name}' returned unsupported result type {type(raw).__name__}"
    )


async def run_step(executor: StepExecutor, step: StepDef, context_variables: Dict[str, Any]) -> StepResult:
    """
    Invoke the executor for one step, wrapping every failure in ExecutionError.
    """
    try:
        raw = await executor.execute(step.template_ref, dict(context_variables))
    except ExecutionError:
        raise
    except Exception as e:
        raise ExecutionError(step.id, f"Step '{step.name}' failed: {e}", cause=e) from e
    return normalize_result(step, raw)
