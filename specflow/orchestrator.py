"""
Workflow Orchestrator - Core Logic

This module implements the workflow state machine: it owns the single
mutable WorkflowState per session and drives it through its steps.

    start_workflow --> RUNNING --(step i executes)--> [approval?] --> step i+1 ... --> COMPLETED
                          |                               |
                          +--> FAILED (execution error)   +--> CANCELLED (reject / timeout)
                          +--> CANCELLED (cancel_workflow, any non-terminal status)

Each session runs on its own asyncio task. Transitions for a session are
serialized by a per-session lock; progress events are queued in emission
order and delivered by a per-session dispatcher, so subscribers never block
a transition and may safely call back into the orchestrator.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .approval import ApprovalGate, OptionKind, classify_option, create_request
from .config import TIMEOUT_SCOPES, ApprovalConfig, SpecflowConfig, validate_config
from .errors import (
    AlreadyRunningError,
    ConfigurationError,
    ExecutionError,
    MissingDependencyError,
    OrchestratorError,
    StateMismatchError,
)
from .events import EventBus, EventTypes, maybe_await
from .executor import CallableStepExecutor, StepExecutor, StepResult, run_step
from .persistence import InMemorySessionStore, JsonFileSessionStore, SessionStore, snapshot_of
from .progress import ProgressLog, format_duration
from .registry import WorkflowRegistry
from .schema import (
    ApprovalDecision,
    ApprovalRequest,
    LogLevel,
    ProgressEvent,
    StepDef,
    WorkflowSnapshot,
    WorkflowState,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"
WORKFLOW_LOG_NAME = "Workflow"
COMPLETE_STEP_NAME = "Complete"

DependencyChecker = Callable[[StepDef, Dict[str, Any]], Any]


@dataclass
class _Run:
    """Everything the orchestrator tracks for one session's active run."""
    state: WorkflowState
    log: ProgressLog = field(default_factory=ProgressLog)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None
    dispatcher: Optional[asyncio.Task] = None
    gate: Optional[ApprovalGate] = None
    approval_tasks: List[asyncio.Task] = field(default_factory=list)
    last_event: Optional[ProgressEvent] = None
    error: Optional[OrchestratorError] = None
    deadline_step: Optional[int] = None
    step_deadline: Optional[datetime] = None

    @property
    def terminal(self) -> bool:
        return self.state.status.is_terminal


class WorkflowOrchestrator:
    """
    Resumable, cancellable multi-step workflow state machine.

    Collaborators are injected:
    - executor: performs each step's work (StepExecutor or plain callable)
    - registry: named workflow definitions
    - store: save/load of snapshots after every transition
    - dependency_checker: optional ``fn(step, context) -> missing names``
    """

    def __init__(
        self,
        executor: Union[StepExecutor, Callable],
        registry: Optional[WorkflowRegistry] = None,
        store: Optional[SessionStore] = None,
        dependency_checker: Optional[DependencyChecker] = None,
        approval_config: Optional[ApprovalConfig] = None,
    ):
        """
        Raises:
            ConfigurationError: approval_config has an unknown timeout_scope
        """
        if approval_config is not None and approval_config.timeout_scope not in TIMEOUT_SCOPES:
            raise ConfigurationError(
                f"Unknown approval timeout scope '{approval_config.timeout_scope}' "
                f"(expected one of: {', '.join(TIMEOUT_SCOPES)})"
            )
        if not isinstance(executor, StepExecutor):
            executor = CallableStepExecutor(executor)
        self.executor = executor
        self.registry = registry if registry is not None else WorkflowRegistry.with_builtins()
        self.store = store if store is not None else InMemorySessionStore()
        self.dependency_checker = dependency_checker
        self.approval_config = approval_config or ApprovalConfig()
        self._bus = EventBus()
        self._runs: Dict[str, _Run] = {}
        # Tasks of replaced or released runs that have not finished yet
        self._detached: Set[asyncio.Task] = set()

    # ========================================================================
    # Observers
    # ========================================================================

    def on_progress(self, subscriber: Callable[[ProgressEvent], Any]) -> Callable[[], None]:
        """Register a progress observer. Returns an unsubscribe callable."""
        return self._bus.subscribe(EventTypes.PROGRESS, subscriber)

    def on_approval_required(self, subscriber: Callable[[ApprovalRequest], Any]) -> Callable[[], None]:
        """
        Register an approval observer.

        The subscriber receives the ApprovalRequest and may return (directly
        or as a coroutine) a choice string, an ApprovalDecision, or None to
        defer to submit_approval_response.
        """
        return self._bus.subscribe(EventTypes.APPROVAL_REQUIRED, subscriber)

    # ========================================================================
    # Entry points
    # ========================================================================

    async def start_workflow(
        self,
        definition_name: str,
        initial_input: str = "",
        context_variables: Optional[Dict[str, Any]] = None,
        session_id: str = DEFAULT_SESSION,
    ) -> WorkflowState:
        """
        Start a workflow for a session. Step 0 begins in the background.

        Raises:
            AlreadyRunningError: A non-terminal workflow exists for the session
            UnknownWorkflowError: definition_name is not registered
        """
        self._ensure_not_running(session_id)
        definition = self.registry.get(definition_name)

        state = WorkflowState(
            session_id=session_id,
            definition=definition,
            context_variables=dict(context_variables or {}),
            initial_input=initial_input,
        )
        run = self._install(state)
        run.log.add_log(WORKFLOW_LOG_NAME, f"Started workflow: {definition.name}")
        logger.info(f"Started workflow: {definition.name} (session: {session_id}, id: {state.workflow_id})")

        async with run.lock:
            self._set_status(run, WorkflowStatus.RUNNING)
            try:
                await self._save(run)
            except Exception:
                self._discard(session_id, run)
                raise

        run.task = asyncio.create_task(self._drive(run))
        return self._copy(run.state)

    async def resume_workflow(
        self,
        snapshot: Union[WorkflowSnapshot, Dict[str, Any]],
        session_id: str = DEFAULT_SESSION,
    ) -> WorkflowState:
        """
        Rehydrate a workflow from a snapshot and continue it.

        A RUNNING snapshot re-issues the in-flight step; a WAITING_APPROVAL
        snapshot raises a fresh approval request for the saved step.

        Raises:
            AlreadyRunningError: A non-terminal workflow exists for the session
            StateMismatchError: The snapshot is terminal, its definition is no
                longer registered, or the definition no longer has the step
        """
        if isinstance(snapshot, dict):
            snapshot = WorkflowSnapshot.from_dict(snapshot)
        self._ensure_not_running(session_id)

        if snapshot.status.is_terminal:
            raise StateMismatchError(
                f"Snapshot {snapshot.workflow_id} is already {snapshot.status.value}"
            )
        if snapshot.definition_name not in self.registry:
            raise StateMismatchError(
                f"Snapshot references unregistered workflow '{snapshot.definition_name}'"
            )
        definition = self.registry.get(snapshot.definition_name)
        if not 0 <= snapshot.current_step_index < definition.step_count:
            raise StateMismatchError(
                f"Snapshot step index {snapshot.current_step_index} is out of range for "
                f"'{definition.name}' ({definition.step_count} steps)"
            )

        state = WorkflowState(
            workflow_id=snapshot.workflow_id,
            session_id=session_id,
            definition=definition,
            current_step_index=snapshot.current_step_index,
            status=snapshot.status,
            context_variables=dict(snapshot.context_variables),
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
        )
        run = self._install(state)
        step = definition.steps[snapshot.current_step_index]
        run.log.record_step_start(snapshot.current_step_index)
        run.log.add_log(
            WORKFLOW_LOG_NAME,
            f"Resumed workflow: {definition.name} at step {snapshot.current_step_index} ({step.name})",
        )
        logger.info(
            f"Resuming workflow: {definition.name} at step {snapshot.current_step_index} "
            f"with status {snapshot.status.value} (session: {session_id})"
        )

        run.task = asyncio.create_task(self._drive(run, resume_status=snapshot.status))
        return self._copy(run.state)

    async def resume_session(self, session_id: str = DEFAULT_SESSION) -> WorkflowState:
        """
        Load the session's latest snapshot from the store and resume it.

        Raises:
            StateMismatchError: The store has no snapshot for the session
        """
        snapshot = await maybe_await(self.store.load(session_id))
        if snapshot is None:
            raise StateMismatchError(f"No saved workflow for session '{session_id}'")
        return await self.resume_workflow(snapshot, session_id)

    async def cancel_workflow(self, session_id: str = DEFAULT_SESSION) -> Optional[WorkflowState]:
        """
        Cancel the session's workflow. A no-op for terminal or unknown sessions.

        An in-flight step is not interrupted; its result is discarded when
        it returns.
        """
        run = self._runs.get(session_id)
        if run is None or run.terminal:
            return self._copy(run.state) if run else None

        async with run.lock:
            if run.terminal:
                return self._copy(run.state)
            step = run.state.get_current_step()
            logger.warning(f"Cancelling workflow: {run.state.workflow_name} (session: {session_id})")
            await self._finish(
                run,
                WorkflowStatus.CANCELLED,
                step.name if step else WORKFLOW_LOG_NAME,
                f"Cancelled workflow: {run.state.workflow_name}",
                LogLevel.WARNING,
            )

        if run.gate is not None:
            run.gate.cancel()
        self._stop_approval_tasks(run)
        return self._copy(run.state)

    def submit_approval_response(
        self,
        session_id: str,
        request_id: str,
        choice: str,
        context_updates: Optional[Dict[str, Any]] = None,
    ) -> ApprovalRequest:
        """
        Resolve the session's pending approval out-of-band.

        Raises:
            StateMismatchError: No pending request with that id for the session
            UnknownApprovalOptionError: choice is not one of the request's options;
                the request stays pending
        """
        run = self._runs.get(session_id)
        gate = run.gate if run else None
        if gate is None or gate.request.id != request_id or not gate.is_pending:
            raise StateMismatchError(
                f"No pending approval request '{request_id}' for session '{session_id}'"
            )
        return gate.resolve(choice, context_updates, resolved_by="user").model_copy(deep=True)

    # ========================================================================
    # Queries
    # ========================================================================

    def is_workflow_running(self, session_id: str = DEFAULT_SESSION) -> bool:
        run = self._runs.get(session_id)
        return run is not None and run.state.status.is_active

    def get_workflow_state(self, session_id: str = DEFAULT_SESSION) -> Optional[WorkflowState]:
        """Return a copy of the session's state, or None."""
        run = self._runs.get(session_id)
        return self._copy(run.state) if run else None

    def get_pending_approval(self, session_id: str = DEFAULT_SESSION) -> Optional[ApprovalRequest]:
        run = self._runs.get(session_id)
        if run is None or run.gate is None or not run.gate.is_pending:
            return None
        return run.gate.request.model_copy(deep=True)

    def get_last_progress(self, session_id: str = DEFAULT_SESSION) -> Optional[ProgressEvent]:
        run = self._runs.get(session_id)
        return run.last_event if run else None

    def get_progress(self, session_id: str = DEFAULT_SESSION) -> int:
        """Workflow progress as a percentage of steps passed."""
        run = self._runs.get(session_id)
        if run is None:
            return 0
        return round(run.state.current_step_index / run.state.total_steps * 100)

    def get_progress_log(self, session_id: str = DEFAULT_SESSION) -> Optional[ProgressLog]:
        run = self._runs.get(session_id)
        return run.log if run else None

    def get_last_error(self, session_id: str = DEFAULT_SESSION) -> Optional[OrchestratorError]:
        run = self._runs.get(session_id)
        return run.error if run else None

    def sessions(self) -> List[str]:
        return list(self._runs)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def wait(self, session_id: str = DEFAULT_SESSION) -> Optional[WorkflowState]:
        """
        Wait until the session's run stops and its events are delivered.

        Blocks for as long as the run is waiting on an approval.
        """
        run = self._runs.get(session_id)
        if run is None:
            return None
        if run.task is not None:
            await run.task
        await run.events.join()
        return self._copy(run.state)

    def release(self, session_id: str = DEFAULT_SESSION) -> bool:
        """
        Drop the in-memory handle of a terminated run.

        Returns:
            True if a terminal run was released
        """
        run = self._runs.get(session_id)
        if run is None or not run.terminal:
            return False
        self._discard(session_id, run)
        return True

    async def close(self) -> None:
        """Stop every run task, timer and dispatcher without changing state."""
        for run in list(self._runs.values()):
            if run.gate is not None:
                run.gate.cancel_timer()
            self._stop_approval_tasks(run)
            tasks = [t for t in (run.task, run.dispatcher) if t is not None and not t.done()]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()

        detached = [t for t in self._detached if not t.done()]
        for task in detached:
            task.cancel()
        await asyncio.gather(*detached, return_exceptions=True)
        self._detached.clear()

    # ========================================================================
    # Run loop
    # ========================================================================

    async def _drive(self, run: _Run, resume_status: Optional[WorkflowStatus] = None) -> None:
        """Advance the run until it is terminal or suspended for good."""
        state = run.state
        definition = state.definition
        resume_approval = resume_status == WorkflowStatus.WAITING_APPROVAL

        try:
            while state.current_step_index < definition.step_count:
                index = state.current_step_index
                step = definition.steps[index]

                # A step saved while waiting for approval already ran; only its gate is outstanding
                skip_execution = resume_approval and step.requires_approval
                resume_approval = False
                if skip_execution:
                    result = StepResult()
                else:
                    result = await self._execute_step(run, index, step)
                    if result is None:
                        return

                if step.requires_approval:
                    decision = await self._await_approval(run, index, step)
                    if decision is None:
                        return
                    kind = classify_option(decision.choice)
                    if kind == OptionKind.MODIFY:
                        async with run.lock:
                            if run.terminal:
                                return
                            state.context_variables.update(decision.context_updates)
                            run.log.add_log(step.name, "Re-running step with requested changes")
                            self._set_status(run, WorkflowStatus.RUNNING)
                            await self._save(run)
                        continue
                    if kind != OptionKind.PROCEED:
                        async with run.lock:
                            if run.terminal:
                                return
                            await self._finish(
                                run,
                                WorkflowStatus.CANCELLED,
                                step.name,
                                f"Step not approved ('{decision.choice}'); workflow cancelled",
                                LogLevel.WARNING,
                            )
                        return

                if not result.should_continue:
                    async with run.lock:
                        if run.terminal:
                            return
                        logger.info(f"Step {step.name} requested workflow stop")
                        run.log.add_log(step.name, "Workflow stopped by step request")
                        await self._complete(run)
                    return

                async with run.lock:
                    if run.terminal:
                        return
                    state.current_step_index = index + 1
                    state.update_timestamp()
                    if state.current_step_index >= definition.step_count:
                        await self._complete(run)
                        return
                    await self._save(run)

        except OrchestratorError as e:
            await self._fail(run, e)
        except Exception as e:
            step = state.get_current_step()
            await self._fail(
                run,
                ExecutionError(step.id if step else "", f"Unexpected error: {e}", cause=e),
            )

    async def _execute_step(self, run: _Run, index: int, step: StepDef) -> Optional[StepResult]:
        """
        Pre-check, mark started, and execute one step.

        Returns:
            The step result, or None if the run was cancelled meanwhile

        Raises:
            MissingDependencyError: Pre-check failed; the step was not started
            ExecutionError: The executor failed
        """
        state = run.state

        missing = await self._missing_dependencies(step, state.context_variables)
        if missing:
            raise MissingDependencyError(step.id, missing)

        async with run.lock:
            if run.terminal:
                return None
            run.log.record_step_start(index)
            run.log.add_log(step.name, f"Starting step: {step.description or step.name}")
            self._set_status(run, WorkflowStatus.RUNNING)
            self._emit(run, step.name, WorkflowStatus.RUNNING, step.description)
            await self._save(run)

        logger.info(f"Executing step {index + 1}/{state.total_steps}: {step.name}")
        result = await run_step(self.executor, step, state.context_variables)

        async with run.lock:
            if run.terminal:
                logger.info(f"Discarding result of step {step.name}: workflow was cancelled")
                return None
            state.context_variables.update(result.context_patch)
            state.update_timestamp()
            run.log.add_log(step.name, result.message or "Step completed successfully")
        return result

    async def _missing_dependencies(self, step: StepDef, context: Dict[str, Any]) -> List[str]:
        missing = [key for key in step.required_context if context.get(key) in (None, "")]
        if step.requires and self.dependency_checker is not None:
            absent = await maybe_await(self.dependency_checker(step, dict(context)))
            missing.extend(absent or [])
        return missing

    # ========================================================================
    # Approval
    # ========================================================================

    async def _await_approval(self, run: _Run, index: int, step: StepDef) -> Optional[ApprovalDecision]:
        """
        Raise an approval request for the step and wait for its resolution.

        Returns:
            The decision, or None if the run was cancelled
        """
        async with run.lock:
            if run.terminal:
                return None
            timeout_seconds, deadline = self._approval_timeout(run, index)
            request = create_request(step, timeout_seconds=timeout_seconds, deadline=deadline)
            gate = ApprovalGate(request)
            run.gate = gate
            self._set_status(run, WorkflowStatus.WAITING_APPROVAL)
            run.log.add_log(step.name, "Waiting for user approval")
            self._emit(run, step.name, WorkflowStatus.WAITING_APPROVAL, f"Waiting for approval: {step.name}")
            await self._save(run)
            gate.schedule_expiry()
            self._notify_approval_subscribers(run, gate)

        decision = await gate.wait()
        self._stop_approval_tasks(run)

        async with run.lock:
            run.gate = None
            if run.terminal:
                return None
            if gate.timed_out:
                waited = (gate.request.resolved_at - gate.request.created_at).total_seconds()
                run.log.add_log(
                    step.name,
                    f"Approval timed out after {format_duration(waited)}; treating as '{decision.choice}'",
                    LogLevel.WARNING,
                )
            else:
                run.log.add_log(step.name, f"Approval response: {decision.choice}")
            logger.info(
                f"Approval for step {step.name} resolved as '{decision.choice}' "
                f"by {gate.request.resolved_by}"
            )
            if classify_option(decision.choice) in (OptionKind.PROCEED, OptionKind.MODIFY):
                self._set_status(run, WorkflowStatus.RUNNING)
                await self._save(run)
        return decision

    def _approval_timeout(self, run: _Run, index: int) -> Tuple[Optional[float], Optional[datetime]]:
        """Return (timeout_seconds, deadline) for a new request; both None when disabled."""
        definition = run.state.definition
        if not self.approval_config.timeout_enabled or not definition.approval_timeout_enabled:
            return None, None
        timeout = definition.approval_timeout_seconds
        if timeout is None:
            timeout = self.approval_config.timeout_seconds
        if timeout is None or timeout <= 0:
            return None, None

        if self.approval_config.timeout_scope == "step":
            if run.deadline_step != index or run.step_deadline is None:
                run.deadline_step = index
                run.step_deadline = datetime.now(timezone.utc) + timedelta(seconds=timeout)
            return None, run.step_deadline
        return timeout, None

    def _notify_approval_subscribers(self, run: _Run, gate: ApprovalGate) -> None:
        for handler in self._bus.subscribers(EventTypes.APPROVAL_REQUIRED):
            run.approval_tasks.append(
                asyncio.create_task(self._collect_approval(gate, handler))
            )

    async def _collect_approval(self, gate: ApprovalGate, handler: Callable) -> None:
        """Run one approval subscriber and apply its answer if the gate is still open."""
        try:
            response = await maybe_await(handler(gate.request.model_copy(deep=True)))
        except Exception:
            logger.exception(f"Error in approval handler {handler!r}")
            return

        if response is None or not gate.is_pending:
            return
        if isinstance(response, ApprovalDecision):
            choice, updates = response.choice, response.context_updates
        else:
            choice, updates = str(response), {}

        try:
            gate.resolve(choice, updates, resolved_by="subscriber")
        except OrchestratorError as e:
            logger.warning(f"Ignoring approval response from {handler!r}: {e}")

    def _stop_approval_tasks(self, run: _Run) -> None:
        current = asyncio.current_task()
        for task in run.approval_tasks:
            if task is not current and not task.done():
                task.cancel()
        run.approval_tasks = []

    # ========================================================================
    # Transitions
    # ========================================================================

    async def _complete(self, run: _Run) -> None:
        """Terminal success. Caller holds the run lock."""
        state = run.state
        state.current_step_index = state.total_steps
        run.log.mark_finished()
        elapsed = run.log.get_total_elapsed_time()
        message = "Workflow completed successfully"
        if elapsed is not None:
            message += f" in {format_duration(elapsed.total_seconds())}"
        logger.info(f"Workflow completed: {state.workflow_name} (session: {state.session_id})")
        await self._finish(run, WorkflowStatus.COMPLETED, WORKFLOW_LOG_NAME, message, LogLevel.INFO,
                           step_name=COMPLETE_STEP_NAME)

    async def _fail(self, run: _Run, error: OrchestratorError) -> None:
        """Terminal failure unless the run already ended."""
        try:
            async with run.lock:
                if run.terminal:
                    return
                run.error = error
                step = run.state.get_current_step()
                step_name = step.name if step else WORKFLOW_LOG_NAME
                logger.error(f"Error executing step {step_name}: {error}")
                await self._finish(run, WorkflowStatus.FAILED, step_name, f"Error: {error}", LogLevel.ERROR)
        except Exception:
            logger.exception(f"Failed to record failure of workflow {run.state.workflow_id}")

    async def _finish(
        self,
        run: _Run,
        status: WorkflowStatus,
        log_name: str,
        message: str,
        level: LogLevel,
        step_name: Optional[str] = None,
    ) -> None:
        """Move to a terminal status: log, emit the terminal event, save. Caller holds the run lock."""
        state = run.state
        self._set_status(run, status)
        state.completed_at = state.updated_at
        run.log.add_log(log_name, message, level)
        run.log.mark_finished()
        if step_name is None:
            step = state.get_current_step()
            step_name = step.name if step else COMPLETE_STEP_NAME
        self._emit(run, step_name, status, message)
        run.events.put_nowait(None)
        await self._save(run)

    def _set_status(self, run: _Run, status: WorkflowStatus) -> None:
        run.state.status = status
        run.state.update_timestamp()

    def _emit(self, run: _Run, step_name: str, status: WorkflowStatus, message: Optional[str] = None) -> None:
        """Queue a progress event; the dispatcher delivers queued events in order."""
        state = run.state
        event = ProgressEvent(
            workflow_name=state.workflow_name,
            current_step_index=state.current_step_index,
            total_steps=state.total_steps,
            current_step_name=step_name,
            status=status,
            message=message,
            session_id=state.session_id,
            workflow_id=state.workflow_id,
        )
        run.last_event = event
        run.events.put_nowait(event)

    async def _dispatch(self, run: _Run) -> None:
        """Deliver queued progress events in order until the end-of-run marker."""
        while True:
            event = await run.events.get()
            try:
                if event is None:
                    return
                await self._bus.publish(EventTypes.PROGRESS, event)
            finally:
                run.events.task_done()

    async def _save(self, run: _Run) -> None:
        await maybe_await(self.store.save(run.state.session_id, snapshot_of(run.state)))

    # ========================================================================
    # Session table
    # ========================================================================

    def _ensure_not_running(self, session_id: str) -> None:
        run = self._runs.get(session_id)
        if run is not None and not run.terminal:
            raise AlreadyRunningError(session_id, run.state.workflow_name)

    def _install(self, state: WorkflowState) -> _Run:
        """Replace any terminated run for the session with a fresh one."""
        previous = self._runs.get(state.session_id)
        if previous is not None:
            self._discard(state.session_id, previous)
        run = _Run(state=state)
        run.log.start_tracking()
        run.dispatcher = asyncio.create_task(self._dispatch(run))
        self._runs[state.session_id] = run
        return run

    def _discard(self, session_id: str, run: _Run) -> None:
        if self._runs.get(session_id) is run:
            del self._runs[session_id]
        # A terminated run's dispatcher stops by itself once its queue drains
        if not run.terminal and run.dispatcher is not None and not run.dispatcher.done():
            run.dispatcher.cancel()
        # A cancelled run may still be inside its executor call
        for task in (run.task, run.dispatcher):
            if task is not None and not task.done():
                self._detached.add(task)
                task.add_done_callback(self._detached.discard)

    @staticmethod
    def _copy(state: WorkflowState) -> WorkflowState:
        return state.model_copy(deep=True)


def build_orchestrator(
    executor: Union[StepExecutor, Callable],
    config: Optional[SpecflowConfig] = None,
    dependency_checker: Optional[DependencyChecker] = None,
) -> WorkflowOrchestrator:
    """
    Wire registry, session store and orchestrator from configuration.

    Raises:
        ConfigurationError: The configuration has out-of-range or unknown values
    """
    config = config or SpecflowConfig()
    errors = validate_config(config)
    if errors:
        raise ConfigurationError(f"Invalid configuration: {'; '.join(errors)}")

    registry = WorkflowRegistry.with_builtins() if config.workflows.include_builtin else WorkflowRegistry()
    if config.workflows.definitions_dir:
        registry.load_directory(config.workflows.definitions_dir, replace=True)

    if config.persistence.backend == "file":
        store = JsonFileSessionStore(config.persistence.state_dir)
    else:
        store = InMemorySessionStore()

    return WorkflowOrchestrator(
        executor,
        registry=registry,
        store=store,
        dependency_checker=dependency_checker,
        approval_config=config.approval,
    )
