"""
Tests for WorkflowOrchestrator - the per-session workflow state machine.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from specflow.config import ApprovalConfig, PersistenceConfig, SpecflowConfig, WorkflowsConfig
from specflow.errors import (
    AlreadyRunningError,
    ConfigurationError,
    ExecutionError,
    MissingDependencyError,
    PersistenceError,
    StateMismatchError,
    UnknownApprovalOptionError,
    UnknownWorkflowError,
)
from specflow.executor import StepExecutor, StepResult
from specflow.orchestrator import WorkflowOrchestrator, build_orchestrator
from specflow.persistence import JsonFileSessionStore
from specflow.registry import SPEC_MODE
from specflow.schema import (
    ApprovalDecision,
    LogLevel,
    StepDef,
    WorkflowDef,
    WorkflowSnapshot,
    WorkflowStatus,
)


class ScriptedExecutor(StepExecutor):
    """
    Step executor driven by the test.

    Records every call. ``results`` maps template_ref to a return value or an
    exception to raise; ``gates`` maps template_ref to an asyncio.Event the
    call waits on before returning.
    """

    def __init__(self):
        self.calls = []
        self.results = {}
        self.gates = {}

    async def execute(self, template_ref, context_variables):
        self.calls.append((template_ref, dict(context_variables)))
        gate = self.gates.get(template_ref)
        if gate is not None:
            await gate.wait()
        result = self.results.get(template_ref)
        if isinstance(result, BaseException):
            raise result
        return result

    def templates(self):
        return [template_ref for template_ref, _ in self.calls]


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def orchestrator(executor, registry, store):
    return WorkflowOrchestrator(executor, registry=registry, store=store)


@pytest.fixture
def events(orchestrator):
    """Every progress event the orchestrator delivers, in order."""
    received = []
    orchestrator.on_progress(received.append)
    return received


async def wait_for(predicate, timeout=2.0):
    """Poll until predicate() is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Timed out waiting for condition")
        await asyncio.sleep(0.005)


async def wait_for_approval(orchestrator, session_id="default", timeout=2.0):
    """Wait until the session has a pending approval request and return it."""
    await wait_for(lambda: orchestrator.get_pending_approval(session_id) is not None, timeout)
    return orchestrator.get_pending_approval(session_id)


@dataclass(frozen=True)
class Ticket:
    """Context value with no JSON form."""
    key: str


def started_entries(orchestrator, session_id="default"):
    return [
        entry for entry in orchestrator.get_progress_log(session_id).get_logs()
        if entry.message.startswith("Starting step:")
    ]


def terminal_events(events):
    return [event for event in events if event.status.is_terminal]


class RecordingStore:
    """Session store that keeps every saved snapshot."""

    def __init__(self):
        self.saved = []

    def save(self, session_id, snapshot):
        self.saved.append((session_id, snapshot))

    def load(self, session_id):
        for saved_session, snapshot in reversed(self.saved):
            if saved_session == session_id:
                return snapshot
        return None


class TestStartWorkflow:
    """Tests for starting workflows."""

    @pytest.mark.asyncio
    async def test_start_sets_running_at_step_zero(self, orchestrator, executor):
        executor.gates["requirements.prompt.md"] = asyncio.Event()

        state = await orchestrator.start_workflow("Spec", "Add login", {"spec_name": "login"})

        assert state.status == WorkflowStatus.RUNNING
        assert state.current_step_index == 0
        assert state.initial_input == "Add login"
        assert state.context_variables == {"spec_name": "login"}
        assert orchestrator.is_workflow_running()
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_start_emits_exactly_one_initial_event(self, orchestrator, executor, events):
        executor.gates["requirements.prompt.md"] = asyncio.Event()

        await orchestrator.start_workflow("Spec")
        await wait_for(lambda: len(executor.calls) == 1)
        await asyncio.sleep(0.02)

        assert len(events) == 1
        assert events[0].status == WorkflowStatus.RUNNING
        assert events[0].current_step_index == 0
        assert events[0].current_step_name == "Requirements"
        assert events[0].total_steps == 3
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_start_unknown_workflow_raises(self, orchestrator):
        with pytest.raises(UnknownWorkflowError):
            await orchestrator.start_workflow("Nope")

        assert orchestrator.get_workflow_state() is None

    @pytest.mark.asyncio
    async def test_start_twice_raises_and_keeps_first_run(self, orchestrator, executor):
        executor.gates["requirements.prompt.md"] = asyncio.Event()
        first = await orchestrator.start_workflow("Spec", context_variables={"spec_name": "a"})

        with pytest.raises(AlreadyRunningError) as exc_info:
            await orchestrator.start_workflow("Spec", context_variables={"spec_name": "b"})

        assert exc_info.value.recoverable
        state = orchestrator.get_workflow_state()
        assert state.workflow_id == first.workflow_id
        assert state.context_variables == {"spec_name": "a"}
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, orchestrator, executor):
        executor.gates["requirements.prompt.md"] = asyncio.Event()

        a = await orchestrator.start_workflow("Spec", session_id="a")
        b = await orchestrator.start_workflow("Spec", session_id="b")

        assert a.workflow_id != b.workflow_id
        assert orchestrator.is_workflow_running("a")
        assert orchestrator.is_workflow_running("b")
        assert not orchestrator.is_workflow_running("c")
        await orchestrator.cancel_workflow("a")
        assert orchestrator.is_workflow_running("b")
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_returned_state_is_a_copy(self, orchestrator, executor):
        executor.gates["requirements.prompt.md"] = asyncio.Event()
        state = await orchestrator.start_workflow("Spec", context_variables={"spec_name": "x"})

        state.context_variables["spec_name"] = "tampered"

        assert orchestrator.get_workflow_state().context_variables["spec_name"] == "x"
        await orchestrator.close()


class TestEndToEnd:
    """Scenarios over the three-step Spec workflow."""

    @pytest.mark.asyncio
    async def test_scenario_a_approve_design_completes(self, orchestrator, executor, events):
        executor.results["requirements.prompt.md"] = {"requirements_doc": "reqs"}

        await orchestrator.start_workflow("Spec", context_variables={"spec_name": "login"})
        request = await wait_for_approval(orchestrator)
        assert request.step_id == "design"
        assert orchestrator.get_workflow_state().status == WorkflowStatus.WAITING_APPROVAL

        orchestrator.submit_approval_response("default", request.id, "Approve")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert state.current_step_index == 3
        assert state.completed_at is not None
        assert state.context_variables["requirements_doc"] == "reqs"
        assert len(started_entries(orchestrator)) == 3
        assert executor.templates() == ["requirements.prompt.md", "design.prompt.md", "tasks.prompt.md"]
        assert orchestrator.get_progress() == 100

    @pytest.mark.asyncio
    async def test_scenario_a_event_order(self, orchestrator, events):
        await orchestrator.start_workflow("Spec")
        request = await wait_for_approval(orchestrator)
        orchestrator.submit_approval_response("default", request.id, "Approve")
        await orchestrator.wait()

        assert [(e.status, e.current_step_index) for e in events] == [
            (WorkflowStatus.RUNNING, 0),
            (WorkflowStatus.RUNNING, 1),
            (WorkflowStatus.WAITING_APPROVAL, 1),
            (WorkflowStatus.RUNNING, 2),
            (WorkflowStatus.COMPLETED, 3),
        ]
        assert events[-1].current_step_name == "Complete"
        assert events[-1].message.startswith("Workflow completed successfully in ")
        assert orchestrator.get_last_progress() == events[-1]

    @pytest.mark.asyncio
    async def test_scenario_b_reject_design_cancels_at_design(self, orchestrator, executor, events):
        await orchestrator.start_workflow("Spec")
        request = await wait_for_approval(orchestrator)

        orchestrator.submit_approval_response("default", request.id, "Reject")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.CANCELLED
        assert state.current_step_index == 1
        assert "tasks.prompt.md" not in executor.templates()
        assert len(terminal_events(events)) == 1

    @pytest.mark.asyncio
    async def test_scenario_c_execution_error_fails_at_step_zero(self, orchestrator, executor, events):
        approval_handler = MagicMock(return_value="Approve")
        orchestrator.on_approval_required(approval_handler)
        executor.results["requirements.prompt.md"] = RuntimeError("model unavailable")

        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.FAILED
        assert state.current_step_index == 0
        approval_handler.assert_not_called()
        assert orchestrator.get_pending_approval() is None

        error = orchestrator.get_last_error()
        assert isinstance(error, ExecutionError)
        assert error.step_id == "requirements"
        assert isinstance(error.__cause__, RuntimeError)

        log = orchestrator.get_progress_log()
        assert log.has_errors()
        assert "model unavailable" in log.get_logs_by_level(LogLevel.ERROR)[0].message
        assert terminal_events(events)[0].status == WorkflowStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_step_result_fails_workflow(self, orchestrator, executor):
        executor.results["requirements.prompt.md"] = StepResult(success=False, message="bad template")

        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.FAILED
        assert "bad template" in str(orchestrator.get_last_error())

    @pytest.mark.asyncio
    async def test_should_continue_false_completes_early(self, orchestrator, executor):
        executor.results["requirements.prompt.md"] = StepResult(should_continue=False)

        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert state.current_step_index == 3
        assert executor.templates() == ["requirements.prompt.md"]

    @pytest.mark.asyncio
    async def test_can_restart_after_terminal(self, orchestrator, executor):
        executor.results["requirements.prompt.md"] = RuntimeError("boom")
        first = await orchestrator.start_workflow("Spec")
        await orchestrator.wait()

        executor.results.clear()
        second = await orchestrator.start_workflow("Spec")

        assert second.workflow_id != first.workflow_id
        assert not orchestrator.get_progress_log().has_errors()
        await orchestrator.close()


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_approval(self, orchestrator, events):
        await orchestrator.start_workflow("Spec")
        request = await wait_for_approval(orchestrator)

        state = await orchestrator.cancel_workflow()
        await orchestrator.wait()

        assert state.status == WorkflowStatus.CANCELLED
        assert state.current_step_index == 1
        assert orchestrator.get_pending_approval() is None
        assert len(terminal_events(events)) == 1
        assert terminal_events(events)[0].status == WorkflowStatus.CANCELLED

        with pytest.raises(StateMismatchError):
            orchestrator.submit_approval_response("default", request.id, "Approve")

    @pytest.mark.asyncio
    async def test_cancel_during_step_discards_result(self, orchestrator, executor, events):
        gate = asyncio.Event()
        executor.gates["requirements.prompt.md"] = gate
        executor.results["requirements.prompt.md"] = {"requirements_doc": "late"}

        await orchestrator.start_workflow("Spec")
        await wait_for(lambda: len(executor.calls) == 1)
        await orchestrator.cancel_workflow()
        gate.set()
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.CANCELLED
        assert "requirements_doc" not in state.context_variables
        assert executor.templates() == ["requirements.prompt.md"]
        assert len(terminal_events(events)) == 1

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, orchestrator, events):
        await orchestrator.start_workflow("Spec")
        await wait_for_approval(orchestrator)

        await orchestrator.cancel_workflow()
        await orchestrator.cancel_workflow()
        await orchestrator.wait()

        assert len(terminal_events(events)) == 1
        warnings = orchestrator.get_progress_log().get_logs_by_level(LogLevel.WARNING)
        assert [w.message for w in warnings] == ["Cancelled workflow: Spec"]

    @pytest.mark.asyncio
    async def test_cancel_unknown_session_is_noop(self, orchestrator):
        assert await orchestrator.cancel_workflow("missing") is None

    @pytest.mark.asyncio
    async def test_progress_subscriber_may_cancel(self, orchestrator, events):
        async def cancel_on_approval(event):
            if event.status == WorkflowStatus.WAITING_APPROVAL:
                await orchestrator.cancel_workflow()

        orchestrator.on_progress(cancel_on_approval)
        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.CANCELLED
        assert events[-1].status == WorkflowStatus.CANCELLED


class TestApprovals:
    """Tests for approval handling inside the run loop."""

    @pytest.mark.asyncio
    async def test_unknown_option_rejected_without_mutation(self, orchestrator):
        await orchestrator.start_workflow("Spec")
        request = await wait_for_approval(orchestrator)

        with pytest.raises(UnknownApprovalOptionError):
            orchestrator.submit_approval_response("default", request.id, "Maybe")

        assert orchestrator.get_pending_approval().id == request.id
        assert orchestrator.get_workflow_state().status == WorkflowStatus.WAITING_APPROVAL
        await orchestrator.cancel_workflow()

    @pytest.mark.asyncio
    async def test_stale_request_id_raises(self, orchestrator):
        await orchestrator.start_workflow("Spec")
        await wait_for_approval(orchestrator)

        with pytest.raises(StateMismatchError):
            orchestrator.submit_approval_response("default", "apr_unknown", "Approve")
        await orchestrator.cancel_workflow()

    @pytest.mark.asyncio
    async def test_sync_subscriber_answer_is_applied(self, orchestrator):
        orchestrator.on_approval_required(lambda request: "Approve")

        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_async_subscriber_answer_is_applied(self, orchestrator):
        handler = AsyncMock(return_value="Reject")
        orchestrator.on_approval_required(handler)

        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.CANCELLED
        request = handler.await_args.args[0]
        assert request.step_id == "design"
        assert request.options == ["Approve", "Modify", "Reject"]

    @pytest.mark.asyncio
    async def test_subscriber_deferring_to_submit(self, orchestrator):
        orchestrator.on_approval_required(lambda request: None)

        await orchestrator.start_workflow("Spec")
        request = await wait_for_approval(orchestrator)
        orchestrator.submit_approval_response("default", request.id, "Approve")

        assert (await orchestrator.wait()).status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_invalid_subscriber_answer_is_ignored(self, orchestrator):
        orchestrator.on_approval_required(lambda request: "Whatever")

        await orchestrator.start_workflow("Spec")
        request = await wait_for_approval(orchestrator)
        await asyncio.sleep(0.02)

        assert orchestrator.get_pending_approval().id == request.id
        await orchestrator.cancel_workflow()

    @pytest.mark.asyncio
    async def test_modify_reruns_step_with_updates(self, orchestrator, executor):
        await orchestrator.start_workflow("Spec")
        first = await wait_for_approval(orchestrator)

        orchestrator.submit_approval_response(
            "default", first.id, "Modify", context_updates={"feedback": "add sequence diagram"}
        )
        await wait_for(lambda: (orchestrator.get_pending_approval() or first).id != first.id)
        second = orchestrator.get_pending_approval()
        orchestrator.submit_approval_response("default", second.id, "Approve")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert executor.templates() == [
            "requirements.prompt.md", "design.prompt.md", "design.prompt.md", "tasks.prompt.md",
        ]
        assert executor.calls[2][1]["feedback"] == "add sequence diagram"
        assert state.context_variables["feedback"] == "add sequence diagram"

    @pytest.mark.asyncio
    async def test_subscriber_decision_with_updates(self, orchestrator, executor):
        answers = iter([ApprovalDecision(choice="Modify", context_updates={"round": 2}), "Approve"])
        orchestrator.on_approval_required(lambda request: next(answers))

        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert state.context_variables["round"] == 2
        assert executor.templates().count("design.prompt.md") == 2


class TestApprovalTimeout:
    """Tests for approval expiry."""

    @pytest.fixture
    def quick_definition(self):
        return WorkflowDef(
            name="Quick",
            steps=[
                StepDef(id="draft", name="Draft", template_ref="draft.md", requires_approval=True),
                StepDef(id="publish", name="Publish", template_ref="publish.md"),
            ],
            approval_timeout_seconds=0.05,
        )

    @pytest.mark.asyncio
    async def test_timeout_auto_rejects(self, orchestrator, registry, executor, quick_definition, events):
        registry.register(quick_definition)

        await orchestrator.start_workflow("Quick")
        request = await wait_for_approval(orchestrator)
        assert request.expires_at is not None
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.CANCELLED
        assert state.current_step_index == 0
        assert executor.templates() == ["draft.md"]
        warnings = orchestrator.get_progress_log().get_logs_by_level(LogLevel.WARNING)
        assert any("Approval timed out" in w.message and "'Reject'" in w.message for w in warnings)
        assert len(terminal_events(events)) == 1

    @pytest.mark.asyncio
    async def test_manual_response_beats_timeout(self, orchestrator, registry, quick_definition):
        registry.register(quick_definition.model_copy(update={"approval_timeout_seconds": 1.0}))

        await orchestrator.start_workflow("Quick")
        request = await wait_for_approval(orchestrator)
        orchestrator.submit_approval_response("default", request.id, "Approve")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert not orchestrator.get_progress_log().has_warnings()

    @pytest.mark.asyncio
    async def test_timeout_disabled_per_workflow(self, orchestrator, registry, quick_definition):
        registry.register(quick_definition.model_copy(update={"approval_timeout_enabled": False}))

        await orchestrator.start_workflow("Quick")
        request = await wait_for_approval(orchestrator)
        await asyncio.sleep(0.1)

        assert request.expires_at is None
        assert orchestrator.get_pending_approval() is not None
        await orchestrator.cancel_workflow()

    @pytest.mark.asyncio
    async def test_timeout_disabled_globally(self, executor, registry):
        orchestrator = WorkflowOrchestrator(
            executor, registry=registry, approval_config=ApprovalConfig(timeout_enabled=False)
        )

        await orchestrator.start_workflow("Spec")
        request = await wait_for_approval(orchestrator)

        assert request.expires_at is None
        await orchestrator.cancel_workflow()

    @pytest.mark.asyncio
    async def test_request_scope_gives_fresh_deadline(self, orchestrator):
        await orchestrator.start_workflow("Spec")
        first = await wait_for_approval(orchestrator)
        await asyncio.sleep(0.01)
        orchestrator.submit_approval_response("default", first.id, "Modify")
        await wait_for(lambda: (orchestrator.get_pending_approval() or first).id != first.id)

        second = orchestrator.get_pending_approval()
        assert second.expires_at > first.expires_at
        await orchestrator.cancel_workflow()

    @pytest.mark.asyncio
    async def test_step_scope_shares_deadline(self, executor, registry):
        orchestrator = WorkflowOrchestrator(
            executor, registry=registry, approval_config=ApprovalConfig(timeout_scope="step")
        )

        await orchestrator.start_workflow("Spec")
        first = await wait_for_approval(orchestrator)
        orchestrator.submit_approval_response("default", first.id, "Modify")
        await wait_for(lambda: (orchestrator.get_pending_approval() or first).id != first.id)

        second = orchestrator.get_pending_approval()
        assert second.expires_at == first.expires_at
        await orchestrator.cancel_workflow()


class TestDependencies:
    """Tests for the step pre-check."""

    @pytest.mark.asyncio
    async def test_missing_required_context_fails_before_start(self, orchestrator, executor, events):
        await orchestrator.start_workflow(SPEC_MODE)
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.FAILED
        assert state.current_step_index == 0
        assert executor.calls == []
        assert started_entries(orchestrator) == []

        error = orchestrator.get_last_error()
        assert isinstance(error, MissingDependencyError)
        assert error.missing == ["spec_name"]
        assert [e.status for e in events] == [WorkflowStatus.FAILED]

    @pytest.mark.asyncio
    async def test_dependency_checker_reports_missing(self, executor, registry):
        checker = MagicMock(return_value=["requirements.md"])
        orchestrator = WorkflowOrchestrator(executor, registry=registry, dependency_checker=checker)
        orchestrator.on_approval_required(lambda request: "Approve")

        await orchestrator.start_workflow(SPEC_MODE, context_variables={"spec_name": "login"})
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.FAILED
        assert state.current_step_index == 1
        assert executor.templates() == ["requirements.prompt.md"]
        step, context = checker.call_args.args
        assert step.id == "design"
        assert context["spec_name"] == "login"
        assert orchestrator.get_last_error().missing == ["requirements.md"]

    @pytest.mark.asyncio
    async def test_async_dependency_checker_satisfied(self, executor, registry):
        checker = AsyncMock(return_value=[])
        orchestrator = WorkflowOrchestrator(executor, registry=registry, dependency_checker=checker)
        orchestrator.on_approval_required(lambda request: "Approve")

        await orchestrator.start_workflow(SPEC_MODE, context_variables={"spec_name": "login"})
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert checker.await_count == 3


class TestPersistenceAndResume:
    """Tests for snapshots and resumption."""

    @pytest.mark.asyncio
    async def test_save_after_every_transition(self, executor, registry):
        store = RecordingStore()
        orchestrator = WorkflowOrchestrator(executor, registry=registry, store=store)
        orchestrator.on_approval_required(lambda request: "Approve")

        await orchestrator.start_workflow("Spec")
        await orchestrator.wait()

        statuses = [(s.status.value, s.current_step_index) for _, s in store.saved]
        assert statuses[0] == ("running", 0)
        assert ("waiting_approval", 1) in statuses
        assert ("running", 2) in statuses
        assert statuses[-1] == ("completed", 3)

    @pytest.mark.asyncio
    async def test_async_store_is_awaited(self, executor, registry):
        store = MagicMock()
        store.save = AsyncMock(return_value=None)
        orchestrator = WorkflowOrchestrator(executor, registry=registry, store=store)

        await orchestrator.start_workflow("Vibe Coding")
        await orchestrator.wait()

        assert store.save.await_count >= 3

    @pytest.mark.asyncio
    async def test_in_memory_store_keeps_context_types(self, orchestrator, store, registry):
        context = {
            "files": ("requirements.md", "design.md"),
            "when": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "ticket": Ticket("SPEC-1"),
        }
        await orchestrator.start_workflow("Spec", context_variables=context)
        await wait_for_approval(orchestrator)

        assert store.load("default").context_variables == context
        assert orchestrator.get_workflow_state().context_variables == context
        await orchestrator.close()

        orchestrator2 = WorkflowOrchestrator(ScriptedExecutor(), registry=registry, store=store)
        resumed = await orchestrator2.resume_session()

        assert resumed.context_variables == context
        assert isinstance(resumed.context_variables["files"], tuple)
        await orchestrator2.close()

    @pytest.mark.asyncio
    async def test_json_store_rejects_context_without_json_form(self, tmp_path, executor, registry):
        store = JsonFileSessionStore(tmp_path)
        orchestrator = WorkflowOrchestrator(executor, registry=registry, store=store)

        with pytest.raises(PersistenceError) as exc_info:
            await orchestrator.start_workflow("Spec", context_variables={"ticket": Ticket("SPEC-1")})

        assert not exc_info.value.recoverable
        assert orchestrator.get_workflow_state() is None
        assert store.load("default") is None
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_unsaveable_step_output_fails_workflow(self, tmp_path, executor, registry):
        executor.results["requirements.prompt.md"] = {"ticket": Ticket("SPEC-1")}
        orchestrator = WorkflowOrchestrator(executor, registry=registry, store=JsonFileSessionStore(tmp_path))

        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.FAILED
        assert isinstance(orchestrator.get_last_error(), PersistenceError)

    @pytest.mark.asyncio
    async def test_resume_running_reissues_step(self, orchestrator, executor, store, registry):
        executor.gates["design.prompt.md"] = asyncio.Event()
        executor.results["requirements.prompt.md"] = {"requirements_doc": "reqs"}
        await orchestrator.start_workflow("Spec", context_variables={"spec_name": "login"})
        await wait_for(lambda: len(executor.calls) == 2)
        snapshot = store.load("default")
        await orchestrator.close()

        restarted = ScriptedExecutor()
        orchestrator2 = WorkflowOrchestrator(restarted, registry=registry, store=store)
        resumed = await orchestrator2.resume_workflow(snapshot)

        assert resumed.workflow_id == snapshot.workflow_id
        assert resumed.current_step_index == snapshot.current_step_index == 1
        assert resumed.status == snapshot.status == WorkflowStatus.RUNNING
        assert resumed.context_variables == snapshot.context_variables

        request = await wait_for_approval(orchestrator2)
        orchestrator2.submit_approval_response("default", request.id, "Approve")
        state = await orchestrator2.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert restarted.templates() == ["design.prompt.md", "tasks.prompt.md"]

    @pytest.mark.asyncio
    async def test_resume_waiting_approval_does_not_reexecute(self, orchestrator, store, registry):
        await orchestrator.start_workflow("Spec")
        await wait_for_approval(orchestrator)
        snapshot = store.load("default").to_dict()
        await orchestrator.close()

        restarted = ScriptedExecutor()
        orchestrator2 = WorkflowOrchestrator(restarted, registry=registry, store=store)
        resumed = await orchestrator2.resume_workflow(snapshot)

        assert resumed.status == WorkflowStatus.WAITING_APPROVAL
        assert resumed.current_step_index == 1

        request = await wait_for_approval(orchestrator2)
        assert request.step_id == "design"
        orchestrator2.submit_approval_response("default", request.id, "Approve")
        await orchestrator2.wait()

        assert restarted.templates() == ["tasks.prompt.md"]

    @pytest.mark.asyncio
    async def test_resume_session_loads_from_store(self, orchestrator, store, registry):
        await orchestrator.start_workflow("Spec")
        await wait_for_approval(orchestrator)
        await orchestrator.close()

        orchestrator2 = WorkflowOrchestrator(ScriptedExecutor(), registry=registry, store=store)
        resumed = await orchestrator2.resume_session("default")

        assert resumed.current_step_index == 1
        await orchestrator2.close()

    @pytest.mark.asyncio
    async def test_resume_session_without_snapshot_raises(self, orchestrator):
        with pytest.raises(StateMismatchError):
            await orchestrator.resume_session("nothing-saved")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("definition_name,index,status", [
        ("Deleted Workflow", 0, WorkflowStatus.RUNNING),
        ("Spec", 3, WorkflowStatus.RUNNING),
        ("Spec", -1, WorkflowStatus.RUNNING),
        ("Spec", 1, WorkflowStatus.COMPLETED),
    ])
    async def test_resume_rejects_mismatched_snapshot(self, orchestrator, definition_name, index, status):
        snapshot = WorkflowSnapshot(
            workflow_id="wf_old",
            definition_name=definition_name,
            current_step_index=index,
            status=status,
            created_at="2026-01-01T00:00:00Z",
            updated_at="2026-01-01T00:00:00Z",
        )

        with pytest.raises(StateMismatchError) as exc_info:
            await orchestrator.resume_workflow(snapshot)

        assert not exc_info.value.recoverable
        assert orchestrator.get_workflow_state() is None

    @pytest.mark.asyncio
    async def test_resume_active_session_raises(self, orchestrator, store):
        await orchestrator.start_workflow("Spec")
        await wait_for_approval(orchestrator)

        with pytest.raises(AlreadyRunningError):
            await orchestrator.resume_workflow(store.load("default"))
        await orchestrator.cancel_workflow()


class TestLifecycle:
    """Tests for observers, release and wiring."""

    @pytest.mark.asyncio
    async def test_failing_progress_subscriber_does_not_disturb(self, orchestrator, events):
        orchestrator.on_progress(MagicMock(side_effect=RuntimeError("render failed")))
        orchestrator.on_approval_required(lambda request: "Approve")

        await orchestrator.start_workflow("Spec")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert events[-1].status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, orchestrator):
        received = []
        unsubscribe = orchestrator.on_progress(received.append)
        unsubscribe()

        await orchestrator.start_workflow("Vibe Coding")
        await orchestrator.wait()

        assert received == []

    @pytest.mark.asyncio
    async def test_release_drops_terminal_run_only(self, orchestrator, executor):
        executor.gates["requirements.prompt.md"] = asyncio.Event()
        await orchestrator.start_workflow("Spec")
        assert not orchestrator.release()

        await orchestrator.cancel_workflow()
        executor.gates["requirements.prompt.md"].set()
        await orchestrator.wait()

        assert orchestrator.release()
        assert orchestrator.get_workflow_state() is None
        assert orchestrator.sessions() == []

    @pytest.mark.asyncio
    async def test_plain_function_executor(self, registry):
        calls = []

        def execute(template_ref, context):
            calls.append(template_ref)
            return {"done": True}

        orchestrator = WorkflowOrchestrator(execute, registry=registry)
        await orchestrator.start_workflow("Vibe Coding")
        state = await orchestrator.wait()

        assert state.status == WorkflowStatus.COMPLETED
        assert calls == ["executeTask.prompt.md"]
        assert state.context_variables == {"done": True}

    @pytest.mark.asyncio
    async def test_build_orchestrator_from_config(self, tmp_path, executor):
        definitions = tmp_path / "workflows"
        definitions.mkdir()
        (definitions / "review.yaml").write_text(
            "name: Review\n"
            "steps:\n"
            "  - id: review\n"
            "    template: review.prompt.md\n"
        )
        config = SpecflowConfig(
            workflows=WorkflowsConfig(definitions_dir=str(definitions)),
            persistence=PersistenceConfig(backend="file", state_dir=str(tmp_path / "state")),
        )

        orchestrator = build_orchestrator(executor, config)
        assert isinstance(orchestrator.store, JsonFileSessionStore)
        assert SPEC_MODE in orchestrator.registry

        await orchestrator.start_workflow("Review", session_id="s1")
        state = await orchestrator.wait("s1")

        assert state.status == WorkflowStatus.COMPLETED
        saved = orchestrator.store.load("s1")
        assert saved.status == WorkflowStatus.COMPLETED
        assert saved.definition_name == "Review"

    @pytest.mark.parametrize("backend", ["File", "redis"])
    def test_build_orchestrator_rejects_unknown_backend(self, executor, backend):
        config = SpecflowConfig(persistence=PersistenceConfig(backend=backend))

        with pytest.raises(ConfigurationError, match="Persistence backend"):
            build_orchestrator(executor, config)

    def test_build_orchestrator_rejects_unknown_timeout_scope(self, executor):
        config = SpecflowConfig(approval=ApprovalConfig(timeout_scope="session"))

        with pytest.raises(ConfigurationError, match="timeout scope"):
            build_orchestrator(executor, config)

    def test_constructor_rejects_unknown_timeout_scope(self, executor, registry):
        with pytest.raises(ConfigurationError, match="session"):
            WorkflowOrchestrator(
                executor,
                registry=registry,
                approval_config=ApprovalConfig(timeout_scope="session"),
            )

    @pytest.mark.asyncio
    async def test_close_stops_step_of_replaced_run(self, orchestrator, executor):
        executor.gates["requirements.prompt.md"] = asyncio.Event()
        await orchestrator.start_workflow("Spec")
        await wait_for(lambda: len(executor.calls) == 1)
        await orchestrator.cancel_workflow()
        replaced_task = orchestrator._runs["default"].task

        await orchestrator.start_workflow("Spec")
        await wait_for(lambda: len(executor.calls) == 2)
        assert not replaced_task.done()

        await orchestrator.close()

        assert replaced_task.done()
