"""
Pytest fixtures for specflow tests
"""

import pytest

from specflow.persistence import InMemorySessionStore
from specflow.registry import WorkflowRegistry
from specflow.schema import StepDef, WorkflowDef


@pytest.fixture
def spec_definition():
    """
    Three-step 'Spec' workflow

    requirements (no approval) -> design (approval) -> tasks (no approval)
    """
    return WorkflowDef(
        name="Spec",
        description="Test spec workflow",
        steps=[
            StepDef(id="requirements", name="Requirements", template_ref="requirements.prompt.md"),
            StepDef(
                id="design",
                name="Design",
                template_ref="design.prompt.md",
                requires_approval=True,
            ),
            StepDef(id="tasks", name="Tasks", template_ref="tasks.prompt.md"),
        ],
    )


@pytest.fixture
def registry(spec_definition):
    registry = WorkflowRegistry.with_builtins()
    registry.register(spec_definition)
    return registry


@pytest.fixture
def store():
    return InMemorySessionStore()
