"""
Workflow Definition Registry

Holds the named, read-only workflow definitions the orchestrator can run.
Definitions come from the built-in set or from declarative YAML files:

    name: Spec Mode
    description: Plan first, then build.
    approval_timeout_seconds: 300
    steps:
      - id: requirements
        name: Requirements
        template: requirements.prompt.md
        requires_approval: true
        required_context: [spec_name]
"""
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from .approval import validate_step_options
from .errors import UnknownWorkflowError, WorkflowDefinitionError
from .schema import StepDef, WorkflowDef

logger = logging.getLogger(__name__)


# ============================================================================
# YAML parsing
# ============================================================================

def parse_step(step_dict: Dict[str, Any]) -> StepDef:
    """Parse a single step definition"""
    if not isinstance(step_dict, dict):
        raise WorkflowDefinitionError(f"Step must be a mapping, got: {step_dict!r}")
    step_id = step_dict.get("id")
    if not step_id:
        raise WorkflowDefinitionError("Step missing 'id' field")

    data = dict(step_dict)
    data.setdefault("name", step_id)
    # "template" is accepted as shorthand for template_ref
    if "template" in data:
        data.setdefault("template_ref", data.pop("template"))
    if "options" in data:
        data.setdefault("approval_options", data.pop("options"))

    try:
        return StepDef(**data)
    except ValidationError as e:
        raise WorkflowDefinitionError(f"Invalid step '{step_id}': {e}")


def parse_workflow(data: Dict[str, Any]) -> WorkflowDef:
    """
    Parse a workflow mapping into a WorkflowDef.

    Raises:
        WorkflowDefinitionError: If required fields are missing or invalid
    """
    if not isinstance(data, dict):
        raise WorkflowDefinitionError("Workflow definition must be a dictionary at top level")

    # Handle both flat and nested ("workflow:") structures
    workflow_data = data.get("workflow", data)

    name = workflow_data.get("name")
    if not name:
        raise WorkflowDefinitionError("Workflow missing 'name' field")

    steps_list = workflow_data.get("steps", [])
    if not steps_list:
        raise WorkflowDefinitionError(f"Workflow '{name}' must have at least one step")

    steps = [parse_step(step_dict) for step_dict in steps_list]

    try:
        return WorkflowDef(
            name=name,
            description=workflow_data.get("description"),
            steps=steps,
            approval_timeout_seconds=workflow_data.get("approval_timeout_seconds"),
            approval_timeout_enabled=workflow_data.get("approval_timeout_enabled", True),
        )
    except ValidationError as e:
        raise WorkflowDefinitionError(f"Invalid workflow '{name}': {e}")


def load_workflow_file(yaml_path: Path) -> WorkflowDef:
    """
    Parse a workflow YAML file into a WorkflowDef.

    Raises:
        WorkflowDefinitionError: If the file is missing, not YAML, or invalid
    """
    yaml_path = Path(yaml_path)
    if not yaml_path.exists():
        raise WorkflowDefinitionError(f"Workflow file not found: {yaml_path}")

    try:
        data = yaml.safe_load(yaml_path.read_text())
    except yaml.YAMLError as e:
        raise WorkflowDefinitionError(f"Invalid YAML in {yaml_path}: {e}")

    return parse_workflow(data)


# ============================================================================
# Built-in workflows
# ============================================================================

SPEC_MODE = "Spec Mode"
VIBE_MODE = "Vibe Coding"

MODE_WORKFLOWS = {
    "spec": SPEC_MODE,
    "vibe": VIBE_MODE,
}


def builtin_workflows() -> List[WorkflowDef]:
    """The default Spec and Vibe workflows."""
    spec = WorkflowDef(
        name=SPEC_MODE,
        description="Plan first, then build. Create requirements and design before coding starts.",
        steps=[
            StepDef(
                id="requirements",
                name="Requirements",
                description="Generate requirements document using EARS format",
                template_ref="requirements.prompt.md",
                requires_approval=True,
                required_context=["spec_name"],
            ),
            StepDef(
                id="design",
                name="Design",
                description="Create technical design document",
                template_ref="design.prompt.md",
                requires_approval=True,
                required_context=["spec_name"],
                requires=["requirements"],
            ),
            StepDef(
                id="create-tasks",
                name="Create Tasks",
                description="Generate implementation task list",
                template_ref="createTasks.prompt.md",
                requires_approval=True,
                required_context=["spec_name"],
                requires=["design"],
            ),
            StepDef(
                id="execute-tasks",
                name="Execute Tasks",
                description="Execute tasks from task list",
                template_ref="executeTask.prompt.md",
                required_context=["spec_name"],
                requires=["tasks"],
            ),
        ],
    )
    vibe = WorkflowDef(
        name=VIBE_MODE,
        description="Chat first, then build. Explore ideas and iterate as you discover needs.",
        steps=[
            StepDef(
                id="execute-task",
                name="Execute Task",
                description="Execute task with iterative exploration",
                template_ref="executeTask.prompt.md",
            ),
        ],
    )
    return [spec, vibe]


# ============================================================================
# Registry
# ============================================================================

class WorkflowRegistry:
    """Name -> WorkflowDef lookup. Definitions are validated on registration."""

    def __init__(self, definitions: Optional[Iterable[WorkflowDef]] = None):
        self._definitions: Dict[str, WorkflowDef] = {}
        for definition in definitions or []:
            self.register(definition)

    @classmethod
    def with_builtins(cls) -> "WorkflowRegistry":
        return cls(builtin_workflows())

    def register(self, definition: WorkflowDef, replace: bool = False) -> WorkflowDef:
        """
        Register a definition.

        Raises:
            WorkflowDefinitionError: If the name is taken (and replace is False)
                or an approval step lacks proceed/reject options
        """
        if definition.name in self._definitions and not replace:
            raise WorkflowDefinitionError(f"Workflow already registered: {definition.name}")
        for step in definition.steps:
            validate_step_options(step)
        self._definitions[definition.name] = definition
        logger.debug(f"Registered workflow '{definition.name}' ({definition.step_count} steps)")
        return definition

    def load_file(self, yaml_path: Path, replace: bool = False) -> WorkflowDef:
        return self.register(load_workflow_file(yaml_path), replace=replace)

    def load_directory(self, directory: Path, replace: bool = False) -> List[WorkflowDef]:
        """Register every *.yaml / *.yml file in a directory, in name order."""
        directory = Path(directory)
        if not directory.is_dir():
            raise WorkflowDefinitionError(f"Workflow directory not found: {directory}")
        paths = sorted(list(directory.glob("*.yaml")) + list(directory.glob("*.yml")))
        return [self.load_file(path, replace=replace) for path in paths]

    def get(self, name: str) -> WorkflowDef:
        """
        Raises:
            UnknownWorkflowError: If no definition has that name
        """
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownWorkflowError(name) from None

    def for_mode(self, mode: str) -> WorkflowDef:
        """Look up the workflow for a coding mode ("spec" or "vibe")."""
        return self.get(MODE_WORKFLOWS.get(mode, mode))

    def __contains__(self, name: str) -> bool:
        return name in self._definitions

    def names(self) -> List[str]:
        return list(self._definitions)
