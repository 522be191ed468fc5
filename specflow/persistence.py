"""
Persistence contract for workflow state.

The orchestrator never touches storage directly: it builds a
WorkflowSnapshot after every transition and hands it to an injected
SessionStore. Stores may implement save/load synchronously or as
coroutines.

Bundled stores:
- InMemorySessionStore: process-local dict (default); context values are kept as-is
- JsonFileSessionStore: one JSON file per session, atomic writes; context
  values must be JSON-serializable and come back as their JSON types
"""
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union, runtime_checkable

from .errors import PersistenceError
from .schema import WorkflowSnapshot, WorkflowState

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionStore(Protocol):
    """save/load pair backing pause and resume."""

    def save(self, session_id: str, snapshot: WorkflowSnapshot) -> Any:
        ...

    def load(self, session_id: str) -> Any:
        """Return the latest WorkflowSnapshot for the session, or None."""
        ...


def snapshot_of(state: WorkflowState) -> WorkflowSnapshot:
    """Build the persistable snapshot of a live state."""
    return WorkflowSnapshot(
        workflow_id=state.workflow_id,
        definition_name=state.definition.name,
        current_step_index=state.current_step_index,
        status=state.status,
        context_variables=dict(state.context_variables),
        created_at=state.created_at,
        updated_at=state.updated_at,
    )


class InMemorySessionStore:
    """Keeps the latest snapshot per session in memory."""

    def __init__(self):
        self._snapshots: Dict[str, WorkflowSnapshot] = {}

    def save(self, session_id: str, snapshot: WorkflowSnapshot) -> None:
        # Deep copies on the way in and out keep live state and callers isolated
        self._snapshots[session_id] = snapshot.model_copy(deep=True)

    def load(self, session_id: str) -> Optional[WorkflowSnapshot]:
        snapshot = self._snapshots.get(session_id)
        return snapshot.model_copy(deep=True) if snapshot is not None else None

    def delete(self, session_id: str) -> None:
        self._snapshots.pop(session_id, None)

    def sessions(self) -> list:
        return list(self._snapshots)


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class JsonFileSessionStore:
    """
    Stores snapshots as JSON files.

    State file: <state_dir>/session_<session_id>.json
    """

    def __init__(self, state_dir: Union[str, Path] = ".specflow/sessions"):
        self.state_dir = Path(state_dir)

    def _ensure_dir(self) -> None:
        """Create state directory if it doesn't exist"""
        self.state_dir.mkdir(parents=True, exist_ok=True)

        gitignore = self.state_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n")

    def _state_file(self, session_id: str) -> Path:
        return self.state_dir / f"session_{_UNSAFE_CHARS.sub('_', session_id)}.json"

    def save(self, session_id: str, snapshot: WorkflowSnapshot) -> None:
        """
        Save snapshot to disk (atomic write)

        Raises:
            PersistenceError: If the context holds values JSON cannot represent
        """
        try:
            payload = json.dumps(snapshot.to_dict(), indent=2)
        except (TypeError, ValueError) as e:
            raise PersistenceError(
                f"Cannot save session {session_id!r} as JSON: {e}"
            ) from e

        self._ensure_dir()
        state_file = self._state_file(session_id)

        # Atomic write: write to temp file, then rename
        temp_file = state_file.with_suffix('.tmp')
        temp_file.write_text(payload)
        temp_file.replace(state_file)
        logger.debug(f"Saved session {session_id} ({snapshot.status.value}) to {state_file}")

    def load(self, session_id: str) -> Optional[WorkflowSnapshot]:
        state_file = self._state_file(session_id)
        if not state_file.exists():
            return None
        data = json.loads(state_file.read_text())
        logger.debug(f"Loaded session {session_id} from {state_file}")
        return WorkflowSnapshot.from_dict(data)

    def delete(self, session_id: str) -> None:
        state_file = self._state_file(session_id)
        if state_file.exists():
            state_file.unlink()
