"""
Progress & Diagnostics Log

Append-only, per-run log of timestamped entries plus step timing.
Pure bookkeeping: rendering helpers at the bottom only build strings
for whatever surface displays them.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .schema import LogEntry, LogLevel, ProgressEvent, WorkflowStatus


STEP_ICONS = {
    "completed": "✓",
    "running": "⟳",
    "pending": "○",
    "failed": "✗",
    "cancelled": "✗",
    "waiting_approval": "⏸",
    "idle": "○",
}

LEVEL_ICONS = {
    LogLevel.INFO: "ℹ️",
    LogLevel.WARNING: "⚠️",
    LogLevel.ERROR: "❌",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_duration(seconds: float) -> str:
    """
    Format a duration as a short human-readable string.

    Examples: "5s", "3m 4s", "1h 2m"
    """
    total = int(max(seconds, 0))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ProgressLog:
    """
    Diagnostics log for a single workflow run.

    Entries are append-only until the next run calls reset(). Elapsed time
    runs from the first step start to now, or to the finish time once the
    run has reached a terminal state.
    """

    def __init__(self):
        self._logs: List[LogEntry] = []
        self._step_start_times: Dict[int, datetime] = {}
        self._finished_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def add_log(self, step_name: str, message: str, level: LogLevel = LogLevel.INFO) -> LogEntry:
        """Append a log entry and return it."""
        entry = LogEntry(step_name=step_name, message=message, level=LogLevel(level))
        self._logs.append(entry)
        return entry

    def get_logs(self) -> List[LogEntry]:
        return list(self._logs)

    def get_logs_by_level(self, level: LogLevel) -> List[LogEntry]:
        level = LogLevel(level)
        return [entry for entry in self._logs if entry.level == level]

    def has_errors(self) -> bool:
        return any(entry.level == LogLevel.ERROR for entry in self._logs)

    def has_warnings(self) -> bool:
        return any(entry.level == LogLevel.WARNING for entry in self._logs)

    def clear_logs(self) -> None:
        self._logs = []

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    def start_tracking(self) -> None:
        """Begin timing a new run."""
        self._step_start_times.clear()
        self._finished_at = None

    def record_step_start(self, step_index: int) -> None:
        self._step_start_times[step_index] = _utc_now()
        # A re-run step reopens the clock
        self._finished_at = None

    def mark_finished(self) -> None:
        """Freeze elapsed time at the terminal transition."""
        self._finished_at = _utc_now()

    @property
    def started_at(self) -> Optional[datetime]:
        if not self._step_start_times:
            return None
        return min(self._step_start_times.values())

    @property
    def finished_at(self) -> Optional[datetime]:
        return self._finished_at

    def get_total_elapsed_time(self) -> Optional[timedelta]:
        """Elapsed time since the first step started, or None if none has."""
        start = self.started_at
        if start is None:
            return None
        end = self._finished_at or _utc_now()
        return end - start

    def get_step_elapsed_time(self, step_index: int) -> Optional[timedelta]:
        """Elapsed time of one step: until the next step started, or until now."""
        start = self._step_start_times.get(step_index)
        if start is None:
            return None
        end = self._step_start_times.get(step_index + 1) or self._finished_at or _utc_now()
        return end - start

    def reset(self) -> None:
        """Clear all entries and timing data."""
        self._logs = []
        self._step_start_times.clear()
        self._finished_at = None

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_markdown(self, event: ProgressEvent, show_details: bool = False,
                        include_timestamps: bool = True) -> str:
        """Render a step list for the given event, optionally with the execution log."""
        lines = [f"### ⚙️ {event.workflow_name}", ""]

        for i in range(event.total_steps):
            if i < event.current_step_index:
                status = "completed"
            elif i == event.current_step_index:
                status = event.status.value
            else:
                status = "pending"

            name = event.current_step_name if i == event.current_step_index else f"Step {i + 1}"
            line = f"{STEP_ICONS[status]} {i + 1}. {name}"
            if i == event.current_step_index:
                line = f"**{line}**"
            if status == "completed":
                elapsed = self.get_step_elapsed_time(i)
                if elapsed is not None:
                    line += f" *({format_duration(elapsed.total_seconds())})*"
            lines.append(line)

        if event.message:
            lines.extend(["", f"*{event.message}*"])

        if show_details and self._logs:
            lines.extend(["", "<details>", "<summary>Show Details</summary>", "", "#### Execution Log", ""])
            for entry in self._logs:
                prefix = f"`{entry.timestamp.strftime('%H:%M:%S')}` " if include_timestamps else ""
                step = f"**{entry.step_name}**: " if entry.step_name else ""
                lines.append(f"{prefix}{LEVEL_ICONS[entry.level]} {step}{entry.message}")
            lines.extend(["", "</details>"])

        return "\n".join(lines) + "\n"


def render_compact(event: ProgressEvent) -> str:
    """Compact one-line summary, e.g. '⟳ Spec Mode: 1/3 (33%)'."""
    icon = STEP_ICONS[event.status.value]
    percentage = round(event.current_step_index / event.total_steps * 100) if event.total_steps else 0
    return f"{icon} {event.workflow_name}: {event.current_step_index}/{event.total_steps} ({percentage}%)"


def render_status_bar(event: ProgressEvent) -> str:
    """Status bar text, e.g. '⏸ Design (2/3)'."""
    icon = STEP_ICONS[event.status.value]
    position = min(event.current_step_index + 1, event.total_steps)
    if event.status == WorkflowStatus.COMPLETED:
        position = event.total_steps
    return f"{icon} {event.current_step_name} ({position}/{event.total_steps})"
