"""
Approval Gate - suspension point that waits for an external decision.

A gate is fully described by its ApprovalRequest. The orchestrator creates
one per approval-gated step, notifies subscribers, and awaits the gate.
The gate resolves exactly once, by one of:

- submit_approval_response / an approval subscriber  (resolved_by user/subscriber)
- the inactivity deadline passing                     (resolved_by timeout)
- workflow cancellation                               (resolved_by cancel)

Option strings carry no type; their meaning is assigned by convention:

    "Approve" / "Proceed" / "Continue" / "Yes"  -> PROCEED
    "Reject" / "Cancel" / "No"                  -> REJECT
    "Modify" / "Revise" / "Request changes"     -> MODIFY

Usage:
    gate = ApprovalGate(request)
    gate.schedule_expiry()
    decision = await gate.wait()

    if classify_option(decision.choice) == OptionKind.PROCEED:
        ...
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .errors import StateMismatchError, UnknownApprovalOptionError, WorkflowDefinitionError
from .schema import ApprovalDecision, ApprovalRequest, ApprovalStatus, StepDef

logger = logging.getLogger(__name__)


class OptionKind(str, Enum):
    """Conventional meaning of an approval option."""
    PROCEED = "proceed"
    REJECT = "reject"
    MODIFY = "modify"


_OPTION_WORDS = {
    OptionKind.PROCEED: {"approve", "approved", "proceed", "continue", "yes", "accept", "ok"},
    OptionKind.REJECT: {"reject", "rejected", "cancel", "no", "deny", "stop", "abort"},
    OptionKind.MODIFY: {"modify", "revise", "edit", "change", "changes", "request changes", "retry"},
}

_FIRST_WORD = re.compile(r"[a-z]+")


def classify_option(option: str) -> Optional[OptionKind]:
    """
    Classify an option string by convention.

    Matches the whole (lowercased) option first, then its first word, so
    "Yes, Continue" is PROCEED and "Cancel Workflow" is REJECT.
    """
    normalized = option.strip().lower()
    for kind, words in _OPTION_WORDS.items():
        if normalized in words:
            return kind
    match = _FIRST_WORD.match(normalized)
    if match:
        for kind, words in _OPTION_WORDS.items():
            if match.group(0) in words:
                return kind
    return None


def find_option(options: Iterable[str], kind: OptionKind) -> Optional[str]:
    """Return the first option of the given kind, or None."""
    for option in options:
        if classify_option(option) == kind:
            return option
    return None


def validate_step_options(step: StepDef) -> None:
    """
    Ensure an approval-gated step offers a proceed and a reject option.

    Raises:
        WorkflowDefinitionError: If either is missing
    """
    if not step.requires_approval:
        return
    if find_option(step.approval_options, OptionKind.PROCEED) is None:
        raise WorkflowDefinitionError(
            f"Step '{step.id}' approval options {step.approval_options} have no proceed option"
        )
    if find_option(step.approval_options, OptionKind.REJECT) is None:
        raise WorkflowDefinitionError(
            f"Step '{step.id}' approval options {step.approval_options} have no reject option"
        )


def create_request(
    step: StepDef,
    timeout_seconds: Optional[float] = None,
    deadline: Optional[datetime] = None,
) -> ApprovalRequest:
    """
    Build an ApprovalRequest for a step.

    Args:
        step: The approval-gated step
        timeout_seconds: Inactivity timeout; None disables expiry
        deadline: Explicit expiry that overrides timeout_seconds

    Returns:
        A pending ApprovalRequest
    """
    now = datetime.now(timezone.utc)
    expires_at = deadline
    if expires_at is None and timeout_seconds is not None:
        expires_at = now + timedelta(seconds=timeout_seconds)

    return ApprovalRequest(
        step_id=step.id,
        step_name=step.name,
        message=step.approval_message or f"Do you want to proceed with: {step.name}?",
        options=list(step.approval_options),
        created_at=now,
        expires_at=expires_at,
    )


class ApprovalGate:
    """
    Awaitable wrapper around one ApprovalRequest.

    Must be created inside a running event loop. The expiry timer is a
    loop.call_later handle cancelled by any resolution.
    """

    def __init__(self, request: ApprovalRequest):
        self.request = request
        self.timed_out = False
        self._loop = asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_pending(self) -> bool:
        return self.request.status == ApprovalStatus.PENDING

    def schedule_expiry(self) -> None:
        """Arm the inactivity timer if the request has a deadline."""
        if self.request.expires_at is None or not self.is_pending:
            return
        delay = (self.request.expires_at - datetime.now(timezone.utc)).total_seconds()
        self._timer = self._loop.call_later(max(delay, 0.0), self.expire)

    def validate_choice(self, choice: str) -> None:
        """
        Raises:
            StateMismatchError: If the request is no longer pending
            UnknownApprovalOptionError: If choice is not one of the options
        """
        if not self.is_pending:
            raise StateMismatchError(f"Approval request {self.request.id} is already resolved")
        if choice not in self.request.options:
            raise UnknownApprovalOptionError(choice, self.request.options)

    def resolve(
        self,
        choice: str,
        context_updates: Optional[Dict[str, Any]] = None,
        resolved_by: str = "user",
    ) -> ApprovalRequest:
        """Resolve with a validated choice. Nothing changes if validation fails."""
        self.validate_choice(choice)
        self._settle(choice, context_updates or {}, resolved_by)
        return self.request

    def expire(self) -> None:
        """Auto-resolve with the reject option once the deadline passes."""
        if not self.is_pending:
            return
        reject = find_option(self.request.options, OptionKind.REJECT)
        logger.warning(
            f"Approval request {self.request.id} for step '{self.request.step_id}' expired; "
            f"resolving as '{reject}'"
        )
        self.timed_out = True
        self._settle(reject, {}, "timeout")

    def cancel(self) -> None:
        """Release a waiter because the workflow was cancelled."""
        if not self.is_pending:
            return
        reject = find_option(self.request.options, OptionKind.REJECT)
        self._settle(reject, {}, "cancel")

    async def wait(self) -> ApprovalDecision:
        return await self._future

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _settle(self, choice: str, context_updates: Dict[str, Any], resolved_by: str) -> None:
        self.cancel_timer()

        self.request.status = ApprovalStatus.RESOLVED
        self.request.choice = choice
        self.request.resolved_by = resolved_by
        self.request.resolved_at = datetime.now(timezone.utc)

        if not self._future.done():
            self._future.set_result(
                ApprovalDecision(choice=choice, context_updates=context_updates)
            )
