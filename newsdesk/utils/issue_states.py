"""
Issue Lifecycle States

draft -> processing -> pending_phase2 -> in_review -> changes_made
      -> ready_to_send -> sent

failed is reachable from every non-terminal state and can be retried.
sent is terminal. changes_made may be re-entered while an editor works.
"""

from typing import Dict, FrozenSet, List

DRAFT = 'draft'
PROCESSING = 'processing'
PENDING_PHASE2 = 'pending_phase2'
IN_REVIEW = 'in_review'
CHANGES_MADE = 'changes_made'
READY_TO_SEND = 'ready_to_send'
SENT = 'sent'
FAILED = 'failed'

ISSUE_STATUSES = (
    DRAFT,
    PROCESSING,
    PENDING_PHASE2,
    IN_REVIEW,
    CHANGES_MADE,
    READY_TO_SEND,
    SENT,
    FAILED,
)

ISSUE_STATUS_LABELS: Dict[str, str] = {
    DRAFT: 'Draft',
    PROCESSING: 'Processing',
    PENDING_PHASE2: 'Waiting for Phase 2',
    IN_REVIEW: 'In Review',
    CHANGES_MADE: 'Changes Made',
    READY_TO_SEND: 'Ready to Send',
    SENT: 'Sent',
    FAILED: 'Failed',
}

ISSUE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    DRAFT: frozenset({PROCESSING, IN_REVIEW, FAILED}),
    PROCESSING: frozenset({PENDING_PHASE2, IN_REVIEW, DRAFT, FAILED}),
    PENDING_PHASE2: frozenset({PROCESSING, FAILED}),
    IN_REVIEW: frozenset({CHANGES_MADE, READY_TO_SEND, PROCESSING, FAILED}),
    CHANGES_MADE: frozenset({CHANGES_MADE, IN_REVIEW, READY_TO_SEND, PROCESSING, FAILED}),
    READY_TO_SEND: frozenset({SENT, CHANGES_MADE, PROCESSING, FAILED}),
    SENT: frozenset(),
    FAILED: frozenset({PROCESSING}),
}

EDITABLE_STATUSES = frozenset({DRAFT, IN_REVIEW, CHANGES_MADE})
TERMINAL_STATUSES = frozenset({SENT})


def allowed_transitions(from_status: str) -> List[str]:
    """Sorted list of statuses reachable from from_status."""
    return sorted(ISSUE_TRANSITIONS.get(from_status, frozenset()))


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ISSUE_TRANSITIONS.get(from_status, frozenset())


def assert_transition(from_status: str, to_status: str) -> None:
    """Raise ValueError unless from_status -> to_status is allowed."""
    if not can_transition(from_status, to_status):
        raise ValueError(
            f"Invalid issue status transition: {from_status} -> {to_status}. "
            f"Allowed from {from_status}: {allowed_transitions(from_status)}"
        )


def is_editable_status(status: str) -> bool:
    return status in EDITABLE_STATUSES


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES
