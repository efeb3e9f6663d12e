"""
Issue Workflow Guard

Phases claim an issue with a single compare-and-set on its status and take
a lease (holder = run id, expiry = now + budget). Completion and failure
only apply while the run still holds the lease, so a run that lost its
lease can never overwrite a newer state.

Operator actions (review, approve, send) have no busy state and are
validated against the transition table.

Chaining is fire-and-forget over HTTP: a finished phase POSTs to the trigger
service, which runs the same guard before enqueuing the next phase.
"""

import os
import time
import logging
from typing import Any, Dict, Optional

import requests

from .db import get_db
from .issue_states import (
    DRAFT,
    PROCESSING,
    PENDING_PHASE2,
    IN_REVIEW,
    CHANGES_MADE,
    READY_TO_SEND,
    SENT,
    FAILED,
    ISSUE_TRANSITIONS,
    assert_transition,
)

logger = logging.getLogger(__name__)

TRIGGER_BASE_URL = os.environ.get('TRIGGER_BASE_URL', 'http://localhost:5001')
TRIGGER_TIMEOUT_SECONDS = 10
MAX_FAILURE_REASON_LENGTH = 500

# Execution budget per phase, in seconds. Used as the RQ job timeout, the
# lease expiry, and the in-job deadline.
PHASE_BUDGETS = {
    'phase1': 1800,
    'phase2': 1800,
    'reprocess': 2400,
}

PHASES: Dict[str, Dict[str, Any]] = {
    'phase1': {
        'start_from': (DRAFT, FAILED),
        'busy': PROCESSING,
        'completes_to': PENDING_PHASE2,
        'next_phase': 'phase2',
        'audit_column': 'processing_started_at',
    },
    'phase2': {
        'start_from': (PENDING_PHASE2, FAILED),
        'busy': PROCESSING,
        'completes_to': IN_REVIEW,
        'next_phase': None,
        'audit_column': 'phase2_started_at',
    },
    'reprocess': {
        'start_from': (DRAFT, IN_REVIEW, CHANGES_MADE, READY_TO_SEND, FAILED),
        'busy': PROCESSING,
        'completes_to': PENDING_PHASE2,
        'next_phase': 'phase2',
        'audit_column': 'processing_started_at',
    },
}

COMPLETION_AUDIT_COLUMNS = {
    IN_REVIEW: 'review_started_at',
}

# action name -> (target status, audit column)
OPERATOR_ACTIONS = {
    'changes_made': (CHANGES_MADE, 'changes_made_at'),
    'submit_review': (IN_REVIEW, 'review_started_at'),
    'approve': (READY_TO_SEND, 'approved_at'),
    'mark_sent': (SENT, 'sent_at'),
}

BUSY_STATUSES = frozenset({PROCESSING, PENDING_PHASE2})


class PhaseTimeout(TimeoutError):
    """Raised when a phase runs past its execution budget."""


class PhaseBudget:
    """Deadline for one phase run, checked between per-item operations."""

    def __init__(self, seconds: float, phase: str = 'phase'):
        self.seconds = seconds
        self.phase = phase
        self.deadline = time.monotonic() + seconds

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, step: str = ''):
        if self.expired():
            during = f" during {step}" if step else ""
            raise PhaseTimeout(
                f"Timed out: {self.phase} exceeded its {int(self.seconds)}s budget{during}"
            )


def truncate_reason(reason: str) -> str:
    reason = str(reason or 'Unknown error')
    if len(reason) <= MAX_FAILURE_REASON_LENGTH:
        return reason
    return reason[:MAX_FAILURE_REASON_LENGTH - 3] + '...'


def get_phase(phase: str) -> Dict[str, Any]:
    if phase not in PHASES:
        raise ValueError(f"Unknown phase: {phase}")
    return PHASES[phase]


def check_phase_start(issue: Dict[str, Any], phase: str) -> str:
    """
    Classify whether a phase could start on the issue as it is now.

    Returns 'ready', 'conflict' (already in the busy status) or 'stale'
    (any other status the phase cannot start from). Read-only.
    """
    config = get_phase(phase)
    status = issue['status']
    if status in config['start_from']:
        return 'ready'
    if status == config['busy']:
        return 'conflict'
    return 'stale'


def start_phase(issue_id: str, phase: str, run_id: str,
                budget_seconds: Optional[int] = None, db=None) -> Dict[str, Any]:
    """
    Claim an issue for a phase run.

    Returns:
        {started, conflict, status, issue}. started is True only for the
        caller whose compare-and-set moved the issue into the busy status.
        conflict is True when the issue was already busy. Otherwise the
        trigger was stale and nothing happened.
    """
    db = db or get_db()
    config = get_phase(phase)
    budget = PHASE_BUDGETS[phase] if budget_seconds is None else budget_seconds

    claimed = db.claim_issue(
        issue_id,
        list(config['start_from']),
        config['busy'],
        run_id,
        budget,
        audit_column=config['audit_column'],
    )
    if claimed:
        logger.info(f"[Workflow] {phase} claimed issue {issue_id} (run {run_id})")
        return {"started": True, "conflict": False, "status": claimed['status'], "issue": claimed}

    current = db.get_issue(issue_id)
    if current is None:
        raise LookupError(f"Issue not found: {issue_id}")

    conflict = current['status'] == config['busy']
    if conflict:
        logger.warning(f"[Workflow] {phase} conflict: issue {issue_id} is already {current['status']}")
    else:
        logger.info(f"[Workflow] {phase} skipped: issue {issue_id} is {current['status']}")
    return {"started": False, "conflict": conflict, "status": current['status'], "issue": current}


def complete_phase(issue_id: str, phase: str, run_id: str, db=None) -> bool:
    """Move a claimed issue to the phase's completion status. False if the lease was lost."""
    db = db or get_db()
    config = get_phase(phase)
    to_status = config['completes_to']
    moved = db.transition_issue(
        issue_id,
        to_status,
        lease_holder=run_id,
        expected_statuses=[config['busy']],
        audit_column=COMPLETION_AUDIT_COLUMNS.get(to_status),
    )
    if moved:
        logger.info(f"[Workflow] Issue {issue_id}: {config['busy']} -> {to_status}")
    else:
        logger.warning(f"[Workflow] Issue {issue_id}: run {run_id} no longer holds the lease, not completing")
    return moved


def fail_issue(issue_id: str, reason: str, run_id: Optional[str] = None, db=None) -> bool:
    """
    Move an issue to failed with a human-readable reason.

    With run_id the update only applies while that run holds the lease.
    Without it, any status that may transition to failed is accepted.
    """
    db = db or get_db()
    reason = truncate_reason(reason)
    if run_id is not None:
        moved = db.transition_issue(issue_id, FAILED, lease_holder=run_id,
                                    audit_column='failed_at', failure_reason=reason)
    else:
        failable = [s for s, targets in ISSUE_TRANSITIONS.items() if FAILED in targets]
        moved = db.transition_issue(issue_id, FAILED, expected_statuses=failable,
                                    audit_column='failed_at', failure_reason=reason)
    if moved:
        logger.error(f"[Workflow] Issue {issue_id} failed: {reason}")
    else:
        logger.warning(f"[Workflow] Issue {issue_id} not marked failed (state changed): {reason}")
    return moved


def apply_operator_action(issue_id: str, action: str, db=None) -> Dict[str, Any]:
    """
    Apply an editor action (changes_made, submit_review, approve, mark_sent).

    Raises:
        ValueError: unknown action, busy issue, or a transition not allowed
        LookupError: unknown issue
    """
    db = db or get_db()
    if action not in OPERATOR_ACTIONS:
        raise ValueError(f"Unknown action: {action}")
    to_status, audit_column = OPERATOR_ACTIONS[action]

    issue = db.get_issue(issue_id)
    if issue is None:
        raise LookupError(f"Issue not found: {issue_id}")

    current = issue['status']
    if current in BUSY_STATUSES:
        raise ValueError(f"Issue {issue_id} is {current}; wait for processing to finish")
    assert_transition(current, to_status)

    if not db.transition_issue(issue_id, to_status, expected_statuses=[current],
                               audit_column=audit_column):
        raise ValueError(f"Issue {issue_id} changed status concurrently, retry the action")

    logger.info(f"[Workflow] Issue {issue_id}: {current} -> {to_status} ({action})")
    return db.get_issue(issue_id)


def mark_changes_made(issue_id: str, db=None) -> Dict[str, Any]:
    return apply_operator_action(issue_id, 'changes_made', db=db)


def submit_for_review(issue_id: str, db=None) -> Dict[str, Any]:
    return apply_operator_action(issue_id, 'submit_review', db=db)


def approve_issue(issue_id: str, db=None) -> Dict[str, Any]:
    return apply_operator_action(issue_id, 'approve', db=db)


def mark_sent(issue_id: str, db=None) -> Dict[str, Any]:
    return apply_operator_action(issue_id, 'mark_sent', db=db)


def trigger_phase(phase: str, issue_id: str, publication_id: Optional[str] = None) -> bool:
    """
    Ask the trigger service to enqueue a phase. Fire-and-forget.

    Returns True when the service accepted the request (or reported the
    phase already running). Errors are logged and never retried here.
    """
    url = f"{TRIGGER_BASE_URL.rstrip('/')}/phases/{phase}"
    headers = {'Content-Type': 'application/json'}
    secret = os.environ.get('TRIGGER_SECRET', '')
    if secret:
        headers['Authorization'] = f"Bearer {secret}"

    try:
        response = requests.post(
            url,
            json={'issue_id': issue_id, 'publication_id': publication_id},
            headers=headers,
            timeout=TRIGGER_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.error(f"[Workflow] Failed to trigger {phase} for issue {issue_id}: {e}")
        return False

    if response.status_code in (200, 202):
        logger.info(f"[Workflow] Triggered {phase} for issue {issue_id}")
        return True
    if response.status_code == 409:
        logger.info(f"[Workflow] {phase} already running for issue {issue_id}")
        return True

    logger.error(f"[Workflow] Trigger {phase} for issue {issue_id} returned HTTP {response.status_code}")
    return False
