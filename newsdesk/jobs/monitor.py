"""
Stuck Issue Monitor

A phase killed from outside (worker crash, deploy, hard RQ kill) leaves the
issue in its busy status with a lease that expires. This job moves such
issues to failed so they can be retried. The update is conditional on the
same lease holder, so a run that completed in the meantime is left alone.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from ..utils.db import get_db
from ..utils.workflow import fail_issue

logger = logging.getLogger(__name__)


def recover_stuck_issues(db=None) -> Dict[str, Any]:
    """
    Fail every issue whose lease has expired.

    Returns:
        {checked, failed, issue_ids, errors}
    """
    db = db or get_db()
    now = datetime.now(timezone.utc)
    results: Dict[str, Any] = {
        "checked_at": now.isoformat(),
        "checked": 0,
        "failed": 0,
        "issue_ids": [],
        "errors": [],
    }

    expired = db.get_expired_leases(now)
    results["checked"] = len(expired)

    for issue in expired:
        expires_at = issue.get('lease_expires_at')
        expired_at = expires_at.isoformat() if hasattr(expires_at, 'isoformat') else str(expires_at)
        reason = (
            f"Timed out: {issue['status']} run {issue['lease_holder']} "
            f"did not finish before its lease expired at {expired_at}"
        )
        try:
            if fail_issue(issue['id'], reason, run_id=issue['lease_holder'], db=db):
                results["failed"] += 1
                results["issue_ids"].append(issue['id'])
        except Exception as e:
            error_msg = f"Error failing stuck issue {issue['id']}: {e}"
            logger.error(f"[Monitor] {error_msg}")
            results["errors"].append(error_msg)

    if expired:
        logger.info(f"[Monitor] {len(expired)} expired leases, {results['failed']} issues failed")
    return results
