"""
Execution Logger for Newsdesk Workers

Logs phase runs to the execution_logs table. Each run creates a single
log record with:
- Summary counters (fetched, scored, generated, reclaimed, ...)
- Detailed log entries (timestamp, level, message)
- Status tracking (running, success, error, skipped)

A failure to write the run log is logged and never fails the phase.
Phase runs open the record only once they own the issue, so a trigger
that loses the claim leaves no row behind.

Usage:
    run_log = ExecutionLogger(phase='phase1', issue_id=issue_id)
    run_log.info("Starting phase 1")
    run_log.set_summary('scored', 12)
    run_log.complete('success')
"""

import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .db import get_db

# Standard Python logger for stdout
py_logger = logging.getLogger(__name__)


class ExecutionLogger:
    """
    Execution logger that writes to both stdout and the execution_logs table.

    The run id doubles as the issue lease holder for phase runs.
    """

    def __init__(self, phase: str, issue_id: Optional[str] = None,
                 run_id: Optional[str] = None, db=None, create_record: bool = True):
        self.run_id = run_id or str(uuid.uuid4())
        self.phase = phase
        self.issue_id = issue_id
        self.entries: List[Dict[str, Any]] = []
        self.summary: Dict[str, Any] = {}
        self.started_at = datetime.now(timezone.utc)
        self._db = db
        self._db_record_id: Optional[str] = None

        # Create initial database record with 'running' status
        if create_record:
            self.open_record()

    @property
    def db(self):
        if self._db is None:
            self._db = get_db()
        return self._db

    def open_record(self):
        """Create the 'running' record. Entries logged before this are kept."""
        if self._db_record_id:
            return
        try:
            self._db_record_id = self.db.create_execution_log(
                self.run_id, self.phase, self.issue_id, self.started_at
            )
            py_logger.debug(f"Created execution log record: {self._db_record_id}")
        except Exception as e:
            py_logger.error(f"Failed to create execution log record: {e}")

    def log(self, level: str, message: str, metadata: Optional[Dict] = None):
        """
        Log a message at the specified level.

        Writes to both stdout and the internal entries list.
        """
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': level,
            'message': message
        }
        if metadata:
            entry['metadata'] = metadata
        self.entries.append(entry)

        log_msg = message
        if metadata:
            log_msg += f" {json.dumps(metadata, default=str)}"

        if level == 'error':
            py_logger.error(log_msg)
        elif level == 'warn':
            py_logger.warning(log_msg)
        elif level == 'debug':
            py_logger.debug(log_msg)
        else:
            py_logger.info(log_msg)

    def info(self, message: str, metadata: Optional[Dict] = None):
        self.log('info', message, metadata)

    def warn(self, message: str, metadata: Optional[Dict] = None):
        self.log('warn', message, metadata)

    def error(self, message: str, metadata: Optional[Dict] = None):
        self.log('error', message, metadata)

    def set_summary(self, key: str, value: Any):
        """Set a summary counter shown for the run."""
        self.summary[key] = value

    def update_summary(self, values: Dict[str, Any]):
        self.summary.update(values)

    def increment_summary(self, key: str, amount: int = 1):
        """Increment a summary counter"""
        self.summary[key] = self.summary.get(key, 0) + amount

    def complete(self, status: str = 'success', error_message: Optional[str] = None):
        """
        Mark the run as complete and persist to database.

        Args:
            status: 'success', 'skipped' or 'error'
            error_message: Error message if status is 'error'
        """
        completed_at = datetime.now(timezone.utc)
        duration_ms = int((completed_at - self.started_at).total_seconds() * 1000)

        if not self._db_record_id:
            py_logger.warning("No execution log record to update")
            return

        try:
            self.db.update_execution_log(
                self._db_record_id,
                self.summary,
                self.entries,
                status=status,
                completed_at=completed_at,
                duration_ms=duration_ms,
                error_message=error_message,
            )
            py_logger.info(f"Execution complete: phase={self.phase}, status={status}, duration={duration_ms}ms")

        except Exception as e:
            py_logger.error(f"Failed to update execution log: {e}")

    def update_progress(self):
        """Persist current summary and entries while the run is still going."""
        if not self._db_record_id:
            return

        try:
            self.db.update_execution_log(self._db_record_id, self.summary, self.entries)
        except Exception as e:
            py_logger.warning(f"Failed to update progress: {e}")
