"""
Newsdesk - HTTP Trigger Service
Flask app for starting issue phases and operator actions

Endpoints:
    POST /phases/<phase>                   - Enqueue phase1, phase2 or reprocess for an issue
    POST /issues                           - Create a draft issue
    GET  /issues/<issue_id>                - Issue status, failure reason and counts
    POST /issues/<issue_id>/actions/<name> - changes_made, submit_review, approve, mark_sent
    POST /jobs/ingest                      - Enqueue pool ingestion
    GET  /jobs/status/<job_id>             - Get job status
    GET  /health                           - Health check

Environment:
    REDIS_URL: Redis connection string
    TRIGGER_SECRET: Shared secret for authentication (optional)
"""

import os
import logging
from datetime import date, datetime, timezone
from flask import Flask, request, jsonify
from redis import Redis
from rq import Queue
from rq.job import Job
from dotenv import load_dotenv

from .utils.db import get_db
from .utils.issue_states import ISSUE_STATUS_LABELS, is_editable_status
from .utils.workflow import (
    OPERATOR_ACTIONS,
    PHASES,
    PHASE_BUDGETS,
    apply_operator_action,
    check_phase_start,
)

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Redis connection
REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379')
TRIGGER_SECRET = os.environ.get('TRIGGER_SECRET', '')

PHASE_QUEUE = 'high'
INGEST_QUEUE = 'default'
INGEST_JOB_TIMEOUT = 1800


def get_redis_connection():
    """Get Redis connection from URL"""
    return Redis.from_url(REDIS_URL)


def get_queue(name: str) -> Queue:
    return Queue(name, connection=get_redis_connection())


def verify_auth():
    """Verify request authentication if TRIGGER_SECRET is set"""
    if not TRIGGER_SECRET:
        return True

    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        token = auth_header[7:]
        return token == TRIGGER_SECRET
    return False


def unauthorized():
    return jsonify({
        'success': False,
        'error': 'Unauthorized'
    }), 401


def get_phase_job(phase: str):
    """Lazy load phase job functions to keep startup light."""
    from .jobs.phases import PHASE_JOBS
    return PHASE_JOBS.get(phase)


def _iso(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def serialize_issue(issue: dict) -> dict:
    data = {key: _iso(value) for key, value in issue.items()}
    data['status_label'] = ISSUE_STATUS_LABELS.get(issue['status'], issue['status'])
    data['editable'] = is_editable_status(issue['status'])
    return data


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    try:
        conn = get_redis_connection()
        conn.ping()
        redis_status = 'connected'
    except Exception as e:
        redis_status = f'error: {str(e)}'

    return jsonify({
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'redis': redis_status,
        'phases': list(PHASES.keys()),
    })


@app.route('/phases/<phase>', methods=['POST'])
def trigger_phase(phase: str):
    """
    Enqueue a phase for an issue.

    Request Body:
        {
            "issue_id": "...",
            "publication_id": "..."   // optional, read from the issue otherwise
        }

    Returns:
        202 {success, message, phase, job_id, next_phase}
        409 {success: false, conflict: true, message} when the issue is
            already in the phase's busy status; nothing is enqueued
        200 {success: true, skipped: true, message} when the issue is in
            any other status the phase cannot start from
    """
    if not verify_auth():
        return unauthorized()

    if phase not in PHASES:
        return jsonify({
            'success': False,
            'error': f'Invalid phase: {phase}',
            'valid_phases': list(PHASES.keys())
        }), 400

    body = request.get_json(silent=True) or {}
    issue_id = body.get('issue_id')
    if not issue_id:
        return jsonify({'success': False, 'error': 'issue_id is required'}), 400

    try:
        issue = get_db().get_issue(issue_id)
    except Exception as e:
        logger.error(f"Failed to load issue {issue_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

    if issue is None:
        return jsonify({'success': False, 'error': f'Issue not found: {issue_id}'}), 404

    state = check_phase_start(issue, phase)
    if state == 'conflict':
        logger.info(f"Rejected {phase} for issue {issue_id}: already {issue['status']}")
        return jsonify({
            'success': False,
            'conflict': True,
            'message': f"Issue is already {issue['status']}",
            'status': issue['status'],
        }), 409
    if state == 'stale':
        logger.info(f"Ignored {phase} for issue {issue_id}: status is {issue['status']}")
        return jsonify({
            'success': True,
            'skipped': True,
            'message': f"Nothing to do: {phase} cannot start from {issue['status']}",
            'status': issue['status'],
        })

    job_func = get_phase_job(phase)
    publication_id = body.get('publication_id') or issue.get('publication_id')

    try:
        job = get_queue(PHASE_QUEUE).enqueue(
            job_func,
            issue_id=issue_id,
            publication_id=publication_id,
            job_timeout=PHASE_BUDGETS[phase]
        )
    except Exception as e:
        logger.error(f"Failed to enqueue {phase} for issue {issue_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500

    logger.info(f"Triggered {phase} for issue {issue_id} with job ID {job.id}")

    return jsonify({
        'success': True,
        'message': f'{phase} enqueued',
        'phase': phase,
        'job_id': job.id,
        'next_phase': PHASES[phase]['next_phase'],
        'enqueued_at': datetime.now(timezone.utc).isoformat()
    }), 202


@app.route('/issues', methods=['POST'])
def create_issue():
    """
    Create a draft issue.

    Request Body:
        {"publication_id": "...", "issue_date": "2026-01-15"}   // date defaults to today (UTC)
    """
    if not verify_auth():
        return unauthorized()

    body = request.get_json(silent=True) or {}
    publication_id = body.get('publication_id')
    if not publication_id:
        return jsonify({'success': False, 'error': 'publication_id is required'}), 400

    try:
        issue_date = date.fromisoformat(body['issue_date']) if body.get('issue_date') \
            else datetime.now(timezone.utc).date()
    except (TypeError, ValueError):
        return jsonify({'success': False, 'error': 'issue_date must be YYYY-MM-DD'}), 400

    issue = get_db().create_issue(publication_id, issue_date)
    if issue is None:
        return jsonify({
            'success': False,
            'conflict': True,
            'message': f'An open issue already exists for {issue_date.isoformat()}'
        }), 409

    logger.info(f"Created issue {issue['id']} for {publication_id} on {issue_date.isoformat()}")
    return jsonify({'success': True, 'issue': serialize_issue(issue)}), 201


@app.route('/issues/<issue_id>', methods=['GET'])
def get_issue(issue_id: str):
    """Issue status, failure reason, and content counts."""
    if not verify_auth():
        return unauthorized()

    db = get_db()
    issue = db.get_issue(issue_id)
    if issue is None:
        return jsonify({'success': False, 'error': f'Issue not found: {issue_id}'}), 404

    articles = db.get_articles(issue_id, active_only=True)
    groups = db.get_duplicate_groups(issue_id)
    counts = {
        'bound_items': len(db.get_issue_items(issue_id)),
        'primary_articles': sum(1 for a in articles if a['section'] == 'primary'),
        'secondary_articles': sum(1 for a in articles if a['section'] == 'secondary'),
        'duplicate_groups': len(groups),
        'suppressed_items': sum(len(g.get('suppressed_item_ids') or []) for g in groups),
    }

    return jsonify({'success': True, 'issue': serialize_issue(issue), 'counts': counts})


@app.route('/issues/<issue_id>/actions/<action>', methods=['POST'])
def issue_action(issue_id: str, action: str):
    """
    Apply an editor action: changes_made, submit_review, approve, mark_sent.

    Returns 409 when the issue's current status does not allow the action.
    """
    if not verify_auth():
        return unauthorized()

    if action not in OPERATOR_ACTIONS:
        return jsonify({
            'success': False,
            'error': f'Invalid action: {action}',
            'valid_actions': list(OPERATOR_ACTIONS.keys())
        }), 400

    try:
        issue = apply_operator_action(issue_id, action)
    except LookupError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except ValueError as e:
        return jsonify({'success': False, 'conflict': True, 'message': str(e)}), 409

    return jsonify({'success': True, 'issue': serialize_issue(issue)})


@app.route('/jobs/ingest', methods=['POST'])
def trigger_ingest():
    """Enqueue pool ingestion. Body: {"publication_id": "...", "debug": false}"""
    if not verify_auth():
        return unauthorized()

    from .jobs.ingest import ingest_feeds

    body = request.get_json(silent=True) or {}
    try:
        job = get_queue(INGEST_QUEUE).enqueue(
            ingest_feeds,
            publication_id=body.get('publication_id'),
            debug=bool(body.get('debug', False)),
            job_timeout=INGEST_JOB_TIMEOUT
        )
    except Exception as e:
        logger.error(f"Failed to enqueue ingest: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

    logger.info(f"Triggered ingest with ID {job.id}")
    return jsonify({
        'success': True,
        'job_id': job.id,
        'queue': INGEST_QUEUE,
        'enqueued_at': datetime.now(timezone.utc).isoformat()
    }), 202


@app.route('/jobs/status/<job_id>', methods=['GET'])
def get_job_status(job_id: str):
    """
    Get status of a job by ID.

    Returns:
        {
            "job_id": "abc123",
            "status": "finished",  // queued, started, finished, failed
            "result": {...},       // Job result if finished
            "error": "...",        // Error message if failed
            "started_at": "...",
            "ended_at": "..."
        }
    """
    try:
        conn = get_redis_connection()
        job = Job.fetch(job_id, connection=conn)

        response = {
            'job_id': job_id,
            'status': job.get_status(),
            'created_at': job.created_at.isoformat() if job.created_at else None,
            'started_at': job.started_at.isoformat() if job.started_at else None,
            'ended_at': job.ended_at.isoformat() if job.ended_at else None,
        }

        if job.is_finished:
            response['result'] = job.result
        elif job.is_failed:
            response['error'] = str(job.exc_info) if job.exc_info else 'Unknown error'

        return jsonify(response)

    except Exception as e:
        return jsonify({
            'job_id': job_id,
            'status': 'not_found',
            'error': str(e)
        }), 404


def main():
    port = int(os.environ.get('TRIGGER_PORT', 5001))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'

    logger.info(f"Starting HTTP Trigger Service on port {port}")
    app.run(host='0.0.0.0', port=port, debug=debug)


if __name__ == '__main__':
    main()
