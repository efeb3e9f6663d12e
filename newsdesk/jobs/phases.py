"""
Issue Phase Jobs

Phase 1 (draft/failed -> processing -> pending_phase2):
    Clear any earlier output and bindings, ingest feeds, archive stale pool
    items, bind candidates, extract full text, score.
Phase 2 (pending_phase2/failed -> processing -> in_review):
    Clear any earlier phase 2 output, deduplicate, assign sections,
    generate and fact-check articles, reclaim unused items, generate the
    subject line.
Reprocess (draft/in_review/changes_made/ready_to_send/failed -> processing
-> pending_phase2):
    The phase 1 work, started from any settled status.

Each job claims the issue through the workflow guard, runs under its
budget, and on success triggers the next phase over HTTP without waiting
for it. Any unrecoverable error moves the issue to failed. A trigger that
does not win the claim writes nothing, not even a run log.
"""

import logging
from typing import Any, Callable, Dict, Optional

from rq.timeouts import JobTimeoutException

from ..config.settings import SECTIONS, SECTION_LIMIT_KEYS, get_publication_settings
from ..utils.db import get_db
from ..utils.execution_logger import ExecutionLogger
from ..utils.pool import archive_stale_items, reclaim_unbound_items, release_issue_items
from ..utils.workflow import (
    PHASES,
    PHASE_BUDGETS,
    PhaseBudget,
    PhaseTimeout,
    complete_phase,
    fail_issue,
    start_phase,
    trigger_phase,
)
from .article_generation import (
    deactivate_issue_articles,
    generate_articles_for_section,
    generate_subject_line,
)
from .deduplication import deduplicate_issue
from .extraction import extract_full_text_for_issue
from .ingest import ingest_feeds
from .scoring import score_items_for_issue
from .section_assignment import assign_sections, bind_candidates

logger = logging.getLogger(__name__)


class PhaseError(Exception):
    """Unrecoverable condition inside a phase; the issue is failed with this message."""


def _collect_issue_content(issue: Dict[str, Any], budget: PhaseBudget, run_log: ExecutionLogger,
                           oracle, db, fetch: bool) -> Dict[str, Any]:
    issue_id = issue['id']
    publication_id = issue.get('publication_id')
    settings = get_publication_settings(publication_id, db=db)
    counts: Dict[str, Any] = {"errors": []}

    if fetch:
        run_log.info("[Phase 1] Ingesting feeds")
        ingest = ingest_feeds(publication_id, db=db)
        counts["fetched"] = ingest["items_found"]
        counts["ingested"] = ingest["items_ingested"]
        counts["errors"].extend(ingest["errors"])
        budget.check('ingest')

    counts["archived"] = archive_stale_items(settings['archive_after_hours'], db=db)

    counts["bound"] = 0
    for section in SECTIONS:
        bound = bind_candidates(
            issue_id,
            section,
            settings['candidate_pool_size'],
            settings[f'{section}_lookback_hours'],
            db=db,
        )
        counts["bound"] += len(bound)
    run_log.info(f"[Phase 1] Bound {counts['bound']} candidate items")
    budget.check('binding')

    extraction = extract_full_text_for_issue(issue_id, budget=budget, db=db)
    counts["extracted"] = extraction["extracted"]
    counts["errors"].extend(extraction["errors"])
    if not extraction["skipped"]:
        run_log.info(f"[Phase 1] Extracted full text for {extraction['extracted']} of {extraction['candidates']} items")

    counts["scored"] = 0
    counts["unrated"] = 0
    for section in SECTIONS:
        scoring = score_items_for_issue(issue_id, section, publication_id=publication_id,
                                        oracle=oracle, budget=budget, db=db)
        counts["scored"] += scoring["scored"]
        counts["unrated"] += scoring["failed"]
        counts["errors"].extend(scoring["errors"])
    run_log.info(f"[Phase 1] Scored {counts['scored']} items, {counts['unrated']} unrated")
    return counts


def _reset_phase2_output(issue_id: str, run_log: ExecutionLogger, db) -> Dict[str, int]:
    deactivated = deactivate_issue_articles(issue_id, db=db)
    groups_cleared = db.archive_duplicate_groups(issue_id)
    db.set_subject_line(issue_id, None)
    if deactivated or groups_cleared:
        run_log.info(f"[Reset] Deactivated {deactivated} articles, cleared {groups_cleared} duplicate groups")
    return {"deactivated": deactivated, "groups_cleared": groups_cleared}


def _phase1_steps(issue, budget, run_log, oracle, db, fetch=True):
    # A retried or reprocessed issue rebuilds from a clean binding
    issue_id = issue['id']
    reset = _reset_phase2_output(issue_id, run_log, db)
    released = release_issue_items(issue_id, db=db)
    if released["released"]:
        run_log.info(f"[Reset] Released {released['released']} items back to the pool")
    budget.check('reset')

    counts = _collect_issue_content(issue, budget, run_log, oracle, db, fetch)
    counts.update(reset)
    counts["released"] = released["released"]
    counts["errors"] = released["errors"] + counts["errors"]
    return counts


def _phase2_steps(issue, budget, run_log, oracle, db, fetch=True):
    issue_id = issue['id']
    settings = get_publication_settings(issue.get('publication_id'), db=db)
    counts: Dict[str, Any] = {"errors": []}

    # A retry after a failed phase 2 regenerates against the same bindings
    counts.update(_reset_phase2_output(issue_id, run_log, db))

    dedup = deduplicate_issue(issue_id, oracle=oracle, db=db)
    counts["duplicate_groups"] = dedup["groups"]
    counts["duplicates"] = dedup["duplicates"]
    counts["errors"].extend(dedup["errors"])
    run_log.info(f"[Phase 2] {dedup['groups']} duplicate groups, {dedup['duplicates']} items suppressed")
    budget.check('deduplication')

    limits = {section: settings[SECTION_LIMIT_KEYS[section]] for section in SECTIONS}
    assigned = assign_sections(issue_id, limits, db=db)
    counts["assigned"] = {section: len(items) for section, items in assigned.items()}
    budget.check('assignment')

    counts["generated"] = 0
    counts["generation_failed"] = 0
    counts["fact_check_failed"] = 0
    for section in SECTIONS:
        generation = generate_articles_for_section(
            issue_id,
            section,
            assigned[section],
            oracle=oracle,
            instructions=settings[f'{section}_article_instructions'],
            budget=budget,
            db=db,
        )
        counts["generated"] += generation["generated"]
        counts["generation_failed"] += generation["failed"]
        counts["fact_check_failed"] += generation["fact_check_failed"]
        counts["errors"].extend(generation["errors"])
    run_log.info(f"[Phase 2] Generated {counts['generated']} articles, {counts['generation_failed']} failed")

    reclaim = reclaim_unbound_items(issue_id, db=db)
    counts["reclaimed"] = reclaim["reclaimed"]
    counts["errors"].extend(reclaim["errors"])

    active = db.get_articles(issue_id, active_only=True)
    counts["articles"] = len(active)
    if not active:
        raise PhaseError("No articles were generated for this issue")

    counts["subject_line"] = generate_subject_line(issue_id, oracle=oracle, db=db)
    return counts


PHASE_STEPS: Dict[str, Callable[..., Dict[str, Any]]] = {
    'phase1': _phase1_steps,
    'phase2': _phase2_steps,
    'reprocess': _phase1_steps,
}


def run_phase(
    phase: str,
    issue_id: str,
    publication_id: Optional[str] = None,
    oracle=None,
    db=None,
    budget_seconds: Optional[int] = None,
    fetch: bool = True,
) -> Dict[str, Any]:
    """
    Claim the issue, run the phase's steps, and complete, fail or skip.

    Returns:
        {success, message, phase, issue_id, run_id, next_phase,
         next_phase_triggered, conflict, skipped, errors, ...counts}
    """
    db = db or get_db()
    config = PHASES[phase]
    run_log = ExecutionLogger(phase=phase, issue_id=issue_id, db=db, create_record=False)
    run_id = run_log.run_id
    budget_seconds = PHASE_BUDGETS[phase] if budget_seconds is None else budget_seconds

    results: Dict[str, Any] = {
        "success": False,
        "message": "",
        "phase": phase,
        "issue_id": issue_id,
        "run_id": run_id,
        "next_phase": None,
        "next_phase_triggered": False,
        "conflict": False,
        "skipped": False,
        "errors": [],
    }

    claim = start_phase(issue_id, phase, run_id, budget_seconds=budget_seconds, db=db)
    if not claim["started"]:
        results["conflict"] = claim["conflict"]
        results["skipped"] = not claim["conflict"]
        results["status"] = claim["status"]
        results["message"] = (
            f"Issue is already {claim['status']}" if claim["conflict"]
            else f"Nothing to do: issue is {claim['status']}"
        )
        logger.info(f"[{phase}] Issue {issue_id}: {results['message']}")
        return results

    run_log.open_record()
    issue = claim["issue"]
    publication_id = publication_id or issue.get('publication_id')
    budget = PhaseBudget(budget_seconds, phase)
    run_log.info(f"[{phase}] Started for issue {issue_id} (budget {budget_seconds}s)")

    try:
        counts = PHASE_STEPS[phase](issue, budget, run_log, oracle, db, fetch=fetch)
    except (PhaseTimeout, JobTimeoutException) as e:
        reason = str(e) if isinstance(e, PhaseTimeout) else f"Timed out: {phase} job exceeded its {budget_seconds}s budget"
        return _fail(results, run_log, issue_id, run_id, reason, db)
    except Exception as e:
        logger.exception(f"[{phase}] Issue {issue_id} failed")
        return _fail(results, run_log, issue_id, run_id, f"{phase} failed: {e}", db)

    errors = counts.pop("errors", [])
    results.update(counts)
    results["errors"].extend(errors)
    run_log.update_summary({k: v for k, v in counts.items() if isinstance(v, (int, float, str, dict))})

    if not complete_phase(issue_id, phase, run_id, db=db):
        results["message"] = "Lease lost before completion; issue state left unchanged"
        run_log.warn(f"[{phase}] {results['message']}")
        run_log.complete('error', error_message=results["message"])
        return results

    results["success"] = True
    results["status"] = config['completes_to']
    results["message"] = f"{phase} complete: issue is {config['completes_to']}"

    next_phase = config['next_phase']
    if next_phase:
        results["next_phase"] = next_phase
        results["next_phase_triggered"] = trigger_phase(next_phase, issue_id, publication_id)

    run_log.info(f"[{phase}] {results['message']}")
    run_log.complete('success')
    return results


def _fail(results, run_log, issue_id, run_id, reason, db) -> Dict[str, Any]:
    fail_issue(issue_id, reason, run_id=run_id, db=db)
    results["message"] = reason
    results["status"] = 'failed'
    results["errors"].append(reason)
    run_log.error(f"[{results['phase']}] {reason}")
    run_log.complete('error', error_message=reason)
    return results


def run_phase1(issue_id: str, publication_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
    """RQ job: phase 1 for an issue."""
    return run_phase('phase1', issue_id, publication_id, **kwargs)


def run_phase2(issue_id: str, publication_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
    """RQ job: phase 2 for an issue."""
    return run_phase('phase2', issue_id, publication_id, **kwargs)


def run_reprocess(issue_id: str, publication_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
    """RQ job: reset an issue's content and rebuild it from phase 1."""
    return run_phase('reprocess', issue_id, publication_id, **kwargs)


PHASE_JOBS = {
    'phase1': run_phase1,
    'phase2': run_phase2,
    'reprocess': run_reprocess,
}
