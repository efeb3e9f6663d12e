"""Newsdesk Background Jobs

ingest_feeds - Fetch feeds into the content pool
run_phase1 - Ingest, bind candidates, score
run_phase2 - Deduplicate, assign sections, generate articles, reclaim
run_reprocess - Reset an issue and rebuild it from phase 1
recover_stuck_issues - Fail issues whose phase lease expired

Note: Jobs are imported lazily by trigger.py and worker.py.
"""
