"""
PostgreSQL Database Client for Newsdesk Workers
Durable store for the content pool, ratings, duplicate groups, articles and issues

Every write that touches an item's issue binding is a single-row UPDATE so
concurrent phases resolve per item (last writer wins).
"""

import os
import json
import logging
import time
from typing import Optional, Dict, Any, List, Iterable
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
import psycopg2
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)

# Retry configuration for SSL connection failures
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1

SECTION_AFFINITIES = {
    'primary': ('primary', 'both'),
    'secondary': ('secondary', 'both'),
}


class DatabaseClient:
    """PostgreSQL database client for Newsdesk workers"""

    def __init__(self):
        self.database_url = os.environ.get('DATABASE_URL')
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

    def _create_connection(self):
        """Create a new database connection with proper SSL settings"""
        # Use fresh connection each time to avoid stale SSL sessions
        sslmode = 'require' if os.environ.get('NODE_ENV') == 'production' else 'prefer'

        return psycopg2.connect(
            self.database_url,
            cursor_factory=RealDictCursor,
            sslmode=sslmode,
            connect_timeout=10,
            options='-c statement_timeout=30000'
        )

    def _connect(self):
        """Open a connection, retrying OperationalError/InterfaceError with linear backoff"""
        last_error = None

        for attempt in range(MAX_RETRIES):
            try:
                return self._create_connection()
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                last_error = e
                logger.warning(f"Database connection error (attempt {attempt + 1}/{MAX_RETRIES}): {e}")

                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_DELAY_SECONDS * (attempt + 1))

        logger.error(f"Database connection failed after {MAX_RETRIES} retries: {last_error}")
        raise last_error

    @contextmanager
    def get_cursor(self):
        """
        Context manager for a database cursor.

        Only opening the connection is retried. An error raised by the
        statements themselves rolls back and propagates with its own type.
        """
        conn = self._connect()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception as e:
            try:
                conn.rollback()
            except psycopg2.Error as rollback_error:
                logger.warning(f"Rollback failed: {rollback_error}")
            logger.error(f"Database error: {e}")
            raise
        finally:
            cursor.close()
            conn.close()

    def ping(self) -> bool:
        with self.get_cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        return True

    # =========================================================================
    # CONTENT POOL (ITEMS)
    # =========================================================================

    def upsert_item(self, item: Dict[str, Any]) -> bool:
        """Insert an item if its id is new. Returns True when a row was created."""
        sql = """
            INSERT INTO items (
                id, feed_id, section, title, link, body, full_text,
                image_url, published_at, ingested_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (id) DO NOTHING
            RETURNING id
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (
                item['id'],
                item.get('feed_id'),
                item.get('section', 'primary'),
                item.get('title', ''),
                item.get('link', ''),
                item.get('body', ''),
                item.get('full_text'),
                item.get('image_url'),
                item.get('published_at'),
            ))
            return cursor.fetchone() is not None

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        with self.get_cursor() as cursor:
            cursor.execute("SELECT * FROM items WHERE id = %s", (item_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_pool_items(self, section: str, since: datetime, limit: int) -> List[Dict[str, Any]]:
        """Unbound, unarchived items whose affinity covers the section, newest first"""
        sql = """
            SELECT * FROM items
            WHERE issue_id IS NULL
              AND archived_at IS NULL
              AND section = ANY(%s)
              AND (published_at IS NULL OR published_at >= %s)
            ORDER BY published_at DESC NULLS LAST, id
            LIMIT %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (list(SECTION_AFFINITIES[section]), since, limit))
            return [dict(row) for row in cursor.fetchall()]

    def get_issue_items(self, issue_id: str, section: Optional[str] = None) -> List[Dict[str, Any]]:
        """Items currently bound to an issue, optionally limited to a section's affinity"""
        if section:
            sql = "SELECT * FROM items WHERE issue_id = %s AND section = ANY(%s) ORDER BY id"
            params = (issue_id, list(SECTION_AFFINITIES[section]))
        else:
            sql = "SELECT * FROM items WHERE issue_id = %s ORDER BY id"
            params = (issue_id,)
        with self.get_cursor() as cursor:
            cursor.execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def bind_item(self, item_id: str, issue_id: str) -> bool:
        """Bind a single pool item to an issue. False if it was already bound or archived."""
        sql = """
            UPDATE items SET issue_id = %s, bound_at = NOW()
            WHERE id = %s AND issue_id IS NULL AND archived_at IS NULL
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id, item_id))
            return cursor.rowcount == 1

    def unbind_item(self, item_id: str, issue_id: str) -> bool:
        """Return a single item to the pool if it is still bound to this issue"""
        sql = "UPDATE items SET issue_id = NULL, bound_at = NULL WHERE id = %s AND issue_id = %s"
        with self.get_cursor() as cursor:
            cursor.execute(sql, (item_id, issue_id))
            return cursor.rowcount == 1

    def set_item_extraction(self, item_id: str, status: str, full_text: Optional[str] = None) -> bool:
        """Record a full-text extraction attempt. Feed-supplied full_text is never overwritten."""
        sql = """
            UPDATE items
            SET extraction_status = %s,
                full_text = COALESCE(full_text, %s)
            WHERE id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (status, full_text, item_id))
            return cursor.rowcount == 1

    def get_stale_pool_item_ids(self, cutoff: datetime) -> List[str]:
        sql = """
            SELECT id FROM items
            WHERE issue_id IS NULL AND archived_at IS NULL
              AND COALESCE(published_at, ingested_at) < %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (cutoff,))
            return [row['id'] for row in cursor.fetchall()]

    def archive_item(self, item_id: str) -> bool:
        sql = "UPDATE items SET archived_at = NOW() WHERE id = %s AND issue_id IS NULL AND archived_at IS NULL"
        with self.get_cursor() as cursor:
            cursor.execute(sql, (item_id,))
            return cursor.rowcount == 1

    # =========================================================================
    # RATINGS
    # =========================================================================

    def get_ratings(self, item_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = list(item_ids)
        if not ids:
            return {}
        with self.get_cursor() as cursor:
            cursor.execute("SELECT * FROM ratings WHERE item_id = ANY(%s)", (ids,))
            return {row['item_id']: dict(row) for row in cursor.fetchall()}

    def upsert_rating(self, item_id: str, criteria: List[Dict[str, Any]], total_score: float):
        sql = """
            INSERT INTO ratings (item_id, criteria, total_score, rated_at)
            VALUES (%s, %s, %s, NOW())
            ON CONFLICT (item_id) DO UPDATE
            SET criteria = EXCLUDED.criteria,
                total_score = EXCLUDED.total_score,
                rated_at = EXCLUDED.rated_at
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (item_id, json.dumps(criteria), total_score))

    # =========================================================================
    # DUPLICATE GROUPS
    # =========================================================================

    def get_duplicate_groups(self, issue_id: str) -> List[Dict[str, Any]]:
        sql = """
            SELECT
                dg.id,
                dg.issue_id,
                dg.topic_signature,
                dg.primary_item_id,
                dg.detection_method,
                dg.explanation,
                COALESCE(
                    array_agg(dm.item_id) FILTER (WHERE dm.item_id IS NOT NULL),
                    '{}'
                ) AS suppressed_item_ids
            FROM duplicate_groups dg
            LEFT JOIN duplicate_members dm ON dm.group_id = dg.id
            WHERE dg.issue_id = %s AND dg.archived_at IS NULL
            GROUP BY dg.id
            ORDER BY dg.id
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id,))
            return [dict(row) for row in cursor.fetchall()]

    def insert_duplicate_group(self, issue_id: str, group: Dict[str, Any]) -> str:
        """Store a group and its suppressed members in one transaction"""
        group_sql = """
            INSERT INTO duplicate_groups (
                issue_id, topic_signature, primary_item_id, detection_method, explanation
            ) VALUES (%s, %s, %s, %s, %s)
            RETURNING id
        """
        member_sql = """
            INSERT INTO duplicate_members (group_id, item_id)
            VALUES (%s, %s)
            ON CONFLICT DO NOTHING
        """
        with self.get_cursor() as cursor:
            cursor.execute(group_sql, (
                issue_id,
                group['topic_signature'],
                group.get('primary_item_id'),
                group.get('detection_method'),
                group.get('explanation'),
            ))
            group_id = cursor.fetchone()['id']
            for item_id in group.get('suppressed_item_ids', []):
                cursor.execute(member_sql, (group_id, item_id))
            return str(group_id)

    def archive_duplicate_groups(self, issue_id: str) -> int:
        sql = "UPDATE duplicate_groups SET archived_at = NOW() WHERE issue_id = %s AND archived_at IS NULL"
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id,))
            return cursor.rowcount

    def get_recently_sent_items(self, publication_id: str, since_date, exclude_issue_id: str) -> List[Dict[str, Any]]:
        """Items behind active articles of issues sent on or after since_date"""
        sql = """
            SELECT DISTINCT i.id, i.title, i.body, i.full_text
            FROM articles a
            JOIN issues s ON s.id = a.issue_id
            JOIN items i ON i.id = a.item_id
            WHERE s.publication_id = %s
              AND s.status = 'sent'
              AND s.issue_date >= %s
              AND s.id <> %s
              AND a.is_active = true
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (publication_id, since_date, exclude_issue_id))
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # ARTICLES
    # =========================================================================

    def get_articles(self, issue_id: str, section: Optional[str] = None,
                     active_only: bool = True) -> List[Dict[str, Any]]:
        conditions = ["issue_id = %s"]
        params: List[Any] = [issue_id]
        if section:
            conditions.append("section = %s")
            params.append(section)
        if active_only:
            conditions.append("is_active = true")
        sql = f"""
            SELECT * FROM articles
            WHERE {' AND '.join(conditions)}
            ORDER BY section, rank NULLS LAST, id
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, tuple(params))
            return [dict(row) for row in cursor.fetchall()]

    def insert_article(self, article: Dict[str, Any]) -> Optional[str]:
        """Insert an active article. None if the item already has an active article in the issue."""
        sql = """
            INSERT INTO articles (
                issue_id, item_id, section, headline, body, word_count, rank,
                fact_check_score, fact_check_details, is_active
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, true)
            ON CONFLICT (issue_id, item_id) WHERE is_active DO NOTHING
            RETURNING id
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (
                article['issue_id'],
                article['item_id'],
                article['section'],
                article['headline'],
                article['body'],
                article.get('word_count', 0),
                article.get('rank'),
                article.get('fact_check_score'),
                article.get('fact_check_details'),
            ))
            row = cursor.fetchone()
            return str(row['id']) if row else None

    def deactivate_articles(self, issue_id: str) -> int:
        sql = """
            UPDATE articles SET is_active = false, deactivated_at = NOW()
            WHERE issue_id = %s AND is_active = true
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id,))
            return cursor.rowcount

    # =========================================================================
    # ISSUES
    # =========================================================================

    def create_issue(self, publication_id: str, issue_date) -> Optional[Dict[str, Any]]:
        """Create a draft issue. None if a non-sent issue already exists for the date."""
        sql = """
            INSERT INTO issues (publication_id, issue_date, status, status_changed_at)
            VALUES (%s, %s, 'draft', NOW())
            ON CONFLICT (publication_id, issue_date) WHERE status <> 'sent' DO NOTHING
            RETURNING *
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (publication_id, issue_date))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_issue(self, issue_id: str) -> Optional[Dict[str, Any]]:
        with self.get_cursor() as cursor:
            cursor.execute("SELECT * FROM issues WHERE id = %s", (issue_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def claim_issue(self, issue_id: str, allowed_statuses: List[str], busy_status: str,
                    lease_holder: str, lease_seconds: int,
                    audit_column: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Compare-and-set the issue into its busy status and take the lease.

        Returns the updated row, or None when the status was not one of
        allowed_statuses (another run got there first or the trigger is stale).
        """
        audit_sql = f", {audit_column} = NOW()" if audit_column else ""
        sql = f"""
            UPDATE issues
            SET status = %s,
                status_changed_at = NOW(),
                lease_holder = %s,
                lease_expires_at = NOW() + (%s * INTERVAL '1 second'),
                failure_reason = NULL{audit_sql}
            WHERE id = %s AND status = ANY(%s)
            RETURNING *
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (busy_status, lease_holder, lease_seconds, issue_id, list(allowed_statuses)))
            row = cursor.fetchone()
            return dict(row) if row else None

    def transition_issue(self, issue_id: str, to_status: str,
                         lease_holder: Optional[str] = None,
                         expected_statuses: Optional[List[str]] = None,
                         audit_column: Optional[str] = None,
                         failure_reason: Optional[str] = None) -> bool:
        """
        Move an issue to to_status and release any lease.

        With lease_holder the update only applies while that holder still owns
        the lease; with expected_statuses only while the status is one of them.
        """
        audit_sql = f", {audit_column} = NOW()" if audit_column else ""
        conditions = ["id = %s"]
        params: List[Any] = [to_status, failure_reason, issue_id]
        if lease_holder is not None:
            conditions.append("lease_holder = %s")
            params.append(lease_holder)
        if expected_statuses is not None:
            conditions.append("status = ANY(%s)")
            params.append(list(expected_statuses))
        sql = f"""
            UPDATE issues
            SET status = %s,
                status_changed_at = NOW(),
                failure_reason = %s,
                lease_holder = NULL,
                lease_expires_at = NULL{audit_sql}
            WHERE {' AND '.join(conditions)}
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, tuple(params))
            return cursor.rowcount == 1

    def set_subject_line(self, issue_id: str, subject_line: Optional[str]):
        with self.get_cursor() as cursor:
            cursor.execute("UPDATE issues SET subject_line = %s WHERE id = %s", (subject_line, issue_id))

    def get_expired_leases(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        sql = """
            SELECT * FROM issues
            WHERE lease_holder IS NOT NULL AND lease_expires_at < %s
            ORDER BY lease_expires_at
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (now,))
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # FEEDS, CRITERIA, SETTINGS
    # =========================================================================

    def get_active_feeds(self, publication_id: str, section: Optional[str] = None) -> List[Dict[str, Any]]:
        conditions = ["publication_id = %s", "active = true"]
        if section == 'primary':
            conditions.append("use_for_primary = true")
        elif section == 'secondary':
            conditions.append("use_for_secondary = true")
        sql = f"SELECT * FROM feeds WHERE {' AND '.join(conditions)} ORDER BY name"
        with self.get_cursor() as cursor:
            cursor.execute(sql, (publication_id,))
            return [dict(row) for row in cursor.fetchall()]

    def get_criteria(self, publication_id: str, section: str) -> List[Dict[str, Any]]:
        sql = """
            SELECT criteria_number, name, prompt, weight
            FROM article_criteria
            WHERE publication_id = %s AND section = %s AND is_active = true
            ORDER BY criteria_number
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (publication_id, section))
            return [dict(row) for row in cursor.fetchall()]

    def get_publication_settings(self, publication_id: str) -> Dict[str, str]:
        with self.get_cursor() as cursor:
            cursor.execute(
                "SELECT key, value FROM publication_settings WHERE publication_id = %s",
                (publication_id,)
            )
            return {row['key']: row['value'] for row in cursor.fetchall()}

    # =========================================================================
    # PROMPT QUERIES
    # =========================================================================

    def get_prompt_by_key(self, prompt_key: str) -> Optional[Dict[str, Any]]:
        """
        Get a prompt by its key with current content

        Returns:
            {id, prompt_key, name, model, temperature, is_active, content, current_version}
        """
        sql = """
            SELECT
                sp.id,
                sp.prompt_key,
                sp.name,
                sp.model,
                sp.temperature,
                sp.is_active,
                spv.content,
                spv.version as current_version
            FROM system_prompts sp
            LEFT JOIN system_prompt_versions spv ON sp.id = spv.prompt_id AND spv.is_current = true
            WHERE sp.prompt_key = %s AND sp.is_active = true
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (prompt_key,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_all_prompts(self) -> List[Dict[str, Any]]:
        """Get all active prompts"""
        sql = """
            SELECT sp.prompt_key, sp.model, sp.temperature, spv.content
            FROM system_prompts sp
            LEFT JOIN system_prompt_versions spv ON sp.id = spv.prompt_id AND spv.is_current = true
            WHERE sp.is_active = true
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql)
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # EXECUTION LOGS
    # =========================================================================

    def create_execution_log(self, run_id: str, phase: str, issue_id: Optional[str],
                             started_at: datetime) -> Optional[str]:
        sql = """
            INSERT INTO execution_logs (run_id, phase, issue_id, started_at, status, summary, log_entries)
            VALUES (%s, %s, %s, %s, 'running', '{}', '[]')
            RETURNING id
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (run_id, phase, issue_id, started_at))
            row = cursor.fetchone()
            return str(row['id']) if row else None

    def update_execution_log(self, log_id: str, summary: Dict[str, Any], entries: List[Dict[str, Any]],
                             status: Optional[str] = None, completed_at: Optional[datetime] = None,
                             duration_ms: Optional[int] = None, error_message: Optional[str] = None):
        sql = """
            UPDATE execution_logs SET
                summary = %s,
                log_entries = %s,
                status = COALESCE(%s, status),
                completed_at = COALESCE(%s, completed_at),
                duration_ms = COALESCE(%s, duration_ms),
                error_message = COALESCE(%s, error_message)
            WHERE id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (
                json.dumps(summary, default=str),
                json.dumps(entries, default=str),
                status,
                completed_at,
                duration_ms,
                error_message,
                log_id,
            ))


# Singleton instance
_db_client: Optional[DatabaseClient] = None


def get_db() -> DatabaseClient:
    """Get or create the database client singleton"""
    global _db_client
    if _db_client is None:
        _db_client = DatabaseClient()
    return _db_client
