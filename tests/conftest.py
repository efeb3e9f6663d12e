import copy
import threading
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from newsdesk.utils import db as db_module
from newsdesk.utils import oracle as oracle_module
from newsdesk.utils import prompts as prompts_module
from newsdesk.utils.db import SECTION_AFFINITIES


def utcnow():
    return datetime.now(timezone.utc)


class FakeDatabase:
    """In-memory stand-in for DatabaseClient with the same method contracts."""

    def __init__(self):
        self.items = {}
        self.ratings = {}
        self.groups = []
        self.articles = []
        self.issues = {}
        self.feeds = []
        self.criteria = {}
        self.settings = {}
        self.execution_logs = {}
        self.sent_items = []
        self.fail_bind_for = set()
        self._next_id = 1
        self._lock = threading.Lock()

    def _new_id(self):
        with self._lock:
            value = self._next_id
            self._next_id += 1
        return str(value)

    # helpers for tests

    def add_item(self, item_id, section='primary', title=None, body=None, published_at=None,
                 issue_id=None, full_text=None, archived_at=None):
        self.items[item_id] = {
            'id': item_id,
            'feed_id': None,
            'section': section,
            'title': title if title is not None else f"Story {item_id}",
            'link': f"https://example.com/{item_id}",
            'body': body if body is not None else f"Unique body text for {item_id}",
            'full_text': full_text,
            'extraction_status': None,
            'image_url': None,
            'published_at': published_at or utcnow() - timedelta(hours=1),
            'ingested_at': utcnow(),
            'issue_id': issue_id,
            'bound_at': utcnow() if issue_id else None,
            'archived_at': archived_at,
        }
        return self.items[item_id]

    def add_issue(self, status='draft', publication_id='pub-1', issue_date=None, **fields):
        issue_id = fields.pop('id', None) or str(uuid.uuid4())
        self.issues[issue_id] = {
            'id': issue_id,
            'publication_id': publication_id,
            'issue_date': issue_date or date.today(),
            'status': status,
            'subject_line': None,
            'failure_reason': None,
            'lease_holder': None,
            'lease_expires_at': None,
            'status_changed_at': utcnow(),
            'processing_started_at': None,
            'phase2_started_at': None,
            'review_started_at': None,
            'changes_made_at': None,
            'approved_at': None,
            'sent_at': None,
            'failed_at': None,
            **fields,
        }
        return self.issues[issue_id]

    def snapshot(self):
        return copy.deepcopy({
            'items': self.items,
            'ratings': self.ratings,
            'groups': self.groups,
            'articles': self.articles,
            'issues': self.issues,
        })

    # DatabaseClient interface

    def ping(self):
        return True

    def upsert_item(self, item):
        if item['id'] in self.items:
            return False
        row = {
            'feed_id': None,
            'section': 'primary',
            'body': '',
            'full_text': None,
            'extraction_status': None,
            'image_url': None,
            'published_at': None,
            **item,
        }
        row.update({'ingested_at': utcnow(), 'issue_id': None, 'bound_at': None, 'archived_at': None})
        self.items[item['id']] = row
        return True

    def get_item(self, item_id):
        item = self.items.get(item_id)
        return dict(item) if item else None

    def get_pool_items(self, section, since, limit):
        affinities = SECTION_AFFINITIES[section]
        rows = [
            i for i in self.items.values()
            if i['issue_id'] is None and i['archived_at'] is None and i['section'] in affinities
            and (i['published_at'] is None or i['published_at'] >= since)
        ]
        rows.sort(key=lambda i: i['id'])
        rows.sort(key=lambda i: i['published_at'] or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return [dict(i) for i in rows[:limit]]

    def get_issue_items(self, issue_id, section=None):
        rows = [i for i in self.items.values() if i['issue_id'] == issue_id]
        if section:
            rows = [i for i in rows if i['section'] in SECTION_AFFINITIES[section]]
        return [dict(i) for i in sorted(rows, key=lambda i: i['id'])]

    def bind_item(self, item_id, issue_id):
        if item_id in self.fail_bind_for:
            raise RuntimeError(f"connection reset binding {item_id}")
        item = self.items.get(item_id)
        if not item or item['issue_id'] is not None or item['archived_at'] is not None:
            return False
        item['issue_id'] = issue_id
        item['bound_at'] = utcnow()
        return True

    def unbind_item(self, item_id, issue_id):
        item = self.items.get(item_id)
        if not item or item['issue_id'] != issue_id:
            return False
        item['issue_id'] = None
        item['bound_at'] = None
        return True

    def set_item_extraction(self, item_id, status, full_text=None):
        item = self.items.get(item_id)
        if not item:
            return False
        item['extraction_status'] = status
        if item['full_text'] is None:
            item['full_text'] = full_text
        return True

    def get_stale_pool_item_ids(self, cutoff):
        return [
            i['id'] for i in self.items.values()
            if i['issue_id'] is None and i['archived_at'] is None
            and (i['published_at'] or i['ingested_at']) < cutoff
        ]

    def archive_item(self, item_id):
        item = self.items.get(item_id)
        if not item or item['issue_id'] is not None or item['archived_at'] is not None:
            return False
        item['archived_at'] = utcnow()
        return True

    def get_ratings(self, item_ids):
        return {i: dict(self.ratings[i]) for i in item_ids if i in self.ratings}

    def upsert_rating(self, item_id, criteria, total_score):
        with self._lock:
            self.ratings[item_id] = {
                'item_id': item_id,
                'criteria': copy.deepcopy(criteria),
                'total_score': total_score,
                'rated_at': utcnow(),
            }

    def get_duplicate_groups(self, issue_id):
        return [
            copy.deepcopy(g) for g in self.groups
            if g['issue_id'] == issue_id and g['archived_at'] is None
        ]

    def insert_duplicate_group(self, issue_id, group):
        group_id = self._new_id()
        self.groups.append({
            'id': group_id,
            'issue_id': issue_id,
            'topic_signature': group['topic_signature'],
            'primary_item_id': group.get('primary_item_id'),
            'suppressed_item_ids': list(group.get('suppressed_item_ids', [])),
            'detection_method': group.get('detection_method'),
            'explanation': group.get('explanation'),
            'archived_at': None,
        })
        return group_id

    def archive_duplicate_groups(self, issue_id):
        count = 0
        for g in self.groups:
            if g['issue_id'] == issue_id and g['archived_at'] is None:
                g['archived_at'] = utcnow()
                count += 1
        return count

    def get_recently_sent_items(self, publication_id, since_date, exclude_issue_id):
        return [dict(row) for row in self.sent_items]

    def get_articles(self, issue_id, section=None, active_only=True):
        rows = [a for a in self.articles if a['issue_id'] == issue_id]
        if section:
            rows = [a for a in rows if a['section'] == section]
        if active_only:
            rows = [a for a in rows if a['is_active']]
        return [dict(a) for a in sorted(rows, key=lambda a: (a['section'], a['rank'] or 0, a['id']))]

    def insert_article(self, article):
        with self._lock:
            for a in self.articles:
                if a['issue_id'] == article['issue_id'] and a['item_id'] == article['item_id'] and a['is_active']:
                    return None
            article_id = str(len(self.articles) + 1)
            self.articles.append({
                'id': article_id,
                'word_count': 0,
                'rank': None,
                'fact_check_score': None,
                'fact_check_details': None,
                **article,
                'is_active': True,
                'created_at': utcnow(),
                'deactivated_at': None,
            })
            return article_id

    def deactivate_articles(self, issue_id):
        count = 0
        for a in self.articles:
            if a['issue_id'] == issue_id and a['is_active']:
                a['is_active'] = False
                a['deactivated_at'] = utcnow()
                count += 1
        return count

    def create_issue(self, publication_id, issue_date):
        for issue in self.issues.values():
            if issue['publication_id'] == publication_id and issue['issue_date'] == issue_date \
                    and issue['status'] != 'sent':
                return None
        return dict(self.add_issue(publication_id=publication_id, issue_date=issue_date))

    def get_issue(self, issue_id):
        issue = self.issues.get(issue_id)
        return dict(issue) if issue else None

    def claim_issue(self, issue_id, allowed_statuses, busy_status, lease_holder, lease_seconds,
                    audit_column=None):
        with self._lock:
            issue = self.issues.get(issue_id)
            if not issue or issue['status'] not in allowed_statuses:
                return None
            now = utcnow()
            issue.update({
                'status': busy_status,
                'status_changed_at': now,
                'lease_holder': lease_holder,
                'lease_expires_at': now + timedelta(seconds=lease_seconds),
                'failure_reason': None,
            })
            if audit_column:
                issue[audit_column] = now
            return dict(issue)

    def transition_issue(self, issue_id, to_status, lease_holder=None, expected_statuses=None,
                         audit_column=None, failure_reason=None):
        with self._lock:
            issue = self.issues.get(issue_id)
            if not issue:
                return False
            if lease_holder is not None and issue['lease_holder'] != lease_holder:
                return False
            if expected_statuses is not None and issue['status'] not in expected_statuses:
                return False
            now = utcnow()
            issue.update({
                'status': to_status,
                'status_changed_at': now,
                'failure_reason': failure_reason,
                'lease_holder': None,
                'lease_expires_at': None,
            })
            if audit_column:
                issue[audit_column] = now
            return True

    def set_subject_line(self, issue_id, subject_line):
        self.issues[issue_id]['subject_line'] = subject_line

    def get_expired_leases(self, now=None):
        now = now or utcnow()
        return [
            dict(i) for i in self.issues.values()
            if i['lease_holder'] is not None and i['lease_expires_at'] < now
        ]

    def get_active_feeds(self, publication_id, section=None):
        rows = [f for f in self.feeds if f['publication_id'] == publication_id and f.get('active', True)]
        if section:
            rows = [f for f in rows if f.get(f'use_for_{section}')]
        return [dict(f) for f in rows]

    def get_criteria(self, publication_id, section):
        return [dict(c) for c in self.criteria.get((publication_id, section), [])]

    def get_publication_settings(self, publication_id):
        return dict(self.settings.get(publication_id, {}))

    def get_prompt_by_key(self, prompt_key):
        return None

    def get_all_prompts(self):
        return []

    def create_execution_log(self, run_id, phase, issue_id, started_at):
        log_id = self._new_id()
        self.execution_logs[log_id] = {
            'run_id': run_id,
            'phase': phase,
            'issue_id': issue_id,
            'started_at': started_at,
            'status': 'running',
        }
        return log_id

    def update_execution_log(self, log_id, summary, entries, status=None, completed_at=None,
                             duration_ms=None, error_message=None):
        log = self.execution_logs[log_id]
        log.update({'summary': dict(summary), 'log_entries': list(entries)})
        if status:
            log['status'] = status
        if completed_at:
            log['completed_at'] = completed_at
        if duration_ms is not None:
            log['duration_ms'] = duration_ms
        if error_message:
            log['error_message'] = error_message


class FakeOracle:
    """
    Scripted oracle. Items are recognised by their title, which is the first
    line of the text the pipeline sends.
    """

    def __init__(self):
        self.scores_by_title = {}
        self.default_score = 5
        self.fail_score_titles = set()
        self.score_responses = {}
        self.cluster_response = {'groups': []}
        self.cluster_error = None
        self.fail_generate_titles = set()
        self.generate_responses = {}
        self.subject = "Today's top stories"
        self.subject_error = None
        self.fact_check_response = {'score': 9, 'details': 'Claims match the source'}
        self.fact_check_error = None
        self.fact_check_inputs = []
        self.calls = {'score': 0, 'cluster': 0, 'generate': 0, 'fact_check': 0, 'subject_line': 0}
        self.cluster_inputs = []
        self._lock = threading.Lock()

    def _count(self, name):
        with self._lock:
            self.calls[name] += 1

    @staticmethod
    def _title(text):
        return text.split('\n', 1)[0].strip()

    def score(self, item_text, criteria):
        self._count('score')
        title = self._title(item_text)
        if title in self.fail_score_titles:
            raise RuntimeError(f"oracle unavailable for {title}")
        if title in self.score_responses:
            return self.score_responses[title]
        value = self.scores_by_title.get(title, self.default_score)
        return {'scores': [{'score': value, 'reason': f"{c['name']} ok"} for c in criteria]}

    def cluster(self, summaries):
        self._count('cluster')
        self.cluster_inputs.append(list(summaries))
        if self.cluster_error:
            raise self.cluster_error
        return self.cluster_response

    def generate(self, item_text, instructions, prompt_key=None):
        self._count('generate')
        title = self._title(item_text)
        if title in self.fail_generate_titles:
            raise RuntimeError(f"generation failed for {title}")
        if title in self.generate_responses:
            return self.generate_responses[title]
        return {'headline': f"Headline: {title}", 'body': f"An article about {title} in five words"}

    def fact_check(self, article_text, source_text):
        self._count('fact_check')
        with self._lock:
            self.fact_check_inputs.append((article_text, self._title(source_text)))
        if self.fact_check_error:
            raise self.fact_check_error
        return self.fact_check_response

    def subject_line(self, headlines):
        self._count('subject_line')
        if self.subject_error:
            raise self.subject_error
        return self.subject


@pytest.fixture(autouse=True)
def no_extraction_key(monkeypatch):
    """Phase runs never reach the scraping service unless a test opts in."""
    monkeypatch.delenv('FIRECRAWL_API_KEY', raising=False)


@pytest.fixture
def fake_db(monkeypatch):
    database = FakeDatabase()
    monkeypatch.setattr(db_module, '_db_client', database)
    monkeypatch.setattr(prompts_module, '_prompt_cache', {})
    return database


@pytest.fixture
def fake_oracle(monkeypatch):
    oracle = FakeOracle()
    monkeypatch.setattr(oracle_module, '_oracle', oracle)
    return oracle


@pytest.fixture
def triggered(monkeypatch):
    """Capture outgoing phase triggers instead of making HTTP calls."""
    from newsdesk.utils import workflow

    calls = []

    def fake_trigger(phase, issue_id, publication_id=None):
        calls.append({'phase': phase, 'issue_id': issue_id, 'publication_id': publication_id})
        return True

    monkeypatch.setattr(workflow, 'trigger_phase', fake_trigger)
    from newsdesk.jobs import phases
    monkeypatch.setattr(phases, 'trigger_phase', fake_trigger)
    return calls
