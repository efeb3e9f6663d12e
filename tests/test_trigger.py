import pytest

from newsdesk import trigger
from newsdesk.jobs.phases import run_phase1, run_phase2


class FakeJob:
    def __init__(self, job_id):
        self.id = job_id


class FakeQueue:
    def __init__(self):
        self.enqueued = []

    def enqueue(self, func, **kwargs):
        self.enqueued.append((func, kwargs))
        return FakeJob(f'job-{len(self.enqueued)}')


@pytest.fixture
def queue(monkeypatch):
    fake_queue = FakeQueue()
    monkeypatch.setattr(trigger, 'get_queue', lambda name: fake_queue)
    return fake_queue


@pytest.fixture
def client(fake_db, queue, monkeypatch):
    monkeypatch.setattr(trigger, 'TRIGGER_SECRET', 'secret')
    trigger.app.config['TESTING'] = True
    return trigger.app.test_client()


AUTH = {'Authorization': 'Bearer secret'}


def test_requests_without_token_are_rejected(client) -> None:
    response = client.post('/phases/phase1', json={'issue_id': 'x'})
    assert response.status_code == 401
    response = client.post('/phases/phase1', json={'issue_id': 'x'}, headers={'Authorization': 'Bearer nope'})
    assert response.status_code == 401


def test_health_reports_redis_state(client, monkeypatch) -> None:
    class DeadRedis:
        def ping(self):
            raise ConnectionError('refused')

    monkeypatch.setattr(trigger, 'get_redis_connection', lambda: DeadRedis())

    response = client.get('/health')

    assert response.status_code == 200
    data = response.get_json()
    assert data['redis'] == 'error: refused'
    assert data['phases'] == ['phase1', 'phase2', 'reprocess']


def test_phase_trigger_enqueues_job(client, fake_db, queue) -> None:
    issue = fake_db.add_issue(status='draft')

    response = client.post('/phases/phase1', json={'issue_id': issue['id']}, headers=AUTH)

    assert response.status_code == 202
    data = response.get_json()
    assert data['job_id'] == 'job-1'
    assert data['next_phase'] == 'phase2'
    func, kwargs = queue.enqueued[0]
    assert func is run_phase1
    assert kwargs == {'issue_id': issue['id'], 'publication_id': 'pub-1', 'job_timeout': 1800}


def test_phase_trigger_conflict_enqueues_nothing(client, fake_db, queue) -> None:
    issue = fake_db.add_issue(status='processing', lease_holder='run-a')
    before = fake_db.snapshot()

    response = client.post('/phases/phase1', json={'issue_id': issue['id']}, headers=AUTH)

    assert response.status_code == 409
    data = response.get_json()
    assert data['conflict'] is True
    assert data['status'] == 'processing'
    assert queue.enqueued == []
    assert fake_db.snapshot() == before


def test_stale_phase_trigger_is_acknowledged(client, fake_db, queue) -> None:
    issue = fake_db.add_issue(status='in_review')

    response = client.post('/phases/phase2', json={'issue_id': issue['id']}, headers=AUTH)

    assert response.status_code == 200
    assert response.get_json()['skipped'] is True
    assert queue.enqueued == []


def test_phase2_trigger_accepted_for_failed_issue(client, fake_db, queue) -> None:
    issue = fake_db.add_issue(status='failed', failure_reason='phase2 failed: pool update failed')

    response = client.post('/phases/phase2', json={'issue_id': issue['id']}, headers=AUTH)

    assert response.status_code == 202
    func, kwargs = queue.enqueued[0]
    assert func is run_phase2
    assert kwargs['issue_id'] == issue['id']


def test_phase_trigger_validation(client, fake_db) -> None:
    assert client.post('/phases/phase7', json={'issue_id': 'x'}, headers=AUTH).status_code == 400
    assert client.post('/phases/phase1', json={}, headers=AUTH).status_code == 400
    assert client.post('/phases/phase1', json={'issue_id': 'missing'}, headers=AUTH).status_code == 404


def test_create_issue_and_duplicate_date(client, fake_db) -> None:
    body = {'publication_id': 'pub-9', 'issue_date': '2026-03-10'}

    created = client.post('/issues', json=body, headers=AUTH)
    assert created.status_code == 201
    issue = created.get_json()['issue']
    assert issue['status'] == 'draft'
    assert issue['issue_date'] == '2026-03-10'
    assert issue['status_label'] == 'Draft'

    duplicate = client.post('/issues', json=body, headers=AUTH)
    assert duplicate.status_code == 409
    assert len(fake_db.issues) == 1


def test_create_issue_validation(client) -> None:
    assert client.post('/issues', json={'issue_date': '2026-03-10'}, headers=AUTH).status_code == 400
    bad_date = client.post('/issues', json={'publication_id': 'p', 'issue_date': '10/03/2026'}, headers=AUTH)
    assert bad_date.status_code == 400


def test_get_issue_with_counts(client, fake_db) -> None:
    issue = fake_db.add_issue(status='in_review', failure_reason=None)
    fake_db.add_item('a', issue_id=issue['id'])
    fake_db.add_item('b', issue_id=issue['id'])
    fake_db.insert_article({'issue_id': issue['id'], 'item_id': 'a', 'section': 'primary',
                            'headline': 'H', 'body': 'B', 'rank': 1})

    response = client.get(f"/issues/{issue['id']}", headers=AUTH)

    assert response.status_code == 200
    data = response.get_json()
    assert data['issue']['status'] == 'in_review'
    assert data['issue']['editable'] is True
    assert data['counts'] == {
        'bound_items': 2,
        'primary_articles': 1,
        'secondary_articles': 0,
        'duplicate_groups': 0,
        'suppressed_items': 0,
    }
    assert client.get('/issues/missing', headers=AUTH).status_code == 404


def test_issue_actions(client, fake_db) -> None:
    issue = fake_db.add_issue(status='in_review')

    approved = client.post(f"/issues/{issue['id']}/actions/approve", headers=AUTH)
    assert approved.status_code == 200
    assert approved.get_json()['issue']['status'] == 'ready_to_send'

    invalid = client.post(f"/issues/{issue['id']}/actions/submit_review", headers=AUTH)
    assert invalid.status_code == 409
    assert fake_db.issues[issue['id']]['status'] == 'ready_to_send'

    assert client.post(f"/issues/{issue['id']}/actions/publish", headers=AUTH).status_code == 400
    assert client.post('/issues/missing/actions/approve', headers=AUTH).status_code == 404


def test_ingest_trigger(client, queue) -> None:
    response = client.post('/jobs/ingest', json={'publication_id': 'pub-1'}, headers=AUTH)

    assert response.status_code == 202
    func, kwargs = queue.enqueued[0]
    assert func.__name__ == 'ingest_feeds'
    assert kwargs['publication_id'] == 'pub-1'
    assert kwargs['debug'] is False
