import pytest

from newsdesk.jobs.article_generation import (
    deactivate_issue_articles,
    fact_check_article,
    generate_article,
    generate_articles_for_section,
    generate_subject_line,
    is_refusal,
)


def _items(fake_db, ids, issue_id='issue-1'):
    return [fake_db.add_item(item_id, issue_id=issue_id) for item_id in ids]


@pytest.mark.parametrize('text, expected', [
    ("I'm sorry, but I can't help with that.", True),
    ('As an AI language model I cannot write this', True),
    ('  i cannot comply', True),
    ('Markets rallied after the announcement.', False),
    ('Analysts said "I cannot see a recession" on Monday.', False),
])
def test_is_refusal(text, expected) -> None:
    assert is_refusal(text) is expected


def test_generate_article_counts_words(fake_oracle) -> None:
    article = generate_article({'id': 'a', 'title': 'Story a'}, 'primary', fake_oracle, 'Be brief')
    assert article == {
        'headline': 'Headline: Story a',
        'body': 'An article about Story a in five words',
        'word_count': 8,
    }


@pytest.mark.parametrize('response', [
    {'headline': '', 'body': 'text'},
    {'headline': 'Title', 'body': '   '},
    {'headline': 'Title', 'body': "I'm sorry, I can't write about this."},
    {'headline': 'I cannot help', 'body': 'body'},
    'plain string',
])
def test_generate_article_rejects_unusable_output(fake_oracle, response) -> None:
    fake_oracle.generate_responses['Story a'] = response
    assert generate_article({'id': 'a', 'title': 'Story a'}, 'primary', fake_oracle) is None


def test_generate_articles_assigns_ranks_in_order(fake_db, fake_oracle) -> None:
    items = _items(fake_db, ['c', 'a', 'b'])

    result = generate_articles_for_section('issue-1', 'primary', items, oracle=fake_oracle,
                                           instructions='Be brief', db=fake_db)

    assert result['generated'] == 3
    articles = fake_db.get_articles('issue-1', section='primary')
    assert [(a['item_id'], a['rank']) for a in articles] == [('c', 1), ('a', 2), ('b', 3)]
    assert all(a['is_active'] for a in articles)


def test_failed_generation_leaves_item_without_article(fake_db, fake_oracle) -> None:
    items = _items(fake_db, ['a', 'b', 'c'])
    fake_oracle.fail_generate_titles.add('Story b')
    fake_oracle.generate_responses['Story c'] = {'headline': 'H', 'body': 'As an AI, I will not.'}

    result = generate_articles_for_section('issue-1', 'secondary', items, oracle=fake_oracle,
                                           instructions='', db=fake_db)

    assert result['generated'] == 1
    assert result['failed'] == 2
    assert sorted(result['failed_item_ids']) == ['b', 'c']
    assert [a['item_id'] for a in fake_db.get_articles('issue-1')] == ['a']


def test_rerun_skips_existing_articles(fake_db, fake_oracle) -> None:
    items = _items(fake_db, ['a', 'b'])
    generate_articles_for_section('issue-1', 'primary', items, oracle=fake_oracle, instructions='', db=fake_db)

    result = generate_articles_for_section('issue-1', 'primary', items, oracle=fake_oracle,
                                           instructions='', db=fake_db)

    assert result['generated'] == 0
    assert result['skipped_existing'] == 2
    assert fake_oracle.calls['generate'] == 2
    assert len(fake_db.get_articles('issue-1')) == 2


def test_instructions_default_to_publication_settings(fake_db, fake_oracle) -> None:
    issue = fake_db.add_issue(status='processing')
    fake_db.settings['pub-1'] = {'secondary_article_instructions': 'Two sentences only.'}
    seen = []
    original = fake_oracle.generate

    def recording_generate(item_text, instructions, prompt_key=None):
        seen.append((instructions, prompt_key))
        return original(item_text, instructions, prompt_key=prompt_key)

    fake_oracle.generate = recording_generate
    items = _items(fake_db, ['a'], issue_id=issue['id'])

    generate_articles_for_section(issue['id'], 'secondary', items, oracle=fake_oracle, db=fake_db)

    assert seen == [('Two sentences only.', 'secondary_article')]


def test_deactivate_issue_articles(fake_db, fake_oracle) -> None:
    items = _items(fake_db, ['a', 'b'])
    generate_articles_for_section('issue-1', 'primary', items, oracle=fake_oracle, instructions='', db=fake_db)

    assert deactivate_issue_articles('issue-1', db=fake_db) == 2
    assert fake_db.get_articles('issue-1') == []
    assert len(fake_db.get_articles('issue-1', active_only=False)) == 2


def test_subject_line_saved(fake_db, fake_oracle) -> None:
    issue = fake_db.add_issue(status='processing')
    items = _items(fake_db, ['a'], issue_id=issue['id'])
    generate_articles_for_section(issue['id'], 'primary', items, oracle=fake_oracle, instructions='', db=fake_db)

    assert generate_subject_line(issue['id'], oracle=fake_oracle, db=fake_db) == "Today's top stories"
    assert fake_db.issues[issue['id']]['subject_line'] == "Today's top stories"


def test_subject_line_failure_is_not_fatal(fake_db, fake_oracle) -> None:
    issue = fake_db.add_issue(status='processing')
    items = _items(fake_db, ['a'], issue_id=issue['id'])
    generate_articles_for_section(issue['id'], 'primary', items, oracle=fake_oracle, instructions='', db=fake_db)
    fake_oracle.subject_error = RuntimeError('rate limited')

    assert generate_subject_line(issue['id'], oracle=fake_oracle, db=fake_db) is None
    assert fake_db.issues[issue['id']]['subject_line'] is None


def test_subject_line_skipped_without_primary_articles(fake_db, fake_oracle) -> None:
    issue = fake_db.add_issue(status='processing')
    assert generate_subject_line(issue['id'], oracle=fake_oracle, db=fake_db) is None
    assert fake_oracle.calls['subject_line'] == 0


def test_articles_store_fact_check_result(fake_db, fake_oracle) -> None:
    items = _items(fake_db, ['a', 'b'])
    fake_oracle.fact_check_response = {'score': 7.5, 'details': ' One figure differs from the source '}

    result = generate_articles_for_section('issue-1', 'primary', items, oracle=fake_oracle,
                                           instructions='Be brief', db=fake_db)

    assert result['fact_check_failed'] == 0
    articles = fake_db.get_articles('issue-1')
    assert [(a['fact_check_score'], a['fact_check_details']) for a in articles] == [
        (7.5, 'One figure differs from the source'),
        (7.5, 'One figure differs from the source'),
    ]
    assert sorted(fake_oracle.fact_check_inputs) == [
        ('An article about Story a in five words', 'Story a'),
        ('An article about Story b in five words', 'Story b'),
    ]


def test_fact_check_failure_keeps_the_article(fake_db, fake_oracle) -> None:
    items = _items(fake_db, ['a'])
    fake_oracle.fact_check_error = RuntimeError('rate limited')

    result = generate_articles_for_section('issue-1', 'primary', items, oracle=fake_oracle,
                                           instructions='Be brief', db=fake_db)

    assert result['generated'] == 1
    assert result['fact_check_failed'] == 1
    article = fake_db.get_articles('issue-1')[0]
    assert article['headline'] == 'Headline: Story a'
    assert article['fact_check_score'] is None
    assert article['fact_check_details'] == 'Fact-check failed: rate limited'


@pytest.mark.parametrize('response', [
    {'score': 11, 'details': 'too high'},
    {'score': True, 'details': 'boolean'},
    {'score': '8', 'details': 'string score'},
    {'score': 8},
    ['score', 8],
])
def test_fact_check_rejects_invalid_response(fake_oracle, response) -> None:
    fake_oracle.fact_check_response = response

    result = fact_check_article('Body', {'id': 'a', 'title': 'Story a'}, oracle=fake_oracle)

    assert result == {'fact_check_score': None, 'fact_check_details': 'Fact-check failed: invalid response'}
