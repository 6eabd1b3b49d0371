import logging
import threading

from certano.gamification import InMemoryStatePort, QuizStatsStore, SyncOutbox
from certano.main import registry


class FailingRemote:
    def write_attempt(self, attempt, stats):
        raise ConnectionError('remote store unreachable')


class RecordingRemote:
    def __init__(self):
        self.calls = []
        self.done = threading.Event()

    def write_attempt(self, attempt, stats):
        self.calls.append((attempt, stats))
        self.done.set()


def test_outbox_records_success_and_failure():
    outbox = SyncOutbox()
    ok = outbox.submit('ok', lambda: None)
    bad = outbox.submit('bad', lambda: 1 / 0)
    assert outbox.drain(timeout=5)
    assert outbox.get(ok['job_id'])['status'] == 'succeeded'
    failed = outbox.get(bad['job_id'])
    assert failed['status'] == 'failed'
    assert 'division' in failed['error']
    assert [j['job_id'] for j in outbox.failed()] == [bad['job_id']]


def test_remote_failure_never_rolls_back_local_commit(clock, caplog):
    outbox = SyncOutbox()
    port = InMemoryStatePort()
    store = QuizStatsStore(port, remote=FailingRemote(), outbox=outbox, clock=clock)
    with caplog.at_level(logging.ERROR, logger='certano.sync'):
        outcome = store.record_attempt(questions_answered=3, correct_answers=2, xp_earned=20, time_spent=45, chapters=['Signale'])
        assert outbox.drain(timeout=5)
    assert store.user_stats.total_questions_answered == 3
    assert port.load('quiz-stats-storage')['attempts'][0]['id'] == outcome.attempt.id
    assert len(outbox.failed()) == 1
    assert any('sync_failed' in rec.getMessage() for rec in caplog.records)


def test_remote_receives_attempt_and_snapshot(clock):
    remote = RecordingRemote()
    store = QuizStatsStore(InMemoryStatePort(), remote=remote, outbox=SyncOutbox(), clock=clock)
    outcome = store.record_attempt(questions_answered=4, correct_answers=4, xp_earned=40, time_spent=60, chapters=['Sicherheit'])
    assert remote.done.wait(5)
    attempt, stats = remote.calls[0]
    assert attempt.id == outcome.attempt.id
    assert stats.total_xp == 40
    # later local changes do not leak into the queued snapshot
    store.record_answer(True, 10, 0)
    assert stats.total_xp == 40


def test_attempt_is_mirrored_to_remote_tables(client, auth_headers):
    _, _, headers = auth_headers
    client.post('/stats/attempts', headers=headers, json={
        'questions_answered': 6, 'correct_answers': 3, 'xp_earned': 30,
        'time_spent': 90, 'chapters': ['Signale', 'Sicherheit'],
    })
    assert registry.outbox.drain(timeout=5)

    remote = client.get('/stats/remote', headers=headers).json()
    assert remote['total_questions_answered'] == 6
    assert remote['accuracy_rate'] == 50
    assert remote['total_time_spent'] == 90
    attempts = client.get('/stats/remote/sessions', headers=headers, params={'limit': 5}).json()
    assert len(attempts) == 1
    assert attempts[0]['chapters'] == ['Signale', 'Sicherheit']
    assert client.get('/stats/remote/sessions', headers=headers, params={'limit': 0}).status_code == 400


def test_remote_stats_default_when_nothing_synced(client, auth_headers):
    _, _, headers = auth_headers
    remote = client.get('/stats/remote', headers=headers).json()
    assert remote['total_questions_answered'] == 0
    assert remote['current_level'] == 1
    assert remote['weekly_goal'] == 50
    assert client.get('/stats/remote/chapters', headers=headers).json() == []


def test_quiz_session_logging_groups_answers_by_chapter(client, auth_headers):
    _, _, headers = auth_headers
    r = client.post('/sessions', headers=headers, json={
        'session_type': 'chapter_quiz',
        'chapter_name': 'Signale',
        'total_time_seconds': 75,
        'xp_earned': 35,
        'answers': [
            {'question_id': 'q1', 'is_correct': True},
            {'question_id': 'q2', 'is_correct': False},
            {'question_id': 'q3', 'is_correct': True, 'chapter': 'Bremssysteme'},
        ],
    })
    assert r.status_code == 200
    assert r.json()['accuracy_rate'] == 67

    chapters = {c['chapter']: c for c in client.get('/stats/remote/chapters', headers=headers).json()}
    assert chapters['Signale']['total_questions'] == 2
    assert chapters['Signale']['progress'] == 50
    assert chapters['Bremssysteme']['correct_answers'] == 1
    sessions = client.get('/sessions', headers=headers).json()
    assert sessions[0]['total_questions'] == 3
    assert client.get('/sessions', headers=headers, params={'limit': 0}).status_code == 400
    assert client.get('/sessions', headers=headers, params={'limit': -3}).status_code == 400

    bad = client.post('/sessions', headers=headers, json={'session_type': 'marathon', 'answers': [{'question_id': 'q', 'is_correct': True}]})
    assert bad.status_code == 400
