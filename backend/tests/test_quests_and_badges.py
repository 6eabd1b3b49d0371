from datetime import timedelta


def _quest(store, quest_id):
    return next(q for q in store.state.quests if q.id == quest_id)


def test_daily_quests_generated_once_while_active(store, clock):
    assert store.ensure_daily_quests() is True
    ids = {q.id for q in store.state.quests}
    assert ids == {'daily-questions', 'daily-streak', 'daily-accuracy'}
    assert _quest(store, 'daily-questions').expires_at == clock.now + timedelta(hours=24)
    assert store.ensure_daily_quests() is False


def test_expired_daily_quests_are_replaced(store, clock):
    store.ensure_daily_quests()
    store.update_quest_progress('daily-questions', 4)
    clock.now += timedelta(hours=25)
    assert store.active_quests() == []
    assert store.ensure_daily_quests() is True
    assert _quest(store, 'daily-questions').current_progress == 0
    assert len([q for q in store.state.quests if q.type == 'daily']) == 3


def test_weekly_quests_carry_badge_rewards(store, clock):
    store.ensure_weekly_quests()
    weekly = {q.id: q for q in store.state.quests if q.type == 'weekly'}
    assert weekly['weekly-questions'].reward.xp == 200
    assert weekly['weekly-questions'].reward.badge == 'weekly-champion'
    assert weekly['weekly-streak'].reward.badge == 'streak-master'
    assert weekly['weekly-streak'].expires_at == clock.now + timedelta(days=7)


def test_daily_questions_progress_completes_once(store, clock):
    store.ensure_daily_quests()
    quest = store.update_quest_progress('daily-questions', 10)
    assert quest.is_completed is True
    completed_at = quest.completed_at
    assert completed_at == clock.now

    clock.now += timedelta(minutes=5)
    quest = store.update_quest_progress('daily-questions', 15)
    assert quest.is_completed is True
    assert quest.completed_at == completed_at
    assert quest.current_progress == 15
    assert store.user_stats.total_xp == 0
    assert [q.id for q in store.completed_quests()] == ['daily-questions']


def test_unknown_quest_progress_is_noop(store):
    assert store.update_quest_progress('nope', 3) is None
    assert store.complete_quest('nope') is False


def test_complete_quest_grants_exactly_once(store):
    store.ensure_weekly_quests()
    assert store.complete_quest('weekly-questions') is True
    assert store.user_stats.total_xp == 200
    assert store.user_stats.current_level == 3
    badge = next(b for b in store.state.badges if b.id == 'weekly-champion')
    unlocked_at = badge.unlocked_at
    assert unlocked_at is not None

    assert store.complete_quest('weekly-questions') is False
    assert store.user_stats.total_xp == 200
    assert badge.unlocked_at == unlocked_at
    assert _quest(store, 'weekly-questions').is_completed is True


def test_complete_quest_is_noop_once_progress_completed_it(store):
    store.ensure_daily_quests()
    store.update_quest_progress('daily-questions', 10)
    assert store.complete_quest('daily-questions') is False
    assert store.user_stats.total_xp == 0
    assert store.user_stats.current_level == 1


def test_progress_after_grant_keeps_completion(store, clock):
    store.ensure_daily_quests()
    assert store.complete_quest('daily-streak') is True
    completed_at = _quest(store, 'daily-streak').completed_at
    clock.now += timedelta(minutes=1)
    quest = store.update_quest_progress('daily-streak', 1)
    assert quest.is_completed is True
    assert quest.completed_at == completed_at
    assert store.complete_quest('daily-streak') is False
    assert store.user_stats.total_xp == 30


def test_answers_feed_daily_quests(store):
    store.ensure_daily_quests()
    store.record_quiz_answer('q1', 'Signale', True, session_correct=1, session_answered=1)
    assert _quest(store, 'daily-questions').current_progress == 1
    accuracy = _quest(store, 'daily-accuracy')
    assert accuracy.current_progress == 100
    assert accuracy.is_completed is True

    # wrong answers leave the accuracy quest alone
    store.record_quiz_answer('q2', 'Signale', False, session_correct=1, session_answered=2)
    assert _quest(store, 'daily-questions').current_progress == 2
    assert _quest(store, 'daily-accuracy').current_progress == 100


def test_accuracy_quest_tracks_running_session_accuracy(store):
    store.ensure_daily_quests()
    store.record_quiz_answer('q1', None, False, session_correct=0, session_answered=1)
    store.record_quiz_answer('q2', None, True, session_correct=1, session_answered=2)
    quest = _quest(store, 'daily-accuracy')
    assert quest.current_progress == 50
    assert quest.is_completed is False


def test_accuracy_quest_falls_back_to_overall_accuracy(store):
    store.ensure_daily_quests()
    store.record_quiz_answer('q1', None, False)
    store.record_quiz_answer('q2', None, True)
    store.record_quiz_answer('q3', None, True)
    # 2 of 3 -> 67
    assert _quest(store, 'daily-accuracy').current_progress == 67


def test_streak_quests_follow_current_streak(store, clock):
    store.ensure_daily_quests()
    store.ensure_weekly_quests()
    store.record_attempt(questions_answered=5, correct_answers=4, xp_earned=40, time_spent=60, chapters=['Signale'])
    assert store.user_stats.current_streak == 1
    daily = _quest(store, 'daily-streak')
    assert daily.current_progress == 1
    assert daily.is_completed is True
    weekly = _quest(store, 'weekly-streak')
    assert weekly.current_progress == 1
    assert weekly.is_completed is False

    clock.now += timedelta(days=1)
    store.record_attempt(questions_answered=5, correct_answers=5, xp_earned=50, time_spent=60, chapters=['Signale'])
    assert _quest(store, 'weekly-streak').current_progress == 2


def test_quest_xp_can_unlock_level_badges(store):
    store.ensure_weekly_quests()
    store.ensure_daily_quests()
    for quest_id in ['weekly-questions', 'weekly-streak', 'daily-questions', 'daily-accuracy']:
        store.complete_quest(quest_id)
    # 200 + 150 + 50 + 40 = 440 xp -> level 5
    assert store.user_stats.current_level == 5
    ids = [b.id for b in store.unlocked_badges()]
    assert ids == ['level-5', 'weekly-champion', 'streak-master']


def test_badge_unlock_is_monotonic(store, clock):
    store.record_quiz_answer('q1', 'Signale', True)
    first_unlock = next(b for b in store.state.badges if b.id == 'first-quiz').unlocked_at
    clock.now += timedelta(days=1)
    assert store.unlock_badge('first-quiz') is False
    store.record_quiz_answer('q2', 'Signale', True)
    assert next(b for b in store.state.badges if b.id == 'first-quiz').unlocked_at == first_unlock


def test_manual_unlock_and_catalog_order(store):
    assert store.unlock_badge('streak-master') is True
    assert store.unlock_badge('level-10') is True
    assert store.unlock_badge('missing') is False
    assert [b.id for b in store.unlocked_badges()] == ['level-10', 'streak-master']


def test_ensure_badges_reseeds_only_when_nothing_unlocked(store):
    store.state.badges = []
    assert store.ensure_badges() is True
    assert len(store.state.badges) == 9
    store.unlock_badge('level-5')
    assert store.ensure_badges() is False
    assert store.unlocked_badges()[0].id == 'level-5'
