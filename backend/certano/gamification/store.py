"""The per-user gamification controller.

`QuizStatsStore` owns one `GamificationState`. Every mutation runs under
the store lock, recomputes derived statistics, runs the unlock pass and
writes the state back through the injected port. Remote mirroring of
attempts goes through the outbox after the local commit and can never
undo it.
"""

from __future__ import annotations

import functools
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Sequence

from . import catalog, rules
from .errors import ValidationError
from .persistence import StatePort
from .outbox import SyncOutbox
from .state import (
    AttemptOutcome,
    Badge,
    ChapterStats,
    GamificationState,
    Quest,
    QuestionError,
    QuizAttempt,
    UserStats,
)

logger = logging.getLogger("certano.gamification")

STATE_KEY = "quiz-stats-storage"
XP_CORRECT_ANSWER = 10
XP_INCORRECT_ANSWER = 5


class RemoteStatsWriter(Protocol):
    def write_attempt(self, attempt: QuizAttempt, stats: UserStats) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _mutation(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            result = method(self, *args, **kwargs)
            self._save()
            return result
    return wrapper


class QuizStatsStore:
    def __init__(
        self,
        port: StatePort,
        *,
        remote: Optional[RemoteStatsWriter] = None,
        outbox: Optional[SyncOutbox] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._port = port
        self._remote = remote
        self._outbox = outbox
        self._clock = clock
        self._lock = threading.RLock()
        raw = port.load(STATE_KEY)
        if raw is None:
            self.state = GamificationState(badges=catalog.badge_catalog())
            self._save()
        else:
            self.state = GamificationState.model_validate(raw)

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    def _save(self) -> None:
        self._port.save(STATE_KEY, self.state.model_dump(mode="json"))

    def _refresh_derived(self) -> None:
        stats = self.state.user_stats
        stats.accuracy_rate = rules.percent(stats.total_correct_answers, stats.total_questions_answered)
        stats.current_level = rules.calculate_level(stats.total_xp)

    def _evaluate_unlocks(self) -> List[str]:
        unlocked = rules.evaluate_unlocks(self.state.user_stats, self.state.badges, self._now())
        if unlocked:
            logger.info("badges_unlocked %s", ",".join(unlocked))
        return unlocked

    # -- statistics -------------------------------------------------------

    @property
    def user_stats(self) -> UserStats:
        return self.state.user_stats

    @property
    def attempts(self) -> List[QuizAttempt]:
        return list(self.state.attempts)

    @_mutation
    def record_attempt(
        self,
        *,
        questions_answered: int,
        correct_answers: int,
        xp_earned: int,
        time_spent: float,
        chapters: Sequence[str],
        date: Optional[datetime] = None,
        accuracy_rate: Optional[int] = None,
    ) -> AttemptOutcome:
        """Append a completed quiz to the log and fold it into the statistics."""
        if questions_answered <= 0:
            raise ValidationError("questions_answered must be > 0")
        if not 0 <= correct_answers <= questions_answered:
            raise ValidationError("correct_answers must be between 0 and questions_answered")
        if xp_earned < 0:
            raise ValidationError("xp_earned must be >= 0")
        if time_spent < 0:
            raise ValidationError("time_spent must be >= 0")
        chapter_names = [c for c in chapters if c]
        if not chapter_names:
            raise ValidationError("chapters must not be empty")

        now = self._now()
        attempt = QuizAttempt(
            id=uuid.uuid4().hex,
            date=_as_utc(date) if date else now,
            questions_answered=questions_answered,
            correct_answers=correct_answers,
            accuracy_rate=accuracy_rate if accuracy_rate is not None else rules.percent(correct_answers, questions_answered),
            xp_earned=xp_earned,
            chapters=chapter_names,
            time_spent=time_spent,
        )
        self.state.attempts.insert(0, attempt)

        stats = self.state.user_stats
        stats.total_questions_answered += attempt.questions_answered
        stats.total_correct_answers += attempt.correct_answers
        stats.total_xp += attempt.xp_earned
        stats.total_time_spent += attempt.time_spent / 60
        self._refresh_derived()
        current, longest = rules.calculate_streak(self.state.attempts, now.date())
        stats.current_streak = current
        stats.longest_streak = max(stats.longest_streak, longest)
        stats.weekly_progress = rules.calculate_weekly_progress(self.state.attempts, stats.weekly_goal, now)
        unlocked = self._evaluate_unlocks()
        self.sync_streak_quests()

        snapshot = stats.model_copy()
        if self._remote is not None and self._outbox is not None:
            self._outbox.submit("write_attempt", self._remote.write_attempt, attempt, snapshot)
        return AttemptOutcome(attempt=attempt, user_stats=snapshot, unlocked_badges=unlocked)

    @_mutation
    def record_answer(self, correct: bool, xp_earned: int, time_spent: float) -> List[str]:
        """Fold a single answered question into the statistics.

        Returns the ids of badges unlocked by the change.
        """
        if xp_earned < 0 or time_spent < 0:
            raise ValidationError("xp_earned and time_spent must be >= 0")
        stats = self.state.user_stats
        stats.total_questions_answered += 1
        stats.total_correct_answers += 1 if correct else 0
        stats.total_xp += xp_earned
        stats.total_time_spent += time_spent / 60
        self._refresh_derived()
        return self._evaluate_unlocks()

    def record_quiz_answer(self, question_id: str, chapter: Optional[str], correct: bool, time_spent: float = 0,
                           session_correct: Optional[int] = None, session_answered: Optional[int] = None) -> List[str]:
        """Record one answer during a quiz: statistics, chapter progress, error ledger and daily quests.

        `session_correct`/`session_answered` are the running counts of the
        quiz, this answer included; without them the overall accuracy feeds
        the accuracy quest. Everything is validated before anything is
        written, so a rejected answer leaves the state untouched.
        """
        if not question_id:
            raise ValidationError("question id required")
        if time_spent < 0:
            raise ValidationError("time_spent must be >= 0")
        if (session_correct is None) != (session_answered is None):
            raise ValidationError("session_correct and session_answered go together")
        if session_answered is not None and (session_answered <= 0 or not 0 <= session_correct <= session_answered):
            raise ValidationError("session counts need 0 <= correct <= answered and answered > 0")
        with self._lock:
            xp = XP_CORRECT_ANSWER if correct else XP_INCORRECT_ANSWER
            unlocked = self.record_answer(correct, xp, time_spent)
            if chapter and chapter != 'all':
                self.record_chapter_answer(chapter, correct)
            self.record_question_outcome(question_id, chapter or '', correct)
            self.advance_quest('daily-questions')
            if correct:
                if session_answered is None:
                    accuracy = self.state.user_stats.accuracy_rate
                else:
                    accuracy = rules.percent(session_correct, session_answered)
                self.update_quest_progress('daily-accuracy', accuracy)
            self.sync_streak_quests()
            return unlocked

    @_mutation
    def set_weekly_goal(self, goal: int) -> UserStats:
        if goal <= 0:
            raise ValidationError("weekly goal must be > 0")
        stats = self.state.user_stats
        stats.weekly_goal = goal
        stats.weekly_progress = rules.calculate_weekly_progress(self.state.attempts, goal, self._now())
        return stats

    def weekly_attempts(self) -> List[QuizAttempt]:
        return rules.attempts_since(self.state.attempts, rules.week_start(self._now()))

    @_mutation
    def reset_stats(self) -> None:
        self.state = GamificationState()
        logger.info("stats_reset")

    # -- chapters ---------------------------------------------------------

    @_mutation
    def record_chapter_answer(self, chapter_name: str, was_correct: bool) -> ChapterStats:
        if not chapter_name:
            raise ValidationError("chapter name required")
        now = self._now()
        row = self.chapter_progress(chapter_name)
        if row is None:
            row = ChapterStats(
                name=chapter_name,
                total_questions=1,
                correct_answers=1 if was_correct else 0,
                progress=100 if was_correct else 0,
                last_practiced=now,
            )
            self.state.chapter_stats.append(row)
            return row
        row.total_questions += 1
        row.correct_answers += 1 if was_correct else 0
        row.progress = rules.percent(row.correct_answers, row.total_questions)
        row.last_practiced = now
        return row

    def chapter_progress(self, chapter_name: str) -> Optional[ChapterStats]:
        return next((c for c in self.state.chapter_stats if c.name == chapter_name), None)

    # -- error ledger -----------------------------------------------------

    @_mutation
    def record_question_outcome(self, question_id: str, chapter: str, was_correct: bool) -> QuestionError:
        if not question_id:
            raise ValidationError("question id required")
        now = self._now()
        row = next((e for e in self.state.question_errors if e.question_id == question_id), None)
        if row is None:
            # a first answer stamps last_error_date even when correct
            row = QuestionError(
                question_id=question_id,
                chapter=chapter,
                error_count=0 if was_correct else 1,
                last_error_date=now,
                last_correct_date=now if was_correct else None,
                total_attempts=1,
                success_rate=100 if was_correct else 0,
            )
            self.state.question_errors.append(row)
            return row
        if was_correct:
            row.last_correct_date = now
        else:
            row.error_count += 1
            row.last_error_date = now
        row.total_attempts += 1
        row.success_rate = rules.percent(row.total_attempts - row.error_count, row.total_attempts)
        return row

    def top_errors(self, chapter: Optional[str] = None, limit: Optional[int] = None) -> List[QuestionError]:
        rows = [e for e in self.state.question_errors if not chapter or e.chapter == chapter]
        rows.sort(key=lambda e: (e.error_count, e.last_error_date), reverse=True)
        if limit:
            rows = rows[:limit]
        return rows

    def error_question_ids_for_quiz(self, chapter: Optional[str] = None, question_count: int = 10) -> List[str]:
        return [e.question_id for e in self.top_errors(chapter)][:question_count]

    # -- quests -----------------------------------------------------------

    def _replace_quests(self, quest_type: str, fresh: List[Quest]) -> None:
        self.state.quests = [q for q in self.state.quests if q.type != quest_type] + fresh

    @_mutation
    def generate_daily_quests(self) -> List[Quest]:
        fresh = catalog.daily_quests(self._now())
        self._replace_quests('daily', fresh)
        return fresh

    @_mutation
    def generate_weekly_quests(self) -> List[Quest]:
        fresh = catalog.weekly_quests(self._now())
        self._replace_quests('weekly', fresh)
        return fresh

    def ensure_daily_quests(self) -> bool:
        """Regenerate daily quests when none is active. Returns True if regenerated."""
        with self._lock:
            if any(q.type == 'daily' for q in self.active_quests()):
                return False
            self.generate_daily_quests()
            return True

    def ensure_weekly_quests(self) -> bool:
        with self._lock:
            if any(q.type == 'weekly' for q in self.active_quests()):
                return False
            self.generate_weekly_quests()
            return True

    def _quest(self, quest_id: str) -> Optional[Quest]:
        return next((q for q in self.state.quests if q.id == quest_id), None)

    @_mutation
    def update_quest_progress(self, quest_id: str, value: int) -> Optional[Quest]:
        quest = self._quest(quest_id)
        if quest is None:
            return None
        quest.current_progress = value
        if value >= quest.target and not quest.is_completed:
            quest.is_completed = True
            quest.completed_at = self._now()
        return quest

    def advance_quest(self, quest_id: str, delta: int = 1) -> Optional[Quest]:
        with self._lock:
            quest = self._quest(quest_id)
            if quest is None:
                return None
            return self.update_quest_progress(quest_id, quest.current_progress + delta)

    @_mutation
    def complete_quest(self, quest_id: str) -> bool:
        """Grant a quest's reward and mark it completed.

        Returns False, without granting anything, when the quest is unknown
        or already completed.
        """
        quest = self._quest(quest_id)
        if quest is None or quest.is_completed:
            return False
        now = self._now()
        self.state.user_stats.total_xp += quest.reward.xp
        self._refresh_derived()
        if quest.reward.badge:
            rules.unlock(self.state.badges, quest.reward.badge, now)
        self._evaluate_unlocks()
        quest.is_completed = True
        quest.completed_at = now
        logger.info("quest_completed %s xp=%d", quest_id, quest.reward.xp)
        return True

    @_mutation
    def sync_streak_quests(self) -> List[Quest]:
        """Mirror the current streak into the active streak quests."""
        streak = self.state.user_stats.current_streak
        quests = [q for q in self.active_quests() if q.category == 'streak']
        for quest in quests:
            self.update_quest_progress(quest.id, streak)
        return quests

    def get_quest(self, quest_id: str) -> Optional[Quest]:
        return self._quest(quest_id)

    def active_quests(self) -> List[Quest]:
        now = self._now()
        return [q for q in self.state.quests if not q.is_completed and (q.expires_at is None or _as_utc(q.expires_at) > now)]

    def completed_quests(self) -> List[Quest]:
        return [q for q in self.state.quests if q.is_completed]

    # -- badges -----------------------------------------------------------

    @_mutation
    def initialize_badges(self) -> List[Badge]:
        self.state.badges = catalog.badge_catalog()
        return self.state.badges

    def ensure_badges(self) -> bool:
        """Seed the catalog when no badge is unlocked yet. Returns True if seeded."""
        with self._lock:
            if self.unlocked_badges():
                return False
            self.initialize_badges()
            return True

    @_mutation
    def unlock_badge(self, badge_id: str) -> bool:
        return rules.unlock(self.state.badges, badge_id, self._now())

    def unlocked_badges(self) -> List[Badge]:
        order = {bid: i for i, bid in enumerate(catalog.BADGE_IDS)}
        unlocked = [b for b in self.state.badges if b.unlocked_at is not None]
        return sorted(unlocked, key=lambda b: order.get(b.id, len(order)))
