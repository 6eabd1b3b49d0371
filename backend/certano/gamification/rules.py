"""Pure calculations over gamification state.

Level, accuracy, streak and weekly progress are derived values; the
unlock rules are the single place where badge predicates are evaluated.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, List, Tuple

from .state import Badge, QuizAttempt, UserStats

XP_PER_LEVEL = 100


def percent(part: float, whole: float) -> int:
    """Return `round(100 * part / whole)` rounding halves up, 0 when `whole` is 0."""
    if whole <= 0:
        return 0
    return int(math.floor(100 * part / whole + 0.5))


def calculate_level(xp: int) -> int:
    return xp // XP_PER_LEVEL + 1


def calculate_streak(attempts: Iterable[QuizAttempt], today: date) -> Tuple[int, int]:
    """Return `(current, longest)` for the attempt log.

    Every attempt is checked on its own against `today`/`yesterday`: a
    hit increments the running counter, anything older resets it. The
    result counts recent attempts, not distinct calendar days.
    """
    ordered = sorted(attempts, key=lambda a: a.date, reverse=True)
    yesterday = today - timedelta(days=1)
    current = longest = temp = 0
    for attempt in ordered:
        if attempt.date.date() in (today, yesterday):
            temp += 1
            current = temp
        else:
            temp = 0
        longest = max(longest, temp)
    return current, longest


def week_start(now: datetime) -> datetime:
    """Sunday 00:00 of the week containing `now`."""
    days_since_sunday = (now.weekday() + 1) % 7
    start = now.date() - timedelta(days=days_since_sunday)
    return datetime.combine(start, time(), tzinfo=now.tzinfo or timezone.utc)


def attempts_since(attempts: Iterable[QuizAttempt], start: datetime) -> List[QuizAttempt]:
    return [a for a in attempts if a.date >= start]


def calculate_weekly_progress(attempts: Iterable[QuizAttempt], weekly_goal: int, now: datetime) -> float:
    answered = sum(a.questions_answered for a in attempts_since(attempts, week_start(now)))
    if weekly_goal <= 0:
        return 0.0
    return min(answered / weekly_goal * 100, 100.0)


@dataclass(frozen=True)
class UnlockRule:
    badge_id: str
    check: Callable[[UserStats], bool]


UNLOCK_RULES: List[UnlockRule] = [
    UnlockRule('first-quiz', lambda s: s.total_questions_answered == 1),
    UnlockRule('level-5', lambda s: s.current_level >= 5),
    UnlockRule('level-10', lambda s: s.current_level >= 10),
    UnlockRule('accuracy-100', lambda s: s.accuracy_rate >= 100),
    UnlockRule('streak-3', lambda s: s.current_streak >= 3),
    UnlockRule('streak-7', lambda s: s.current_streak >= 7),
    UnlockRule('streak-30', lambda s: s.current_streak >= 30),
]


def unlock(badges: List[Badge], badge_id: str, now: datetime) -> bool:
    """Stamp `unlocked_at` on a locked badge. Returns False if missing or already unlocked."""
    for badge in badges:
        if badge.id == badge_id:
            if badge.unlocked_at is not None:
                return False
            badge.unlocked_at = now
            return True
    return False


def evaluate_unlocks(stats: UserStats, badges: List[Badge], now: datetime) -> List[str]:
    """Run every unlock rule against `stats` and return the newly unlocked badge ids."""
    return [rule.badge_id for rule in UNLOCK_RULES if rule.check(stats) and unlock(badges, rule.badge_id, now)]
