"""Pydantic models for the persisted gamification state.

Everything a user's store owns lives in one `GamificationState` object
which is dumped to plain JSON under a single persistence key. The chapter
catalog has its own document (`ChapterCatalogState`).
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

QuestType = Literal['daily', 'weekly', 'achievement']
QuestCategory = Literal['questions', 'streak', 'accuracy', 'chapters', 'xp']
BadgeCategory = Literal['level', 'streak', 'accuracy', 'chapters', 'special']
BadgeRarity = Literal['common', 'rare', 'epic', 'legendary']

DEFAULT_WEEKLY_GOAL = 50


class UserStats(BaseModel):
    """Cumulative statistics for one user."""
    total_questions_answered: int = 0
    total_correct_answers: int = 0
    accuracy_rate: int = 0
    total_xp: int = 0
    current_level: int = 1
    current_streak: int = 0
    longest_streak: int = 0
    total_time_spent: float = 0.0  # minutes
    weekly_goal: int = DEFAULT_WEEKLY_GOAL
    weekly_progress: float = 0.0


class QuizAttempt(BaseModel):
    """One completed quiz. Immutable once appended to the log."""
    model_config = ConfigDict(frozen=True)

    id: str
    date: datetime
    questions_answered: int
    correct_answers: int
    accuracy_rate: int
    xp_earned: int
    chapters: List[str]
    time_spent: float  # seconds


class ChapterStats(BaseModel):
    name: str
    total_questions: int = 0
    correct_answers: int = 0
    progress: int = 0
    last_practiced: datetime


class QuestionError(BaseModel):
    """Error/success counters for a single question."""
    question_id: str
    chapter: str
    error_count: int = 0
    last_error_date: datetime
    last_correct_date: Optional[datetime] = None
    total_attempts: int = 0
    success_rate: int = 0


class QuestReward(BaseModel):
    xp: int
    badge: Optional[str] = None


class Quest(BaseModel):
    """A time-boxed objective with a numeric target and a reward.

    `is_completed` flips once, either when progress reaches the target or
    when the reward is granted directly.
    """
    id: str
    title: str
    description: str
    type: QuestType
    category: QuestCategory
    target: int
    current_progress: int = 0
    reward: QuestReward
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_repeatable: bool = False


class Badge(BaseModel):
    id: str
    name: str
    description: str
    icon: str
    category: BadgeCategory
    rarity: BadgeRarity
    unlocked_at: Optional[datetime] = None


class GamificationState(BaseModel):
    """The full per-user state owned by `QuizStatsStore`."""
    attempts: List[QuizAttempt] = Field(default_factory=list)  # newest first
    chapter_stats: List[ChapterStats] = Field(default_factory=list)
    user_stats: UserStats = Field(default_factory=UserStats)
    question_errors: List[QuestionError] = Field(default_factory=list)
    quests: List[Quest] = Field(default_factory=list)
    badges: List[Badge] = Field(default_factory=list)


class AttemptOutcome(BaseModel):
    """Result of recording an attempt: the new log entry and what it unlocked."""
    attempt: QuizAttempt
    user_stats: UserStats
    unlocked_badges: List[str] = Field(default_factory=list)


class Chapter(BaseModel):
    """A named topic grouping of quiz questions."""
    id: str
    name: str
    description: str = ""
    color: str = "blue"
    icon: str = ""
    order: int
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class ChapterCatalogState(BaseModel):
    chapters: List[Chapter] = Field(default_factory=list)
