"""SQLModel data models.

This module defines the database tables using SQLModel. Besides the
account and subscription rows owned by the billing flow, it mirrors the
remote statistics schema: aggregate stats, chapter stats, quiz attempt
and session logs and question-level answers, each keyed by user id.
"""

from typing import Optional
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, Relationship
from datetime import datetime, date, timezone
from typing import List


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `email`: unique login name, also used to match payment-provider events
    - `password_hash`: hashed password string (never store plaintext)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    created_at: datetime = Field(default_factory=_utcnow)


class UserProfile(SQLModel, table=True):
    """Per-user profile carrying subscription and daily usage state.

    Subscription fields are written only by the billing flow (webhook
    handling and checkout creation).
    """
    __tablename__ = "user_profiles"

    id: Optional[int] = Field(default=None, primary_key=True)
    auth_user_id: int = Field(foreign_key='user.id', unique=True, index=True)
    role: str = "user"
    subscription_type: str = "free"
    subscription_status: str = "inactive"
    stripe_customer_id: Optional[str] = Field(default=None, index=True)
    stripe_subscription_id: Optional[str] = None
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    daily_usage: int = 0
    last_usage_date: Optional[date] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class UserStatsRecord(SQLModel, table=True):
    """Remote copy of the aggregate statistics row."""
    __tablename__ = "user_stats"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', unique=True, index=True)
    total_questions_answered: int = 0
    total_correct_answers: int = 0
    total_xp: int = 0
    current_level: int = 1
    current_streak: int = 0
    longest_streak: int = 0
    total_time_spent: int = 0  # seconds
    weekly_goal: int = 50
    last_quiz_date: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class ChapterStatsRecord(SQLModel, table=True):
    """Remote per-chapter aggregate for a user."""
    __tablename__ = "chapter_stats"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    chapter: str = Field(index=True)
    total_questions: int = 0
    correct_answers: int = 0
    progress: int = 0
    attempts: int = 0
    last_practiced: Optional[datetime] = None


class QuizAttemptRecord(SQLModel, table=True):
    """Remote log entry for one completed quiz, as mirrored from local state."""
    __tablename__ = "quiz_attempts"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    local_id: str = Field(index=True)
    questions_answered: int
    correct_answers: int
    accuracy_rate: int
    xp_earned: int
    chapters: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    time_spent: int = 0  # seconds
    completed_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)


class QuizSessionRecord(SQLModel, table=True):
    """A logged quiz session with its question-level answers."""
    __tablename__ = "quiz_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    session_type: str
    chapter_name: Optional[str] = None
    total_questions: int
    correct_answers: int
    accuracy_rate: int
    total_time_seconds: int = 0
    xp_earned: int = 0
    completed_at: datetime = Field(default_factory=_utcnow)
    answers: List['QuizAnswerRecord'] = Relationship(back_populates='session')


class QuizAnswerRecord(SQLModel, table=True):
    """A single question outcome inside a `QuizSessionRecord`."""
    __tablename__ = "quiz_answers"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key='quiz_sessions.id', index=True)
    question_id: str
    chapter: Optional[str] = None
    user_answer: Optional[str] = None
    is_correct: bool = False
    time_spent_seconds: int = 0
    answered_at: datetime = Field(default_factory=_utcnow)
    session: Optional[QuizSessionRecord] = Relationship(back_populates='answers')


class UsageTracking(SQLModel, table=True):
    """Per-user, per-day usage counters."""
    __tablename__ = "usage_tracking"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    usage_date: date = Field(index=True)
    questions_answered: int = 0
    quizzes_completed: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
