"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
profiles, statistics rows, quiz logs, usage). Repositories return
SQLModel objects and perform commits/refreshes where appropriate.
"""

from datetime import date, datetime, timezone
from typing import List, Optional
from sqlmodel import Session, select
from . import models
from .gamification.rules import percent


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by exact email or `None` if not found."""
        stmt = select(models.User).where(models.User.email == email)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class ProfileRepository:
    """Subscription and usage profile rows, one per user."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int) -> Optional[models.UserProfile]:
        stmt = select(models.UserProfile).where(models.UserProfile.auth_user_id == user_id)
        return self.session.exec(stmt).first()

    def get_or_create(self, user_id: int) -> models.UserProfile:
        """Return the profile for `user_id`, creating a free-tier row if missing."""
        profile = self.get(user_id)
        if profile:
            return profile
        profile = models.UserProfile(auth_user_id=user_id)
        return self.save(profile)

    def get_by_customer_id(self, customer_id: str) -> Optional[models.UserProfile]:
        stmt = select(models.UserProfile).where(models.UserProfile.stripe_customer_id == customer_id)
        return self.session.exec(stmt).first()

    def save(self, profile: models.UserProfile) -> models.UserProfile:
        profile.updated_at = _utcnow()
        self.session.add(profile)
        self.session.commit()
        self.session.refresh(profile)
        return profile


class StatsRepository:
    """Aggregate `user_stats` rows."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int) -> Optional[models.UserStatsRecord]:
        stmt = select(models.UserStatsRecord).where(models.UserStatsRecord.user_id == user_id)
        return self.session.exec(stmt).first()

    def upsert(self, user_id: int, **values) -> models.UserStatsRecord:
        """Overwrite the aggregate row for `user_id` with `values`."""
        row = self.get(user_id) or models.UserStatsRecord(user_id=user_id)
        for field, value in values.items():
            setattr(row, field, value)
        row.updated_at = _utcnow()
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row


class ChapterStatsRepository:
    """Per-chapter aggregate rows."""
    def __init__(self, session: Session):
        self.session = session

    def list_for_user(self, user_id: int) -> List[models.ChapterStatsRecord]:
        stmt = select(models.ChapterStatsRecord).where(models.ChapterStatsRecord.user_id == user_id).order_by(models.ChapterStatsRecord.chapter)
        return self.session.exec(stmt).all()

    def get(self, user_id: int, chapter: str) -> Optional[models.ChapterStatsRecord]:
        stmt = select(models.ChapterStatsRecord).where(
            models.ChapterStatsRecord.user_id == user_id,
            models.ChapterStatsRecord.chapter == chapter
        )
        return self.session.exec(stmt).first()

    def add_answers(self, user_id: int, chapter: str, total: int, correct: int, practiced_at: datetime) -> models.ChapterStatsRecord:
        """Fold `total`/`correct` answers into the chapter row, creating it if needed.

        Does not commit; callers commit once for the whole batch.
        """
        row = self.get(user_id, chapter) or models.ChapterStatsRecord(user_id=user_id, chapter=chapter)
        row.total_questions += total
        row.correct_answers += correct
        row.attempts += 1
        row.progress = percent(row.correct_answers, row.total_questions)
        row.last_practiced = practiced_at
        self.session.add(row)
        return row


class AttemptRepository:
    """Mirrored quiz attempts."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, attempt: models.QuizAttemptRecord) -> models.QuizAttemptRecord:
        self.session.add(attempt)
        self.session.commit()
        self.session.refresh(attempt)
        return attempt

    def recent(self, user_id: int, limit: int = 10) -> List[models.QuizAttemptRecord]:
        """Return the latest `limit` attempts, newest first."""
        stmt = (
            select(models.QuizAttemptRecord)
            .where(models.QuizAttemptRecord.user_id == user_id)
            .order_by(models.QuizAttemptRecord.completed_at.desc(), models.QuizAttemptRecord.id.desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()


class SessionRepository:
    """Persist quiz sessions and their question-level answers."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, record: models.QuizSessionRecord, answers: List[models.QuizAnswerRecord]) -> models.QuizSessionRecord:
        """Store a `QuizSessionRecord` and attach its `QuizAnswerRecord`s."""
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        for a in answers:
            a.session_id = record.id
            self.session.add(a)
        self.session.commit()
        self.session.refresh(record)
        return record

    def recent(self, user_id: int, limit: int = 10) -> List[models.QuizSessionRecord]:
        stmt = (
            select(models.QuizSessionRecord)
            .where(models.QuizSessionRecord.user_id == user_id)
            .order_by(models.QuizSessionRecord.completed_at.desc(), models.QuizSessionRecord.id.desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()


class UsageRepository:
    """Per-day usage rows."""
    def __init__(self, session: Session):
        self.session = session

    def record(self, user_id: int, day: date, questions: int = 0, quizzes: int = 0) -> models.UsageTracking:
        """Upsert the usage row for `user_id`/`day` adding the given counts."""
        row = self.session.exec(
            select(models.UsageTracking).where(
                models.UsageTracking.user_id == user_id,
                models.UsageTracking.usage_date == day
            )
        ).first()
        if row is None:
            row = models.UsageTracking(user_id=user_id, usage_date=day)
        row.questions_answered += questions
        row.quizzes_completed += quizzes
        row.updated_at = _utcnow()
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row
