"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
the gamification stores and the Stripe gateway. Services are
intentionally thin: they perform validation, execute domain logic and
persist aggregates via repositories.
"""

from datetime import date, datetime, timedelta, timezone
from passlib.context import CryptContext
import jwt
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit
from . import billing, models, repositories
from .config import settings
from .database import engine
from .gamification.chapters import ChapterCatalog
from .gamification.outbox import SyncOutbox
from .gamification.persistence import JsonFileStatePort
from .gamification.rules import percent
from .gamification.state import QuizAttempt, UserStats
from .gamification.store import QuizStatsStore
from sqlmodel import Session

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
JWT_SECRET = settings.JWT_SECRET
JWT_ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
JWT_EXPIRE_HOURS = int(os.getenv('JWT_EXPIRE_HOURS', '24'))

logger = logging.getLogger("certano.services")
billing_logger = logging.getLogger("certano.billing")

LIMIT_REACHED_REASON = 'Du hast dein tägliches Limit von 5 Fragen erreicht. Upgrade auf Pro für unbegrenzte Fragen!'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, email: str, password: str) -> models.User:
        """Create a new user with a hashed password and a free-tier profile.

        Returns the persisted `User` instance.
        """
        email = (email or '').strip()
        if '@' not in email:
            raise ValueError("a valid email is required")
        if not password:
            raise ValueError("password required")
        hashed = PWD_CTX.hash(password)
        u = self.user_repo.create(models.User(email=email, password_hash=hashed))
        repositories.ProfileRepository(self.session).get_or_create(u.id)
        return u

    def authenticate(self, email: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_email((email or '').strip())
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = _utcnow() + timedelta(hours=JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "email": user.email, "exp": int(expire.timestamp())}
        return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


class RemoteStatsWriter:
    """Mirrors committed local attempts into the statistics tables.

    Runs on outbox threads, so it opens its own database session per write.
    """
    def __init__(self, user_id: int, db_engine=None):
        self.user_id = user_id
        self.engine = db_engine if db_engine is not None else engine

    def write_attempt(self, attempt: QuizAttempt, stats: UserStats) -> None:
        with Session(self.engine) as session:
            repositories.AttemptRepository(session).create(models.QuizAttemptRecord(
                user_id=self.user_id,
                local_id=attempt.id,
                questions_answered=attempt.questions_answered,
                correct_answers=attempt.correct_answers,
                accuracy_rate=attempt.accuracy_rate,
                xp_earned=attempt.xp_earned,
                chapters=list(attempt.chapters),
                time_spent=int(round(attempt.time_spent)),
                completed_at=attempt.date,
            ))
            repositories.StatsRepository(session).upsert(
                self.user_id,
                total_questions_answered=stats.total_questions_answered,
                total_correct_answers=stats.total_correct_answers,
                total_xp=stats.total_xp,
                current_level=stats.current_level,
                current_streak=stats.current_streak,
                longest_streak=stats.longest_streak,
                total_time_spent=int(round(stats.total_time_spent * 60)),
                weekly_goal=stats.weekly_goal,
                last_quiz_date=attempt.date,
            )
        logger.info("attempt_mirrored user_id=%s attempt=%s", self.user_id, attempt.id)


class RemoteStatsService:
    """Read path over the mirrored statistics, used for a full resync."""
    def __init__(self, session: Session):
        self.session = session

    def get_stats(self, user_id: int) -> dict:
        """Return the aggregate row, or a zeroed default when none exists yet."""
        row = repositories.StatsRepository(self.session).get(user_id)
        if row is None:
            row = models.UserStatsRecord(user_id=user_id)
        return {
            'total_questions_answered': row.total_questions_answered,
            'total_correct_answers': row.total_correct_answers,
            'accuracy_rate': percent(row.total_correct_answers, row.total_questions_answered),
            'total_xp': row.total_xp,
            'current_level': row.current_level,
            'current_streak': row.current_streak,
            'longest_streak': row.longest_streak,
            'total_time_spent': row.total_time_spent,
            'weekly_goal': row.weekly_goal,
            'last_quiz_date': row.last_quiz_date,
        }

    def recent_attempts(self, user_id: int, limit: int = 10) -> List[models.QuizAttemptRecord]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        return repositories.AttemptRepository(self.session).recent(user_id, limit)

    def chapter_stats(self, user_id: int) -> List[models.ChapterStatsRecord]:
        return repositories.ChapterStatsRepository(self.session).list_for_user(user_id)


class QuizSessionService:
    """Log a finished quiz session with its question-level answers."""
    SESSION_TYPES = ('quick_quiz', 'chapter_quiz', 'error_review')

    def __init__(self, session: Session):
        self.session = session

    def save(self, user_id: int, session_type: str, answers: List[dict], chapter_name: Optional[str] = None,
             total_time_seconds: int = 0, xp_earned: int = 0) -> models.QuizSessionRecord:
        """Persist the session and its answers, then fold the answers into chapter rows.

        Each answer dict carries `question_id`, `is_correct` and optionally
        `chapter`, `user_answer`, `time_spent_seconds`, `answered_at`.
        """
        if session_type not in self.SESSION_TYPES:
            raise ValueError(f"session_type must be one of {', '.join(self.SESSION_TYPES)}")
        if not answers:
            raise ValueError("a session needs at least one answer")
        if total_time_seconds < 0 or xp_earned < 0:
            raise ValueError("total_time_seconds and xp_earned must be >= 0")
        now = _utcnow()
        correct = sum(1 for a in answers if a.get('is_correct'))
        record = models.QuizSessionRecord(
            user_id=user_id,
            session_type=session_type,
            chapter_name=chapter_name,
            total_questions=len(answers),
            correct_answers=correct,
            accuracy_rate=percent(correct, len(answers)),
            total_time_seconds=total_time_seconds,
            xp_earned=xp_earned,
            completed_at=now,
        )
        rows = [
            models.QuizAnswerRecord(
                question_id=str(a['question_id']),
                chapter=a.get('chapter') or chapter_name,
                user_answer=a.get('user_answer'),
                is_correct=bool(a.get('is_correct')),
                time_spent_seconds=int(a.get('time_spent_seconds') or 0),
                answered_at=a.get('answered_at') or now,
            )
            for a in answers
        ]
        record = repositories.SessionRepository(self.session).create(record, rows)

        grouped: Dict[str, List[int]] = {}
        for a in answers:
            chapter = a.get('chapter') or chapter_name or 'Unbekannt'
            totals = grouped.setdefault(chapter, [0, 0])
            totals[0] += 1
            totals[1] += 1 if a.get('is_correct') else 0
        chapter_repo = repositories.ChapterStatsRepository(self.session)
        for chapter, (total, right) in grouped.items():
            chapter_repo.add_answers(user_id, chapter, total, right, now)
        self.session.commit()
        logger.info("quiz_session_saved user_id=%s session=%s answers=%d", user_id, record.id, len(rows))
        return record

    def recent(self, user_id: int, limit: int = 10) -> List[models.QuizSessionRecord]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        return repositories.SessionRepository(self.session).recent(user_id, limit)


class UsageService:
    """Daily question allowance: free users get a fixed number per day, pro and admin are unlimited."""
    def __init__(self, session: Session, today: Callable[[], date] = lambda: _utcnow().date()):
        self.session = session
        self.profiles = repositories.ProfileRepository(session)
        self.today = today

    def _fresh_profile(self, user_id: int) -> models.UserProfile:
        profile = self.profiles.get_or_create(user_id)
        if profile.last_usage_date != self.today():
            profile.daily_usage = 0
            profile.last_usage_date = self.today()
            profile = self.profiles.save(profile)
        return profile

    @staticmethod
    def _tier(profile: models.UserProfile) -> str:
        return 'admin' if profile.role == 'admin' else (profile.subscription_type or 'free')

    def usage_stats(self, user_id: int) -> dict:
        profile = self._fresh_profile(user_id)
        tier = self._tier(profile)
        if tier in ('pro', 'admin'):
            return {'daily_usage': profile.daily_usage, 'subscription_type': tier,
                    'can_answer_more': True, 'remaining_questions': None, 'daily_limit': None}
        limit = settings.FREE_DAILY_QUESTION_LIMIT
        return {
            'daily_usage': profile.daily_usage,
            'subscription_type': tier,
            'can_answer_more': profile.daily_usage < limit,
            'remaining_questions': max(0, limit - profile.daily_usage),
            'daily_limit': limit,
        }

    def increment_usage(self, user_id: int) -> Tuple[int, bool]:
        """Count one answered question. Returns `(daily_usage, limit_reached)`.

        A free user already at the limit is not incremented further.
        """
        profile = self._fresh_profile(user_id)
        limited = self._tier(profile) == 'free'
        if limited and profile.daily_usage >= settings.FREE_DAILY_QUESTION_LIMIT:
            return profile.daily_usage, True
        profile.daily_usage += 1
        profile = self.profiles.save(profile)
        repositories.UsageRepository(self.session).record(user_id, self.today(), questions=1)
        return profile.daily_usage, False

    def can_start_quiz(self, user_id: int) -> Tuple[bool, Optional[str]]:
        stats = self.usage_stats(user_id)
        if stats['can_answer_more']:
            return True, None
        return False, LIMIT_REACHED_REASON


class SubscriptionService:
    """Applies Stripe webhook events to subscription rows.

    Every handler locates the user, writes absolute values and returns; an
    event that cannot be matched to a user is logged and dropped.
    """
    def __init__(self, session: Session, now: Callable[[], datetime] = _utcnow):
        self.session = session
        self.users = repositories.UserRepository(session)
        self.profiles = repositories.ProfileRepository(session)
        self.now = now
        self._handlers = {
            'checkout.session.completed': self.checkout_completed,
            'customer.subscription.created': self.subscription_created,
            'customer.subscription.updated': self.subscription_updated,
            'customer.subscription.deleted': self.subscription_deleted,
            'invoice.payment_succeeded': self.payment_logged,
            'invoice.payment_failed': self.payment_logged,
        }

    def dispatch(self, event: dict) -> bool:
        """Route `event` to its handler. Returns False for unhandled types.

        Handler failures are logged and swallowed so the event is still
        acknowledged.
        """
        event_type = event.get('type')
        obj = (event.get('data') or {}).get('object') or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            billing_logger.info("webhook_unhandled type=%s", event_type)
            return False
        billing_logger.info("webhook_received type=%s id=%s", event_type, event.get('id'))
        try:
            handler(obj)
        except Exception:
            self.session.rollback()
            billing_logger.exception("webhook_handler_failed type=%s id=%s", event_type, event.get('id'))
        return True

    def find_user(self, email: Optional[str], customer_id: Optional[str]) -> Optional[models.User]:
        """Locate a user by exact account email, then by stored Stripe customer id."""
        if email:
            user = self.users.get_by_email(email)
            if user:
                return user
        if customer_id:
            profile = self.profiles.get_by_customer_id(customer_id)
            if profile:
                return self.users.get(profile.auth_user_id)
        billing_logger.warning("webhook_user_not_found email=%s customer=%s", email, customer_id)
        return None

    @staticmethod
    def _user_id_hint(session_obj: dict) -> Optional[int]:
        raw = (session_obj.get('metadata') or {}).get('user_id')
        if not raw and session_obj.get('success_url'):
            raw = (parse_qs(urlsplit(session_obj['success_url']).query).get('user_id') or [None])[0]
        try:
            return int(raw) if raw else None
        except (TypeError, ValueError):
            return None

    def _subscription_user(self, subscription: dict) -> Optional[models.User]:
        email = subscription.get('customer_email')
        if not email:
            billing_logger.warning("webhook_missing_email subscription=%s", subscription.get('id'))
            return None
        return self.find_user(email, subscription.get('customer'))

    def checkout_completed(self, session_obj: dict) -> None:
        user = None
        hinted = self._user_id_hint(session_obj)
        if hinted is not None:
            user = self.users.get(hinted)
        if user is None:
            email = session_obj.get('customer_email') or (session_obj.get('customer_details') or {}).get('email')
            user = self.find_user(email, session_obj.get('customer'))
        if user is None:
            return
        profile = self.profiles.get_or_create(user.id)
        profile.subscription_type = 'pro'
        profile.subscription_status = 'active'
        profile.subscription_start_date = self.now()
        if session_obj.get('customer') and not profile.stripe_customer_id:
            profile.stripe_customer_id = session_obj['customer']
        if session_obj.get('subscription'):
            profile.stripe_subscription_id = session_obj['subscription']
        self.profiles.save(profile)
        billing_logger.info("subscription_activated user_id=%s", user.id)

    def subscription_created(self, subscription: dict) -> None:
        user = self._subscription_user(subscription)
        if user is None:
            return
        profile = self.profiles.get_or_create(user.id)
        profile.subscription_type = 'pro'
        profile.subscription_status = 'active'
        created = subscription.get('created')
        profile.subscription_start_date = datetime.fromtimestamp(created, tz=timezone.utc) if created else self.now()
        profile.stripe_subscription_id = subscription.get('id')
        self.profiles.save(profile)
        billing_logger.info("subscription_created user_id=%s subscription=%s", user.id, subscription.get('id'))

    def subscription_updated(self, subscription: dict) -> None:
        user = self._subscription_user(subscription)
        if user is None:
            return
        profile = self.profiles.get_or_create(user.id)
        profile.subscription_status = 'active' if subscription.get('status') == 'active' else 'inactive'
        self.profiles.save(profile)
        billing_logger.info("subscription_updated user_id=%s status=%s", user.id, profile.subscription_status)

    def subscription_deleted(self, subscription: dict) -> None:
        user = self._subscription_user(subscription)
        if user is None:
            return
        profile = self.profiles.get_or_create(user.id)
        profile.subscription_type = 'free'
        profile.subscription_status = 'cancelled'
        profile.subscription_end_date = self.now()
        self.profiles.save(profile)
        billing_logger.info("subscription_cancelled user_id=%s", user.id)

    def payment_logged(self, invoice: dict) -> None:
        billing_logger.info("invoice_event invoice=%s customer=%s status=%s",
                            invoice.get('id'), invoice.get('customer'), invoice.get('status'))


class CheckoutError(Exception):
    """Checkout failure carrying the HTTP status and message to return."""
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class CheckoutService:
    """Starts a subscription checkout, creating the Stripe customer on first use."""
    def __init__(self, session: Session):
        self.session = session
        self.users = repositories.UserRepository(session)
        self.profiles = repositories.ProfileRepository(session)

    def create_session(self, *, price_id: Optional[str], user_id, success_url: Optional[str], cancel_url: Optional[str]) -> str:
        if not price_id or user_id in (None, ''):
            raise CheckoutError(400, 'Missing required parameters')
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            raise CheckoutError(404, 'User not found')
        user = self.users.get(uid)
        if user is None:
            raise CheckoutError(404, 'User not found')
        profile = self.profiles.get_or_create(uid)
        customer_id = profile.stripe_customer_id
        if not customer_id:
            customer_id = billing.create_customer(user.email, uid)
            profile.stripe_customer_id = customer_id
            self.profiles.save(profile)
        session_id = billing.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            user_id=uid,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        billing_logger.info("checkout_session_created user_id=%s session=%s", uid, session_id)
        return session_id


class StoreRegistry:
    """Owns one `QuizStatsStore` and one `ChapterCatalog` per user.

    Stores are file-backed under `<state_dir>/<user_id>/` and share one
    outbox for remote mirroring. `lock(user_id)` serialises multi-step
    request handlers for a user.
    """
    def __init__(self, state_dir, outbox: Optional[SyncOutbox] = None, db_engine=None):
        self.state_dir = Path(state_dir)
        self.outbox = outbox or SyncOutbox()
        self.engine = db_engine
        self._stores: Dict[int, QuizStatsStore] = {}
        self._catalogs: Dict[int, ChapterCatalog] = {}
        self._locks: Dict[int, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock(self, user_id: int) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(user_id, threading.RLock())

    def stats(self, user_id: int) -> QuizStatsStore:
        with self._guard:
            store = self._stores.get(user_id)
            if store is None:
                store = QuizStatsStore(
                    JsonFileStatePort(self.state_dir / str(user_id)),
                    remote=RemoteStatsWriter(user_id, self.engine),
                    outbox=self.outbox,
                )
                self._stores[user_id] = store
            return store

    def chapters(self, user_id: int) -> ChapterCatalog:
        with self._guard:
            catalog = self._catalogs.get(user_id)
            if catalog is None:
                catalog = ChapterCatalog(JsonFileStatePort(self.state_dir / str(user_id)))
                self._catalogs[user_id] = catalog
            return catalog

    def clear(self) -> None:
        with self._guard:
            self._stores.clear()
            self._catalogs.clear()
