"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the Certano backend.
Controllers are intentionally thin: they accept requests, delegate to
the per-user gamification stores or to services, and return JSON.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- /stats, /chapters, /errors, /quests, /badges (gamification core)
- /catalog/chapters (chapter catalog)
- /usage (daily question allowance)
- /sessions, /stats/remote (remote statistics)
- GET /billing/subscription
- POST /api/create-checkout-session
- POST /api/stripe-webhook
- GET /health
"""

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool
from typing import Optional
import json
import logging
import time
import uuid
from .database import create_db_and_tables, get_session
from . import billing, services, repositories, models
from .auth import get_current_user
from .gamification import NotFoundError
from .schemas import (
    AnswerIn,
    AttemptIn,
    ChapterAnswerIn,
    ChapterIn,
    ChapterUpdateIn,
    QuestionOutcomeIn,
    QuestProgressIn,
    QuizSessionIn,
    RegisterIn,
    ReorderIn,
    WeeklyGoalIn,
)
from .utils.rate_limit import InMemoryRateLimiter
from .config import settings

app = FastAPI(title="Certano API")
logger = logging.getLogger("certano.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_checkout_rate_limiter = InMemoryRateLimiter()
registry = services.StoreRegistry(settings.STATE_DIR)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        if request.url.path.startswith("/api"):
            logger.exception(
                "request_failed %s",
                json.dumps(
                    {
                        "request_id": req_id,
                        "path": request.url.path,
                        "method": request.method,
                        "duration_ms": elapsed_ms,
                        "client": request.client.host if request.client else "unknown",
                    },
                    ensure_ascii=True,
                ),
            )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
    return response


def _enforce_checkout_rate_limit(request: Request) -> None:
    key = f"{request.client.host if request.client else 'unknown'}:{request.url.path}"
    allowed, retry_after = _checkout_rate_limiter.allow(key, settings.CHECKOUT_RATE_LIMIT_PER_MIN, 60)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


# -- auth -------------------------------------------------------------------

@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns the existing user if the email is already registered.
    """
    existing = repositories.UserRepository(db).get_by_email(payload.email.strip())
    if existing:
        return {'id': existing.id, 'email': existing.email}
    try:
        user = services.AuthService(db).register(payload.email, payload.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {'id': user.id, 'email': user.email}


@app.post('/auth/login')
def login(payload: RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token."""
    token = services.AuthService(db).authenticate(payload.email, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


# -- statistics -------------------------------------------------------------

@app.get('/stats')
def get_stats(user: models.User = Depends(get_current_user)):
    """Return the caller's aggregate statistics and the attempt log, newest first."""
    store = registry.stats(user.id)
    return {
        'user_stats': store.user_stats.model_dump(mode='json'),
        'attempts': [a.model_dump(mode='json') for a in store.attempts],
    }


@app.post('/stats/attempts')
def record_attempt(payload: AttemptIn, user: models.User = Depends(get_current_user)):
    """Record a completed quiz; returns the attempt, new stats and unlocked badge ids."""
    store = registry.stats(user.id)
    try:
        outcome = store.record_attempt(**payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return outcome.model_dump(mode='json')


@app.post('/stats/answers')
def record_answer(payload: AnswerIn, user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    """Record one answered question during a running quiz.

    Free users past their daily allowance get 403.
    """
    usage = services.UsageService(db)
    with registry.lock(user.id):
        allowed, reason = usage.can_start_quiz(user.id)
        if not allowed:
            raise HTTPException(status_code=403, detail=reason)
        store = registry.stats(user.id)
        store.ensure_daily_quests()
        try:
            unlocked = store.record_quiz_answer(
                payload.question_id, payload.chapter, payload.correct, payload.time_spent,
                session_correct=payload.session_correct, session_answered=payload.session_answered,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        daily_usage, limit_reached = usage.increment_usage(user.id)
    return {
        'user_stats': store.user_stats.model_dump(mode='json'),
        'unlocked_badges': unlocked,
        'daily_usage': daily_usage,
        'limit_reached': limit_reached,
    }


@app.put('/stats/weekly-goal')
def set_weekly_goal(payload: WeeklyGoalIn, user: models.User = Depends(get_current_user)):
    try:
        stats = registry.stats(user.id).set_weekly_goal(payload.goal)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return stats.model_dump(mode='json')


@app.get('/stats/weekly')
def weekly_attempts(user: models.User = Depends(get_current_user)):
    """Attempts dated in the current week (weeks start Sunday 00:00 UTC)."""
    store = registry.stats(user.id)
    return {
        'weekly_goal': store.user_stats.weekly_goal,
        'weekly_progress': store.user_stats.weekly_progress,
        'attempts': [a.model_dump(mode='json') for a in store.weekly_attempts()],
    }


@app.delete('/stats')
def reset_stats(user: models.User = Depends(get_current_user)):
    store = registry.stats(user.id)
    with registry.lock(user.id):
        store.reset_stats()
        store.ensure_badges()
    return {'status': 'ok'}


# -- chapter progress ---------------------------------------------------------

@app.get('/chapters')
def list_chapter_stats(user: models.User = Depends(get_current_user)):
    return [c.model_dump(mode='json') for c in registry.stats(user.id).state.chapter_stats]


@app.post('/chapters/answers')
def record_chapter_answer(payload: ChapterAnswerIn, user: models.User = Depends(get_current_user)):
    try:
        row = registry.stats(user.id).record_chapter_answer(payload.chapter, payload.correct)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return row.model_dump(mode='json')


@app.get('/chapters/{chapter_name}')
def chapter_progress(chapter_name: str, user: models.User = Depends(get_current_user)):
    row = registry.stats(user.id).chapter_progress(chapter_name)
    if row is None:
        raise HTTPException(status_code=404, detail='chapter has no progress yet')
    return row.model_dump(mode='json')


# -- error ledger -------------------------------------------------------------

@app.get('/errors')
def top_errors(chapter: Optional[str] = None, limit: Optional[int] = None, user: models.User = Depends(get_current_user)):
    """Most-missed questions, most errors first, ties broken by most recent error."""
    rows = registry.stats(user.id).top_errors(chapter, limit)
    return [e.model_dump(mode='json') for e in rows]


@app.post('/errors')
def record_question_outcome(payload: QuestionOutcomeIn, user: models.User = Depends(get_current_user)):
    try:
        row = registry.stats(user.id).record_question_outcome(payload.question_id, payload.chapter, payload.correct)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return row.model_dump(mode='json')


@app.get('/errors/quiz')
def error_review_quiz(chapter: Optional[str] = None, question_count: int = 10, user: models.User = Depends(get_current_user)):
    """Question ids for a "review mistakes" quiz."""
    return {'question_ids': registry.stats(user.id).error_question_ids_for_quiz(chapter, question_count)}


# -- quests -------------------------------------------------------------------

@app.get('/quests')
def active_quests(user: models.User = Depends(get_current_user)):
    """Active quests, regenerating the daily and weekly sets when they ran out."""
    store = registry.stats(user.id)
    with registry.lock(user.id):
        store.ensure_daily_quests()
        store.ensure_weekly_quests()
        return [q.model_dump(mode='json') for q in store.active_quests()]


@app.get('/quests/completed')
def completed_quests(user: models.User = Depends(get_current_user)):
    return [q.model_dump(mode='json') for q in registry.stats(user.id).completed_quests()]


@app.post('/quests/{quest_id}/progress')
def update_quest_progress(quest_id: str, payload: QuestProgressIn, user: models.User = Depends(get_current_user)):
    quest = registry.stats(user.id).update_quest_progress(quest_id, payload.value)
    if quest is None:
        raise HTTPException(status_code=404, detail='quest not found')
    return quest.model_dump(mode='json')


@app.post('/quests/{quest_id}/complete')
def complete_quest(quest_id: str, user: models.User = Depends(get_current_user)):
    """Grant a quest's reward. `granted` is false when the quest was already completed."""
    store = registry.stats(user.id)
    if store.get_quest(quest_id) is None:
        raise HTTPException(status_code=404, detail='quest not found')
    granted = store.complete_quest(quest_id)
    return {'granted': granted, 'user_stats': store.user_stats.model_dump(mode='json')}


# -- badges -------------------------------------------------------------------

@app.get('/badges')
def list_badges(user: models.User = Depends(get_current_user)):
    store = registry.stats(user.id)
    store.ensure_badges()
    return [b.model_dump(mode='json') for b in store.state.badges]


@app.get('/badges/unlocked')
def unlocked_badges(user: models.User = Depends(get_current_user)):
    return [b.model_dump(mode='json') for b in registry.stats(user.id).unlocked_badges()]


@app.post('/badges/{badge_id}/unlock')
def unlock_badge(badge_id: str, user: models.User = Depends(get_current_user)):
    return {'unlocked': registry.stats(user.id).unlock_badge(badge_id)}


# -- chapter catalog ----------------------------------------------------------

@app.get('/catalog/chapters')
def list_catalog_chapters(user: models.User = Depends(get_current_user)):
    return [c.model_dump(mode='json') for c in registry.chapters(user.id).list()]


@app.post('/catalog/chapters')
def add_catalog_chapter(payload: ChapterIn, user: models.User = Depends(get_current_user)):
    try:
        chapter = registry.chapters(user.id).add(**payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return chapter.model_dump(mode='json')


@app.post('/catalog/chapters/reorder')
def reorder_catalog_chapters(payload: ReorderIn, user: models.User = Depends(get_current_user)):
    try:
        chapters = registry.chapters(user.id).reorder(payload.from_index, payload.to_index)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [c.model_dump(mode='json') for c in chapters]


@app.get('/catalog/chapters/{chapter_id}')
def get_catalog_chapter(chapter_id: str, user: models.User = Depends(get_current_user)):
    chapter = registry.chapters(user.id).get(chapter_id)
    if chapter is None:
        raise HTTPException(status_code=404, detail='chapter not found')
    return chapter.model_dump(mode='json')


@app.patch('/catalog/chapters/{chapter_id}')
def update_catalog_chapter(chapter_id: str, payload: ChapterUpdateIn, user: models.User = Depends(get_current_user)):
    try:
        chapter = registry.chapters(user.id).update(chapter_id, **payload.model_dump(exclude_unset=True))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return chapter.model_dump(mode='json')


@app.delete('/catalog/chapters/{chapter_id}')
def delete_catalog_chapter(chapter_id: str, user: models.User = Depends(get_current_user)):
    try:
        registry.chapters(user.id).delete(chapter_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {'status': 'ok'}


# -- usage --------------------------------------------------------------------

@app.get('/usage')
def usage_stats(user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    return services.UsageService(db).usage_stats(user.id)


@app.get('/usage/can-start')
def can_start_quiz(user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    allowed, reason = services.UsageService(db).can_start_quiz(user.id)
    return {'can_start': allowed, 'reason': reason}


@app.post('/usage/increment')
def increment_usage(user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    daily_usage, limit_reached = services.UsageService(db).increment_usage(user.id)
    return {'daily_usage': daily_usage, 'limit_reached': limit_reached}


# -- remote statistics --------------------------------------------------------

@app.post('/sessions')
def save_quiz_session(payload: QuizSessionIn, user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    """Log a finished quiz session with its answers and fold them into chapter rows."""
    try:
        record = services.QuizSessionService(db).save(
            user.id,
            payload.session_type,
            [a.model_dump() for a in payload.answers],
            chapter_name=payload.chapter_name,
            total_time_seconds=payload.total_time_seconds,
            xp_earned=payload.xp_earned,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        'id': record.id,
        'total_questions': record.total_questions,
        'correct_answers': record.correct_answers,
        'accuracy_rate': record.accuracy_rate,
    }


@app.get('/sessions')
def recent_sessions(limit: int = 10, user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    try:
        rows = services.QuizSessionService(db).recent(user.id, limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [s.model_dump(mode='json') for s in rows]


@app.get('/stats/remote')
def remote_stats(user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    return services.RemoteStatsService(db).get_stats(user.id)


@app.get('/stats/remote/sessions')
def remote_attempts(limit: int = 10, user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    try:
        rows = services.RemoteStatsService(db).recent_attempts(user.id, limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [r.model_dump(mode='json') for r in rows]


@app.get('/stats/remote/chapters')
def remote_chapter_stats(user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    return [r.model_dump(mode='json') for r in services.RemoteStatsService(db).chapter_stats(user.id)]


# -- billing ------------------------------------------------------------------

@app.get('/billing/subscription')
def subscription_status(user: models.User = Depends(get_current_user), db: Session = Depends(get_session)):
    profile = repositories.ProfileRepository(db).get_or_create(user.id)
    return {
        'subscription_type': profile.subscription_type,
        'subscription_status': profile.subscription_status,
        'subscription_start_date': profile.subscription_start_date,
        'subscription_end_date': profile.subscription_end_date,
        'stripe_customer_id': profile.stripe_customer_id,
    }


@app.post('/api/create-checkout-session')
async def create_checkout_session(request: Request, db: Session = Depends(get_session)):
    """Start a Stripe subscription checkout.

    Body: `{priceId, userId, successUrl, cancelUrl}`. Errors are returned
    as `{error}` with 400 (missing fields), 404 (unknown user) or 500.
    """
    _enforce_checkout_rate_limit(request)
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}
    try:
        session_id = await run_in_threadpool(
            services.CheckoutService(db).create_session,
            price_id=body.get('priceId'),
            user_id=body.get('userId'),
            success_url=body.get('successUrl'),
            cancel_url=body.get('cancelUrl'),
        )
    except services.CheckoutError as e:
        return JSONResponse(status_code=e.status_code, content={'error': e.message})
    except Exception as e:
        logger.exception("checkout_failed request_id=%s", request.state.request_id)
        return JSONResponse(status_code=500, content={'error': str(e)})
    return {'sessionId': session_id}


@app.post('/api/stripe-webhook')
async def stripe_webhook(request: Request, db: Session = Depends(get_session)):
    """Verify and dispatch a Stripe event. Always acknowledges a verified event."""
    payload = await request.body()
    try:
        event = billing.verify_event(payload, request.headers.get('stripe-signature', ''))
    except billing.InvalidWebhook as e:
        logger.warning("webhook_rejected request_id=%s reason=%s", request.state.request_id, e)
        return JSONResponse(status_code=400, content={'error': str(e)})
    except billing.BillingConfigError as e:
        logger.error("webhook_misconfigured request_id=%s reason=%s", request.state.request_id, e)
        return JSONResponse(status_code=500, content={'error': str(e)})
    try:
        await run_in_threadpool(services.SubscriptionService(db).dispatch, event)
    except Exception as e:
        logger.exception("webhook_failed request_id=%s", request.state.request_id)
        return JSONResponse(status_code=500, content={'error': str(e)})
    return {'received': True}


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
