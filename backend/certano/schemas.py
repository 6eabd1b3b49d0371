"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    email: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class AttemptIn(BaseModel):
    """A completed quiz submitted for aggregation."""
    questions_answered: int
    correct_answers: int
    xp_earned: int
    time_spent: float = Field(description="seconds")
    chapters: List[str]
    date: Optional[datetime] = None
    accuracy_rate: Optional[int] = None


class AnswerIn(BaseModel):
    """One answered question during a running quiz."""
    question_id: str
    chapter: Optional[str] = None
    correct: bool
    time_spent: float = 0
    session_correct: Optional[int] = None
    session_answered: Optional[int] = None


class WeeklyGoalIn(BaseModel):
    goal: int


class ChapterAnswerIn(BaseModel):
    chapter: str
    correct: bool


class QuestionOutcomeIn(BaseModel):
    question_id: str
    chapter: str
    correct: bool


class QuestProgressIn(BaseModel):
    value: int


class ChapterIn(BaseModel):
    """Payload for creating a catalog chapter."""
    name: str
    description: str = ""
    color: str = "blue"
    icon: str = ""
    is_active: bool = True


class ChapterUpdateIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    is_active: Optional[bool] = None


class ReorderIn(BaseModel):
    from_index: int
    to_index: int


class SessionAnswerIn(BaseModel):
    question_id: str
    is_correct: bool
    chapter: Optional[str] = None
    user_answer: Optional[str] = None
    time_spent_seconds: int = 0
    answered_at: Optional[datetime] = None


class QuizSessionIn(BaseModel):
    """A finished quiz session with its question-level answers."""
    session_type: str
    chapter_name: Optional[str] = None
    total_time_seconds: int = 0
    xp_earned: int = 0
    answers: List[SessionAnswerIn]
