"""Gamification core: statistics, chapter progress, error ledger, quests and badges.

`QuizStatsStore` is the single owner of a user's state; persistence and
remote mirroring are injected (`StatePort`, `SyncOutbox`).
"""

from .chapters import ChapterCatalog
from .errors import GamificationError, NotFoundError, ValidationError
from .outbox import SyncOutbox
from .persistence import InMemoryStatePort, JsonFileStatePort, StatePort
from .store import QuizStatsStore

__all__ = [
    "ChapterCatalog",
    "GamificationError",
    "InMemoryStatePort",
    "JsonFileStatePort",
    "NotFoundError",
    "QuizStatsStore",
    "StatePort",
    "SyncOutbox",
    "ValidationError",
]
