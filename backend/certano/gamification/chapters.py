"""Chapter catalog: the named topic groupings questions belong to."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from . import catalog
from .errors import NotFoundError, ValidationError
from .persistence import StatePort
from .state import Chapter, ChapterCatalogState

CATALOG_KEY = "certano-chapters"

_EDITABLE_FIELDS = ("name", "description", "color", "icon", "is_active")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChapterCatalog:
    def __init__(self, port: StatePort, clock: Callable[[], datetime] = _utcnow):
        self._port = port
        self._clock = clock
        self._lock = threading.RLock()
        raw = port.load(CATALOG_KEY)
        if raw is None:
            self.state = ChapterCatalogState(chapters=catalog.default_chapters(clock()))
            self._save()
        else:
            self.state = ChapterCatalogState.model_validate(raw)

    def _save(self) -> None:
        self._port.save(CATALOG_KEY, self.state.model_dump(mode="json"))

    def list(self) -> List[Chapter]:
        return sorted(self.state.chapters, key=lambda c: c.order)

    def get(self, chapter_id: str) -> Optional[Chapter]:
        return next((c for c in self.state.chapters if c.id == chapter_id), None)

    def _require(self, chapter_id: str) -> Chapter:
        chapter = self.get(chapter_id)
        if chapter is None:
            raise NotFoundError(f"chapter {chapter_id} not found")
        return chapter

    def add(self, name: str, description: str = "", color: str = "blue", icon: str = "", is_active: bool = True) -> Chapter:
        if not name or not name.strip():
            raise ValidationError("chapter name required")
        with self._lock:
            now = self._clock()
            next_order = max((c.order for c in self.state.chapters), default=0) + 1
            chapter = Chapter(
                id=uuid.uuid4().hex,
                name=name.strip(),
                description=description,
                color=color,
                icon=icon,
                order=next_order,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.state.chapters.append(chapter)
            self._save()
            return chapter

    def update(self, chapter_id: str, **changes) -> Chapter:
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"cannot update fields: {', '.join(sorted(unknown))}")
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("chapter name required")
        with self._lock:
            chapter = self._require(chapter_id)
            for field, value in changes.items():
                if value is not None:
                    setattr(chapter, field, value)
            chapter.updated_at = self._clock()
            self._save()
            return chapter

    def delete(self, chapter_id: str) -> None:
        with self._lock:
            chapter = self._require(chapter_id)
            self.state.chapters.remove(chapter)
            self._save()

    def reorder(self, from_index: int, to_index: int) -> List[Chapter]:
        """Move the chapter at `from_index` to `to_index` and renumber orders 1..n."""
        with self._lock:
            ordered = self.list()
            if not (0 <= from_index < len(ordered) and 0 <= to_index < len(ordered)):
                raise ValidationError("reorder index out of range")
            moved = ordered.pop(from_index)
            ordered.insert(to_index, moved)
            now = self._clock()
            for position, chapter in enumerate(ordered, start=1):
                chapter.order = position
                chapter.updated_at = now
            self.state.chapters = ordered
            self._save()
            return ordered
