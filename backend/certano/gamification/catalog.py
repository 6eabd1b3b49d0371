"""Fixed catalogs: badges, daily/weekly quests and default chapters."""

from datetime import datetime, timedelta
from typing import List

from .state import Badge, Chapter, Quest, QuestReward

DAILY_QUEST_TTL = timedelta(hours=24)
WEEKLY_QUEST_TTL = timedelta(days=7)

# (id, name, description, icon, category, rarity), in display order
_BADGES = [
    ('first-quiz', 'Erste Schritte', 'Absolviere dein erstes Quiz', '🎯', 'special', 'common'),
    ('streak-3', 'Streak-Anfänger', '3 Tage in Folge lernen', '🔥', 'streak', 'common'),
    ('streak-7', 'Streak-Meister', '7 Tage in Folge lernen', '🔥🔥', 'streak', 'rare'),
    ('streak-30', 'Streak-Legende', '30 Tage in Folge lernen', '🔥🔥🔥', 'streak', 'epic'),
    ('accuracy-100', 'Perfektionist', 'Erreiche 100% Genauigkeit', '💯', 'accuracy', 'rare'),
    ('level-5', 'Erfahrener Lerner', 'Erreiche Level 5', '⭐', 'level', 'common'),
    ('level-10', 'Lern-Experte', 'Erreiche Level 10', '⭐⭐', 'level', 'rare'),
    ('weekly-champion', 'Wochen-Champion', 'Absolviere wöchentliche Quest', '🏆', 'special', 'rare'),
    ('streak-master', 'Streak-Meister', 'Halte einen 7-Tage-Streak', '👑', 'streak', 'epic'),
]

BADGE_IDS = [b[0] for b in _BADGES]

_DEFAULT_CHAPTERS = [
    ('1', 'Signale', 'Alle Fragen zu Signalen, Lichtzeichen und akustischen Signalen', 'blue', '🚦'),
    ('2', 'Bremssysteme', 'Fragen zu pneumatischen, elektrischen und mechanischen Bremssystemen', 'red', '🛑'),
    ('3', 'Fahrzeugtechnik', 'Technische Fragen zu Lokomotiven, Waggons und Systemen', 'green', '🚂'),
    ('4', 'Sicherheit', 'Sicherheitsvorschriften, Notfallverfahren und Schutzmaßnahmen', 'yellow', '⚠️'),
    ('5', 'Störungen', 'Fehlerbehebung, Störungsdiagnose und Notfallverfahren', 'orange', '🔧'),
]


def badge_catalog() -> List[Badge]:
    """Return fresh, locked copies of every catalog badge."""
    return [
        Badge(id=bid, name=name, description=desc, icon=icon, category=cat, rarity=rarity)
        for bid, name, desc, icon, cat, rarity in _BADGES
    ]


def daily_quests(now: datetime) -> List[Quest]:
    expires = now + DAILY_QUEST_TTL
    return [
        Quest(
            id='daily-questions',
            title='Fragen-Meister',
            description='Beantworte 10 Fragen heute',
            type='daily',
            category='questions',
            target=10,
            reward=QuestReward(xp=50),
            expires_at=expires,
            is_repeatable=True,
        ),
        Quest(
            id='daily-streak',
            title='Streak-Halter',
            description='Lerne heute für deinen Streak',
            type='daily',
            category='streak',
            target=1,
            reward=QuestReward(xp=30),
            expires_at=expires,
            is_repeatable=True,
        ),
        Quest(
            id='daily-accuracy',
            title='Präzision',
            description='Erreiche 80% Genauigkeit in einem Quiz',
            type='daily',
            category='accuracy',
            target=80,
            reward=QuestReward(xp=40),
            expires_at=expires,
            is_repeatable=True,
        ),
    ]


def weekly_quests(now: datetime) -> List[Quest]:
    expires = now + WEEKLY_QUEST_TTL
    return [
        Quest(
            id='weekly-questions',
            title='Wochen-Champion',
            description='Beantworte 50 Fragen diese Woche',
            type='weekly',
            category='questions',
            target=50,
            reward=QuestReward(xp=200, badge='weekly-champion'),
            expires_at=expires,
            is_repeatable=True,
        ),
        Quest(
            id='weekly-streak',
            title='Streak-Meister',
            description='Halte einen 7-Tage-Streak',
            type='weekly',
            category='streak',
            target=7,
            reward=QuestReward(xp=150, badge='streak-master'),
            expires_at=expires,
            is_repeatable=True,
        ),
    ]


def default_chapters(now: datetime) -> List[Chapter]:
    return [
        Chapter(id=cid, name=name, description=desc, color=color, icon=icon, order=i,
                is_active=True, created_at=now, updated_at=now)
        for i, (cid, name, desc, color, icon) in enumerate(_DEFAULT_CHAPTERS, start=1)
    ]
