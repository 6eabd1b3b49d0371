from datetime import timedelta

import pytest

from certano.gamification import ChapterCatalog, NotFoundError, ValidationError
from certano.gamification.chapters import CATALOG_KEY


@pytest.fixture
def chapters(port, clock):
    return ChapterCatalog(port, clock=clock)


def test_default_chapters_are_seeded(chapters, port):
    names = [c.name for c in chapters.list()]
    assert names == ['Signale', 'Bremssysteme', 'Fahrzeugtechnik', 'Sicherheit', 'Störungen']
    assert [c.order for c in chapters.list()] == [1, 2, 3, 4, 5]
    assert len(port.load(CATALOG_KEY)['chapters']) == 5


def test_add_appends_with_next_order(chapters):
    chapter = chapters.add('Betriebsvorschriften', description='Regeln', color='purple')
    assert chapter.order == 6
    assert chapters.get(chapter.id).name == 'Betriebsvorschriften'
    with pytest.raises(ValidationError):
        chapters.add('   ')


def test_update_changes_fields_and_timestamp(chapters, clock):
    clock.now += timedelta(hours=1)
    updated = chapters.update('1', name='Signale & Zeichen', is_active=False)
    assert updated.name == 'Signale & Zeichen'
    assert updated.is_active is False
    assert updated.updated_at == clock.now
    with pytest.raises(NotFoundError):
        chapters.update('missing', name='x')
    with pytest.raises(ValidationError):
        chapters.update('1', order=9)


def test_delete(chapters):
    chapters.delete('3')
    assert chapters.get('3') is None
    assert len(chapters.list()) == 4
    with pytest.raises(NotFoundError):
        chapters.delete('3')


def test_reorder_renumbers_from_one(chapters):
    ordered = chapters.reorder(4, 0)
    assert [c.name for c in ordered] == ['Störungen', 'Signale', 'Bremssysteme', 'Fahrzeugtechnik', 'Sicherheit']
    assert [c.order for c in ordered] == [1, 2, 3, 4, 5]
    with pytest.raises(ValidationError):
        chapters.reorder(0, 7)


def test_catalog_survives_reload(chapters, port, clock):
    chapters.add('Neu')
    chapters.reorder(5, 0)
    reloaded = ChapterCatalog(port, clock=clock)
    assert [c.name for c in reloaded.list()][0] == 'Neu'
