"""
Tests for lesson and zone unlock rules.
"""

import os
import tempfile

os.environ["TEST_MODE"] = "1"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from typing import Any, Dict, Generator

from llm_learn_vietnamese import db, unlock


@pytest.fixture(scope="function")
def temp_db() -> Generator[None, None, None]:
    """Setup transient SQLite DB for testing."""
    fd, path = tempfile.mkstemp()
    os.close(fd)
    db.engine = create_engine(f"sqlite:///{path}")
    db.SessionLocal = sessionmaker(bind=db.engine, expire_on_commit=False)
    db.Base.metadata.create_all(bind=db.engine)
    yield
    os.unlink(path)


# ── Single lesson rules ────────────────────────────────────────────

def test_guest_must_log_in() -> None:
    status = unlock.check_lesson_unlock(None, False, 1, 1)
    assert status.is_locked
    assert status.reason == "login_required"
    assert status.required_action == "Please log in to access lessons"


def test_unlimited_opens_everything() -> None:
    assert not unlock.check_lesson_unlock("UNLIMITED", True, 5, 9, None, 0, 4).is_locked


def test_free_tier_is_sequential_in_beginner_zone() -> None:
    assert not unlock.check_lesson_unlock("FREE", True, 1, 1).is_locked
    assert not unlock.check_lesson_unlock("FREE", True, 1, 2, "passed").is_locked
    blocked = unlock.check_lesson_unlock("FREE", True, 1, 2, "in_progress")
    assert blocked.reason == "previous_incomplete"
    assert blocked.required_action == "Complete the previous lesson in this topic first"


def test_free_tier_zone_lock_message() -> None:
    status = unlock.check_lesson_unlock("FREE", True, 2, 1, None, 1, 3)
    assert status.to_dict() == {
        "is_locked": True,
        "reason": "zone_locked",
        "required_action": "Complete all topics in Beginner zone to unlock this zone (1/3 topics completed)",
        "completed_topics_in_prev_zone": 1,
        "total_topics_in_prev_zone": 3,
    }
    assert not unlock.check_lesson_unlock("FREE", True, 2, 1, None, 3, 3).is_locked


def test_free_tier_empty_previous_zone_stays_locked() -> None:
    assert unlock.check_lesson_unlock("FREE", True, 2, 1, None, 0, 0).reason == "zone_locked"


def test_plus_tier_ignores_zones() -> None:
    assert not unlock.check_lesson_unlock("PLUS", True, 4, 1, None, 0, 5).is_locked
    status = unlock.check_lesson_unlock("PLUS", True, 4, 3, "not_started")
    assert status.required_action == "Complete the previous lesson first"


def test_unknown_tier_needs_upgrade() -> None:
    status = unlock.check_lesson_unlock("GOLD", True, 1, 1)
    assert status.reason == "tier_restriction"
    assert status.to_dict() == {
        "is_locked": True, "reason": "tier_restriction", "required_action": "Upgrade to access this lesson",
    }


# ── Topic and zone helpers ─────────────────────────────────────────

LESSONS = [{"id": 30, "sort_order": 3}, {"id": 10, "sort_order": 1}, {"id": 20, "sort_order": 2}]


def test_unlocked_lessons_stop_at_first_gap() -> None:
    assert unlock.get_unlocked_lessons_in_topic("FREE", 1, LESSONS, {}) == {10}
    assert unlock.get_unlocked_lessons_in_topic("FREE", 1, LESSONS, {10: "passed"}) == {10, 20}
    assert unlock.get_unlocked_lessons_in_topic("PLUS", 3, LESSONS, {10: "passed", 20: "passed"}) == {10, 20, 30}
    assert unlock.get_unlocked_lessons_in_topic("UNLIMITED", 5, LESSONS, {}) == {10, 20, 30}


def test_unlocked_lessons_in_locked_zone() -> None:
    assert unlock.get_unlocked_lessons_in_topic("FREE", 2, LESSONS, {10: "passed"}, 2, 3) == set()
    assert unlock.get_unlocked_lessons_in_topic("FREE", 2, LESSONS, {}, 3, 3) == {10}


def test_zone_helpers() -> None:
    assert unlock.is_zone_unlocked("FREE", 1, 0, 0)
    assert not unlock.is_zone_unlocked("FREE", 3, 1, 2)
    assert unlock.is_zone_unlocked("FREE", 3, 2, 2)
    assert unlock.is_zone_unlocked("PLUS", 5, 0, 9)
    assert unlock.calculate_zone_progress_percent(1, 8) == 13
    assert unlock.calculate_zone_progress_percent(0, 0) == 0
    assert unlock.get_next_unlockable_zone(1, 4, 4) == {"next_zone_level": 2, "is_ready_to_unlock": True}
    assert unlock.get_next_unlockable_zone(2, 1, 4)["is_ready_to_unlock"] is False
    assert unlock.get_zone_name(2) == "Elementary"
    assert unlock.get_zone_name(7) == "Zone 7"


# ── Topic listing ──────────────────────────────────────────────────

def _seed_curriculum() -> Dict[str, int]:
    session = db.get_session()
    beginner = db.Zone(level=1, name="Beginner")
    elementary = db.Zone(level=2, name="Elementary")
    session.add_all([beginner, elementary])
    session.flush()
    greetings = db.Topic(zone_id=beginner.id, slug="greetings", name="Greetings", sort_order=1)
    travel = db.Topic(zone_id=elementary.id, slug="travel", name="Travel", sort_order=1)
    session.add_all([greetings, travel])
    session.flush()
    hello = db.Lesson(topic_id=greetings.id, title="Hello", sort_order=1)
    goodbye = db.Lesson(topic_id=greetings.id, title="Goodbye", sort_order=2)
    airport = db.Lesson(topic_id=travel.id, title="At the airport", sort_order=1)
    session.add_all([hello, goodbye, airport])
    session.commit()
    ids = {"greetings": greetings.id, "travel": travel.id,
           "hello": hello.id, "goodbye": goodbye.id, "airport": airport.id}
    session.close()
    return ids


def _pass(user: str, lesson_id: int, topic_id: int, score: float = 90.0) -> None:
    session = db.get_session()
    session.add(db.UserLessonProgress(user=user, lesson_id=lesson_id, topic_id=topic_id,
                                      status="passed", total_attempts=1, best_score_percent=score))
    session.commit()
    session.close()


def test_topic_lessons_for_new_free_user(temp_db: Any) -> None:
    ids = _seed_curriculum()
    listing = unlock.get_topic_lessons_with_status("newbie", ids["greetings"])
    assert listing["topic"] == {"id": ids["greetings"], "slug": "greetings", "name": "Greetings"}
    assert listing["zone"] == {"level": 1, "name": "Beginner"}
    assert listing["tier"] == "FREE"
    assert listing["zone_unlocked"] is True
    assert [lesson["unlock"]["is_locked"] for lesson in listing["lessons"]] == [False, True]
    assert listing["lessons"][0]["progress_status"] == "not_started"

    travel = unlock.get_topic_lessons_with_status("newbie", ids["travel"])
    assert travel["zone_unlocked"] is False
    assert travel["lessons"][0]["unlock"]["reason"] == "zone_locked"
    assert "(0/1 topics completed)" in travel["lessons"][0]["unlock"]["required_action"]


def test_finishing_a_zone_opens_the_next(temp_db: Any) -> None:
    ids = _seed_curriculum()
    user = "finisher"
    _pass(user, ids["hello"], ids["greetings"], 70.0)
    listing = unlock.get_topic_lessons_with_status(user, ids["greetings"])
    assert [lesson["unlock"]["is_locked"] for lesson in listing["lessons"]] == [False, False]
    assert listing["lessons"][0]["best_score_percent"] == 70.0

    _pass(user, ids["goodbye"], ids["greetings"])
    travel = unlock.get_topic_lessons_with_status(user, ids["travel"])
    assert travel["zone_unlocked"] is True
    assert travel["lessons"][0]["unlock"] == {"is_locked": False}


def test_topic_lessons_for_plus_user_and_guest(temp_db: Any) -> None:
    ids = _seed_curriculum()
    db.set_user_settings("subscriber", tier="PLUS")
    travel = unlock.get_topic_lessons_with_status("subscriber", ids["travel"])
    assert travel["tier"] == "PLUS"
    assert travel["zone_unlocked"] is True
    assert travel["lessons"][0]["unlock"]["is_locked"] is False

    guest = unlock.get_topic_lessons_with_status(None, ids["greetings"])
    assert guest["tier"] is None
    assert guest["zone_unlocked"] is False
    assert all(lesson["unlock"]["reason"] == "login_required" for lesson in guest["lessons"])

    assert unlock.get_topic_lessons_with_status("subscriber", 999) is None
