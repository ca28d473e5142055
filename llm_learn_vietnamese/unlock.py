"""
Lesson and zone unlock rules per subscription tier.

- UNLIMITED: everything is open.
- PLUS: every zone is open, lessons unlock one after another inside a topic.
- FREE: Beginner (zone 1) is open. Finishing every topic of zone N opens
  zone N+1. Inside a topic, lessons unlock one after another.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Set

from .db import Lesson, Topic, UserLessonProgress, Zone, get_session, get_user_settings

TIERS = ("FREE", "PLUS", "UNLIMITED")
ZONE_NAMES = {1: "Beginner", 2: "Elementary", 3: "Intermediate", 4: "Advanced", 5: "Expert"}


@dataclass
class LessonUnlockStatus:
    is_locked: bool
    reason: Optional[str] = None
    required_action: Optional[str] = None
    completed_topics_in_prev_zone: Optional[int] = None
    total_topics_in_prev_zone: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


UNLOCKED = LessonUnlockStatus(is_locked=False)


def get_zone_name(level: int) -> str:
    return ZONE_NAMES.get(level, f"Zone {level}")


def _previous_zone_complete(completed: int, total: int) -> bool:
    return total > 0 and completed >= total


def _sequential(lesson_sort_order: int, previous_status: Optional[str], action: str) -> LessonUnlockStatus:
    if lesson_sort_order == 1 or previous_status == "passed":
        return UNLOCKED
    return LessonUnlockStatus(True, "previous_incomplete", action)


def check_lesson_unlock(
    user_tier: Optional[str],
    is_authenticated: bool,
    zone_level: int,
    lesson_sort_order: int,
    previous_lesson_status: Optional[str] = None,
    completed_topics_in_previous_zone: int = 0,
    total_topics_in_previous_zone: int = 0,
) -> LessonUnlockStatus:
    """Whether one lesson is open. ``previous_lesson_status`` is the progress
    status of the lesson just before it in the same topic, if any."""
    if not is_authenticated:
        return LessonUnlockStatus(True, "login_required", "Please log in to access lessons")

    if user_tier == "UNLIMITED":
        return UNLOCKED

    if user_tier == "FREE":
        if zone_level != 1 and not _previous_zone_complete(
                completed_topics_in_previous_zone, total_topics_in_previous_zone):
            zone_name = get_zone_name(zone_level - 1)
            return LessonUnlockStatus(
                True,
                "zone_locked",
                f"Complete all topics in {zone_name} zone to unlock this zone "
                f"({completed_topics_in_previous_zone}/{total_topics_in_previous_zone} topics completed)",
                completed_topics_in_previous_zone,
                total_topics_in_previous_zone,
            )
        return _sequential(lesson_sort_order, previous_lesson_status,
                           "Complete the previous lesson in this topic first")

    if user_tier == "PLUS":
        return _sequential(lesson_sort_order, previous_lesson_status, "Complete the previous lesson first")

    return LessonUnlockStatus(True, "tier_restriction", "Upgrade to access this lesson")


def get_unlocked_lessons_in_topic(
    user_tier: str,
    zone_level: int,
    lessons: List[Dict[str, Any]],
    progress_by_lesson: Dict[int, str],
    completed_topics_in_previous_zone: int = 0,
    total_topics_in_previous_zone: int = 0,
) -> Set[int]:
    """Ids of open lessons. ``lessons`` are ``{id, sort_order}`` dicts and
    ``progress_by_lesson`` maps lesson id to progress status. Unlocking stops
    at the first lesson whose predecessor is not passed."""
    if user_tier == "UNLIMITED":
        return {lesson["id"] for lesson in lessons}

    if user_tier == "FREE" and zone_level > 1 and not _previous_zone_complete(
            completed_topics_in_previous_zone, total_topics_in_previous_zone):
        return set()

    unlocked: Set[int] = set()
    ordered = sorted(lessons, key=lambda lesson: lesson["sort_order"])
    for i, lesson in enumerate(ordered):
        if i == 0 or progress_by_lesson.get(ordered[i - 1]["id"]) == "passed":
            unlocked.add(lesson["id"])
        else:
            break
    return unlocked


def is_zone_unlocked(user_tier: str, zone_level: int, completed_topics_in_previous_zone: int,
                     total_topics_in_previous_zone: int) -> bool:
    if user_tier in ("UNLIMITED", "PLUS") or zone_level == 1:
        return True
    return _previous_zone_complete(completed_topics_in_previous_zone, total_topics_in_previous_zone)


def calculate_zone_progress_percent(completed_topics: int, total_topics: int) -> int:
    if total_topics == 0:
        return 0
    return int(completed_topics / total_topics * 100 + 0.5)


def get_next_unlockable_zone(current_zone_level: int, completed_topics_in_current_zone: int,
                             total_topics_in_current_zone: int) -> Dict[str, Any]:
    return {
        "next_zone_level": current_zone_level + 1,
        "is_ready_to_unlock": _previous_zone_complete(completed_topics_in_current_zone,
                                                      total_topics_in_current_zone),
    }


def _topic_completion(session, user: str, zone_id: int) -> Dict[str, int]:
    """How many topics of a zone have every lesson passed."""
    topics = session.query(Topic).filter_by(zone_id=zone_id).all()
    passed = {
        p.lesson_id for p in session.query(UserLessonProgress)
        .filter_by(user=user, status="passed").all()
    }
    completed = 0
    for topic in topics:
        lesson_ids = [lesson.id for lesson in session.query(Lesson).filter_by(topic_id=topic.id).all()]
        if lesson_ids and all(lid in passed for lid in lesson_ids):
            completed += 1
    return {"completed": completed, "total": len(topics)}


def get_topic_lessons_with_status(user: Optional[str], topic_id: int) -> Optional[Dict[str, Any]]:
    """Lessons of a topic with the learner's progress and lock state, or None
    when the topic does not exist. A missing ``user`` means a guest."""
    session = get_session()
    try:
        topic = session.get(Topic, topic_id)
        if topic is None:
            return None
        zone = session.get(Zone, topic.zone_id)
        zone_level = zone.level if zone else 1

        tier = get_user_settings(user)["tier"] if user else None
        prev = {"completed": 0, "total": 0}
        if zone_level > 1:
            prev_zone = session.query(Zone).filter_by(level=zone_level - 1).first()
            if prev_zone is not None:
                prev = _topic_completion(session, user, prev_zone.id) if user else prev

        lessons = (
            session.query(Lesson)
            .filter_by(topic_id=topic_id)
            .order_by(Lesson.sort_order.asc(), Lesson.id.asc())
            .all()
        )
        progress = {
            p.lesson_id: p for p in session.query(UserLessonProgress)
            .filter(UserLessonProgress.user == user,
                    UserLessonProgress.lesson_id.in_([lesson.id for lesson in lessons])).all()
        } if user and lessons else {}

        items = []
        previous_status = None
        for lesson in lessons:
            record = progress.get(lesson.id)
            status = check_lesson_unlock(
                tier, bool(user), zone_level, lesson.sort_order, previous_status,
                prev["completed"], prev["total"],
            )
            items.append({
                "id": lesson.id,
                "title": lesson.title,
                "sort_order": lesson.sort_order,
                "progress_status": record.status if record else "not_started",
                "best_score_percent": record.best_score_percent if record else 0.0,
                "unlock": status.to_dict(),
            })
            previous_status = record.status if record else None

        return {
            "topic": {"id": topic.id, "slug": topic.slug, "name": topic.name},
            "zone": {"level": zone_level, "name": get_zone_name(zone_level)},
            "tier": tier,
            "zone_unlocked": is_zone_unlocked(tier, zone_level, prev["completed"], prev["total"]) if tier else False,
            "lessons": items,
        }
    finally:
        session.close()
