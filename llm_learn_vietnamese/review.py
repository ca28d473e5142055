"""
Flashcard review sessions: filter validation, availability checks with
relaxation suggestions, session generation, per-card result recording with
SRS updates, completion and abandonment.
"""

import dataclasses
import datetime
import math
import random
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from . import db, statistics
from .db import (
    Flashcard, FlashcardReview, ReviewSession, ReviewSessionCard, SavedFlashcard,
    get_session, DEBUG_MODE,
)
from .flashcards import COMPLEXITIES, flashcard_to_dict, query_flashcards
from .scheduler import REVIEW_RESULTS, schedule_review_result, sm2_schedule

SESSION_TYPES = ("daily", "custom")
MIN_SESSION_CARDS = 1
MAX_SESSION_CARDS = 100
MAPPING_BATCH_SIZE = 100


@dataclass
class SessionFilters:
    topic: Optional[str] = None
    complexity: str = "all"
    common_words_only: bool = False
    num_cards: int = 20
    include_saved_cards: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def validate_session_filters(raw: Any) -> SessionFilters:
    """Build SessionFilters from a dict (snake_case or the web client's camelCase).

    Raises ValueError listing every invalid field.
    """
    if isinstance(raw, SessionFilters):
        raw = raw.to_dict()
    raw = raw or {}
    errors: List[str] = []

    topic = raw.get("topic")
    if topic is not None:
        if not isinstance(topic, str):
            errors.append("topic: must be a string")
        elif len(topic) > 100:
            errors.append("topic: too long (max 100)")
        topic = topic.strip() if isinstance(topic, str) else None
        if topic and topic.lower() == "all":
            topic = None

    complexity = str(raw.get("complexity") or "all").lower()
    if complexity not in COMPLEXITIES:
        errors.append(f"complexity: must be one of {', '.join(COMPLEXITIES)}")

    num_cards = raw.get("num_cards", raw.get("numberOfCards", 20))
    try:
        num_cards = int(num_cards)
    except (TypeError, ValueError):
        errors.append("num_cards: must be an integer")
    else:
        if not MIN_SESSION_CARDS <= num_cards <= MAX_SESSION_CARDS:
            errors.append(f"num_cards: must be between {MIN_SESSION_CARDS} and {MAX_SESSION_CARDS}")

    if errors:
        raise ValueError(f"Invalid session configuration: {', '.join(errors)}")

    return SessionFilters(
        topic=topic or None,
        complexity=complexity,
        common_words_only=bool(raw.get("common_words_only", raw.get("onlyCommonWords", False))),
        num_cards=num_cards,
        include_saved_cards=bool(raw.get("include_saved_cards", raw.get("includeSavedCards", False))),
    )


def _candidate_cards(session: Session, user: str, filters: SessionFilters) -> List[Flashcard]:
    cards = query_flashcards(session, topic=filters.topic, complexity=filters.complexity,
                             common_words_only=filters.common_words_only)
    if filters.include_saved_cards:
        seen = {c.id for c in cards}
        saved_ids = [r.flashcard_id for r in session.query(SavedFlashcard.flashcard_id)
                     .filter(SavedFlashcard.user == user).all()]
        extra = [c for c in session.query(Flashcard).filter(Flashcard.id.in_(saved_ids)).all()
                 if c.id not in seen] if saved_ids else []
        cards = cards + sorted(extra, key=lambda c: c.id)
    return cards


def count_available(user: str, filters: SessionFilters) -> int:
    session = get_session()
    try:
        return len(_candidate_cards(session, user, filters))
    finally:
        session.close()


def _suggestion(suggestion_id: str, title: str, description: str, filters: SessionFilters,
                estimated: int, available: int, removed: Optional[List[str]] = None,
                expanded_complexity: bool = False, expanded_topics: bool = False) -> Dict[str, Any]:
    return {
        "id": suggestion_id,
        "title": title,
        "description": description,
        "filters": filters.to_dict(),
        "estimated_count": estimated,
        "impact": {
            "removed_restrictions": removed or [],
            "expanded_complexity": expanded_complexity,
            "expanded_topics": expanded_topics,
            "additional_count": max(0, estimated - available),
        },
    }


def check_session_availability(user: str, raw_filters: Any) -> Dict[str, Any]:
    """How many cards match, and ways to relax the filters when there are too few.

    A relaxation is only suggested when it finds more cards than the current
    filters do.
    """
    filters = validate_session_filters(raw_filters)
    available = count_available(user, filters)
    insufficient = available < filters.num_cards
    suggestions: List[Dict[str, Any]] = []

    if insufficient:
        relaxations = []
        if filters.common_words_only:
            relaxations.append((
                "include_all_words", "Include less common words",
                "Add words outside the common-word list.",
                dataclasses.replace(filters, common_words_only=False),
                {"removed": ["common_words_only"]},
            ))
        if filters.complexity != "all":
            relaxations.append((
                "expand_complexity", "Include all complexity levels",
                f"Mix simple and complex cards instead of only {filters.complexity}.",
                dataclasses.replace(filters, complexity="all"),
                {"removed": ["complexity"], "expanded_complexity": True},
            ))
        if filters.topic:
            relaxations.append((
                "all_topics", "Study all topics",
                f"Draw cards from every topic, not only '{filters.topic}'.",
                dataclasses.replace(filters, topic=None),
                {"removed": ["topic"], "expanded_topics": True},
            ))
        if len(relaxations) > 1:
            relaxations.append((
                "remove_all_filters", "Remove all filters",
                "Use the whole catalog.",
                dataclasses.replace(filters, topic=None, complexity="all", common_words_only=False),
                {"removed": [r for rel in relaxations for r in rel[4]["removed"]],
                 "expanded_complexity": filters.complexity != "all",
                 "expanded_topics": bool(filters.topic)},
            ))

        for sid, title, description, relaxed, impact in relaxations:
            estimated = count_available(user, relaxed)
            if estimated > available:
                suggestions.append(_suggestion(
                    sid, title, description, relaxed, estimated, available,
                    removed=impact.get("removed"),
                    expanded_complexity=impact.get("expanded_complexity", False),
                    expanded_topics=impact.get("expanded_topics", False),
                ))

        if available > 0:
            suggestions.append(_suggestion(
                "use_available", f"Study the {available} available cards",
                "Keep your filters and review a shorter session.",
                dataclasses.replace(filters, num_cards=available), available, available,
            ))

    if DEBUG_MODE:
        print(f"🔎 Session availability for {user}: {available}/{filters.num_cards}, "
              f"{len(suggestions)} suggestions")

    return {
        "available_count": available,
        "requested_count": filters.num_cards,
        "insufficient": insufficient,
        "suggestions": suggestions,
    }


def create_review_session(user: str, session_type: str, total_cards: int,
                          session_config: Optional[Dict[str, Any]] = None,
                          filters_applied: Optional[Dict[str, Any]] = None) -> int:
    if session_type not in SESSION_TYPES:
        raise ValueError(f"session_type must be one of {', '.join(SESSION_TYPES)}")
    session = get_session()
    review_session = ReviewSession(
        user=user,
        session_type=session_type,
        status="in_progress",
        total_cards=total_cards,
        completed_cards=0,
        correct_answers=0,
        session_config=session_config,
        filters_applied=filters_applied,
    )
    session.add(review_session)
    session.commit()
    session_id = review_session.id
    session.close()
    return session_id


def create_session_card_mappings(session_id: int, flashcards: Iterable[Any]) -> Dict[str, int]:
    """Attach cards to a session in order, inserting in batches.

    ``flashcards`` may hold dicts with an ``id`` or plain ids; entries without
    an id are skipped. A failing batch is rolled back and counted as failed.
    """
    ids = []
    for card in flashcards:
        card_id = card.get("id") if isinstance(card, dict) else card
        if card_id:
            ids.append(str(card_id))

    inserted = 0
    failed = 0
    session = get_session()
    try:
        for start in range(0, len(ids), MAPPING_BATCH_SIZE):
            batch = ids[start:start + MAPPING_BATCH_SIZE]
            try:
                session.add_all([
                    ReviewSessionCard(
                        session_id=session_id,
                        flashcard_id=card_id,
                        card_order=start + offset + 1,
                        flashcard_type="APP",
                    )
                    for offset, card_id in enumerate(batch)
                ])
                session.commit()
                inserted += len(batch)
            except Exception as e:
                session.rollback()
                failed += len(batch)
                print(f"❌ Failed to insert session card batch at {start}: {e}")
    finally:
        session.close()
    return {"inserted_count": inserted, "failed_count": failed}


def _order_for_review(session: Session, user: str, cards: List[Flashcard]) -> List[Flashcard]:
    """Due cards first (most overdue first), then unseen cards, then the rest; ties shuffled."""
    today = db.utc_today()
    reviews = {
        r.flashcard_id: r for r in session.query(FlashcardReview)
        .filter(FlashcardReview.user == user).all()
    }
    due, unseen, later = [], [], []
    for card in cards:
        review = reviews.get(card.id)
        if review is None:
            unseen.append(card)
        elif review.due_date <= today:
            due.append(card)
        else:
            later.append(card)
    random.shuffle(due)
    due.sort(key=lambda c: reviews[c.id].due_date)
    random.shuffle(unseen)
    random.shuffle(later)
    later.sort(key=lambda c: reviews[c.id].due_date)
    return due + unseen + later


def generate_review_session(user: str, raw_filters: Any, session_type: str = "custom") -> Dict[str, Any]:
    """Pick cards for the filters, create the session and its card mappings."""
    filters = validate_session_filters(raw_filters)
    session = get_session()
    try:
        pool = _candidate_cards(session, user, filters)
        if not pool:
            raise ValueError("No flashcards match these filters")
        ordered = _order_for_review(session, user, pool)[:filters.num_cards]
        picked = [flashcard_to_dict(c) for c in ordered]
    finally:
        session.close()

    session_id = create_review_session(
        user, session_type, len(picked),
        session_config=filters.to_dict(),
        filters_applied=filters.to_dict(),
    )
    mapping = create_session_card_mappings(session_id, picked)
    if mapping["failed_count"]:
        print(f"⚠️ {mapping['failed_count']} cards could not be attached to session {session_id}")

    return {
        "session_id": session_id,
        "flashcards": picked,
        "actual_count": len(picked),
        "filters_applied": filters.to_dict(),
        "generation_metadata": {
            "requested_count": filters.num_cards,
            "available_count": len(pool),
            "inserted_count": mapping["inserted_count"],
            "failed_count": mapping["failed_count"],
            "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        },
    }


def _get_owned_session(session: Session, user: str, session_id: int) -> ReviewSession:
    review_session = session.get(ReviewSession, session_id)
    if review_session is None or review_session.user != user:
        raise LookupError(f"Review session {session_id} not found")
    return review_session


def _review_to_dict(review: FlashcardReview) -> Dict[str, Any]:
    return {
        "flashcard_id": review.flashcard_id,
        "ease_factor": review.ease_factor,
        "repetition_count": review.repetition_count,
        "interval_days": review.interval_days,
        "due_date": review.due_date.isoformat(),
        "total_reviews": review.total_reviews,
        "correct_reviews": review.correct_reviews,
    }


def apply_review_result(session: Session, user: str, flashcard_id: str, result: str,
                        now: Optional[datetime.datetime] = None) -> FlashcardReview:
    """Update (or create) the user's SRS record for one card. The caller commits."""
    today = now.date() if now else db.utc_today()
    now = now or datetime.datetime.now(datetime.timezone.utc)
    review = session.query(FlashcardReview).filter_by(user=user, flashcard_id=flashcard_id).first()
    if review is None:
        schedule = schedule_review_result(result, today=today, is_new=True)
        review = FlashcardReview(user=user, flashcard_id=flashcard_id, total_reviews=0, correct_reviews=0)
        session.add(review)
    else:
        schedule = schedule_review_result(
            result, review.ease_factor, review.repetition_count, review.interval_days, today=today
        )
    review.ease_factor = schedule.ease_factor
    review.repetition_count = schedule.repetition_count
    review.interval_days = schedule.interval_days
    review.due_date = schedule.due_date
    review.total_reviews = (review.total_reviews or 0) + 1
    review.correct_reviews = (review.correct_reviews or 0) + (1 if result == "correct" else 0)
    review.last_reviewed = now
    return review


def record_card_result(user: str, session_id: int, flashcard_id: str, result: str,
                       time_spent_ms: int = 0) -> Dict[str, Any]:
    """Store one card's result in the session and update its SRS schedule."""
    if result not in REVIEW_RESULTS:
        raise ValueError(f"result must be one of {', '.join(REVIEW_RESULTS)}")
    now = datetime.datetime.now(datetime.timezone.utc)
    session = get_session()
    try:
        review_session = _get_owned_session(session, user, session_id)
        if review_session.status != "in_progress":
            raise ValueError(f"Review session {session_id} is {review_session.status}")
        card = (
            session.query(ReviewSessionCard)
            .filter_by(session_id=session_id, flashcard_id=flashcard_id)
            .first()
        )
        if card is None:
            raise ValueError(f"Flashcard {flashcard_id} is not part of session {session_id}")

        card.result = result
        # Half-up rounding, and never record less than a second
        card.time_spent_seconds = max(1, int(math.floor(max(0, time_spent_ms) / 1000 + 0.5)))
        card.reviewed_at = now

        review = apply_review_result(session, user, flashcard_id, result)
        session.commit()
        payload = _review_to_dict(review)
    finally:
        session.close()

    if DEBUG_MODE:
        print(f"📝 {user} {flashcard_id}: {result} → next due {payload['due_date']}")
    return payload


def review_flashcard_quality(user: str, flashcard_id: str, quality: int) -> Dict[str, Any]:
    """Anki-style manual review outside a session: grade 0-5 scheduled with SM-2."""
    session = get_session()
    try:
        if session.get(Flashcard, flashcard_id) is None:
            raise LookupError(f"Flashcard {flashcard_id} not found")
        review = session.query(FlashcardReview).filter_by(user=user, flashcard_id=flashcard_id).first()
        if review is None:
            review = FlashcardReview(user=user, flashcard_id=flashcard_id, ease_factor=2.5,
                                     repetition_count=0, interval_days=1, total_reviews=0, correct_reviews=0)
            session.add(review)
        interval, ease, reps, next_review = sm2_schedule(
            review.interval_days or 1, review.ease_factor or 2.5, review.repetition_count or 0, quality
        )
        review.interval_days = interval
        review.ease_factor = round(ease, 4)
        review.repetition_count = reps
        review.due_date = next_review.date()
        review.total_reviews = (review.total_reviews or 0) + 1
        review.correct_reviews = (review.correct_reviews or 0) + (1 if quality >= 3 else 0)
        review.last_reviewed = datetime.datetime.now(datetime.timezone.utc)
        session.commit()
        return _review_to_dict(review)
    finally:
        session.close()


def get_progress_stats(results: Iterable[Optional[str]], card_count: int) -> Dict[str, Any]:
    """Tally answered cards. Unanswered entries (None) only count towards ``remaining``."""
    answered = [r for r in results if r]
    correct = answered.count("correct")
    total = len(answered)
    return {
        "correct": correct,
        "incorrect": answered.count("incorrect"),
        "unsure": answered.count("unsure"),
        "total": total,
        "remaining": max(0, card_count - total),
        "accuracy": (correct / total) * 100 if total > 0 else 0,
    }


def get_review_session(user: str, session_id: int) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        review_session = session.get(ReviewSession, session_id)
        if review_session is None or review_session.user != user:
            return None
        cards = (
            session.query(ReviewSessionCard)
            .filter_by(session_id=session_id)
            .order_by(ReviewSessionCard.card_order.asc())
            .all()
        )
        return {
            "id": review_session.id,
            "session_type": review_session.session_type,
            "status": review_session.status,
            "total_cards": review_session.total_cards,
            "completed_cards": review_session.completed_cards,
            "correct_answers": review_session.correct_answers,
            "filters_applied": review_session.filters_applied,
            "created_at": review_session.created_at.isoformat() if review_session.created_at else None,
            "completed_at": review_session.completed_at.isoformat() if review_session.completed_at else None,
            "cards": [
                {
                    "flashcard_id": c.flashcard_id,
                    "card_order": c.card_order,
                    "result": c.result,
                    "time_spent_seconds": c.time_spent_seconds,
                }
                for c in cards
            ],
            "progress": get_progress_stats([c.result for c in cards], len(cards)),
        }
    finally:
        session.close()


def complete_review_session(user: str, session_id: int) -> Dict[str, Any]:
    """Close the session and fold its results into today's statistics."""
    session = get_session()
    try:
        review_session = _get_owned_session(session, user, session_id)
        if review_session.status != "in_progress":
            raise ValueError(f"Review session {session_id} is already {review_session.status}")
        cards = session.query(ReviewSessionCard).filter_by(session_id=session_id).all()
        answered = [c for c in cards if c.result]
        correct = len([c for c in answered if c.result == "correct"])
        total_seconds = sum(c.time_spent_seconds or 0 for c in answered)

        topics: List[str] = []
        if answered:
            for card in session.query(Flashcard).filter(
                    Flashcard.id.in_([c.flashcard_id for c in answered])).all():
                for topic in card.topic or []:
                    if topic not in topics:
                        topics.append(topic)

        review_session.status = "completed"
        review_session.completed_cards = len(answered)
        review_session.correct_answers = correct
        review_session.completed_at = datetime.datetime.now(datetime.timezone.utc)

        if answered:
            statistics.upsert_daily_statistics(
                session, user,
                flashcards_reviewed=len(answered),
                correct_answers=correct,
                time_spent_minutes=int(math.floor(total_seconds / 60 + 0.5)),
                topics=topics,
            )
        session.commit()
    finally:
        session.close()

    statistics.invalidate_cache(user)
    progress = get_progress_stats([c.result for c in cards], len(cards))
    print(f"✅ Review session {session_id} completed: {correct}/{len(answered)} correct")
    return {
        "session_id": session_id,
        "status": "completed",
        "completed_cards": len(answered),
        "correct_answers": correct,
        "time_spent_seconds": total_seconds,
        "progress": progress,
    }


def abandon_review_session(user: str, session_id: int) -> Dict[str, Any]:
    """Quit a session. Results already recorded keep their SRS effect."""
    session = get_session()
    try:
        review_session = _get_owned_session(session, user, session_id)
        if review_session.status != "in_progress":
            raise ValueError(f"Review session {session_id} is already {review_session.status}")
        cards = session.query(ReviewSessionCard).filter_by(session_id=session_id).all()
        progress = get_progress_stats([c.result for c in cards], len(cards))
        review_session.status = "abandoned"
        review_session.completed_cards = progress["total"]
        review_session.correct_answers = progress["correct"]
        session.commit()
    finally:
        session.close()
    return {
        "session_id": session_id,
        "status": "abandoned",
        "completed_cards": progress["total"],
        "correct_answers": progress["correct"],
        "progress": progress,
    }


def get_due_flashcards(user: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Cards due today or earlier, most overdue first."""
    session = get_session()
    try:
        reviews = (
            session.query(FlashcardReview)
            .filter(FlashcardReview.user == user, FlashcardReview.due_date <= db.utc_today())
            .order_by(FlashcardReview.due_date.asc(), FlashcardReview.id.asc())
            .limit(limit)
            .all()
        )
        cards = {
            c.id: c for c in session.query(Flashcard)
            .filter(Flashcard.id.in_([r.flashcard_id for r in reviews])).all()
        } if reviews else {}
        return [
            dict(flashcard_to_dict(cards[r.flashcard_id]), review=_review_to_dict(r))
            for r in reviews if r.flashcard_id in cards
        ]
    finally:
        session.close()
