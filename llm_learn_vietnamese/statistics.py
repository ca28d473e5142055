"""
Study statistics: per-day flashcard stats, streaks, quick dashboard numbers
and SRS analytics.
"""

import datetime
import time
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import db
from .db import (
    Flashcard, FlashcardReview, FlashcardStatistics, UserLessonProgress, UserReward,
    get_session, DEBUG_MODE,
)

STATS_CACHE_TTL_SECONDS = 5 * 60
QUICK_STATS_CACHE_TTL_SECONDS = 2 * 60
MAX_DAYS_BACK = 365

# (user, kind, arg) -> (stored_at, value)
_stats_cache: Dict[Tuple[str, str, Any], Tuple[float, Any]] = {}


def _cache_get(key: Tuple[str, str, Any], ttl: float) -> Optional[Any]:
    hit = _stats_cache.get(key)
    if hit is None:
        return None
    stored_at, value = hit
    if time.monotonic() - stored_at > ttl:
        del _stats_cache[key]
        return None
    if DEBUG_MODE:
        print(f"📦 Stats cache hit: {key}")
    return value


def _cache_set(key: Tuple[str, str, Any], value: Any) -> None:
    now = time.monotonic()
    # Nothing outlives the longest TTL, whoever it belongs to
    max_ttl = max(STATS_CACHE_TTL_SECONDS, QUICK_STATS_CACHE_TTL_SECONDS)
    for stale in [k for k, (stored_at, _) in _stats_cache.items() if now - stored_at > max_ttl]:
        del _stats_cache[stale]
    _stats_cache[key] = (now, value)


def invalidate_cache(user: Optional[str] = None) -> None:
    """Drop cached statistics for one user, or for everyone."""
    if user is None:
        _stats_cache.clear()
        return
    for key in [k for k in _stats_cache if k[0] == user]:
        del _stats_cache[key]


def _stat_to_dict(row: FlashcardStatistics) -> Dict[str, Any]:
    return {
        "date": row.date.isoformat(),
        "flashcards_reviewed": row.flashcards_reviewed or 0,
        "correct_answers": row.correct_answers or 0,
        "total_questions": row.total_questions or 0,
        "accuracy_rate": row.accuracy_rate or 0.0,
        "time_spent_minutes": row.time_spent_minutes or 0,
        "topics_practiced": list(row.topics_practiced or []),
    }


def upsert_daily_statistics(
    session: Session,
    user: str,
    flashcards_reviewed: int,
    correct_answers: int,
    time_spent_minutes: int,
    topics: Optional[List[str]] = None,
    day: Optional[datetime.date] = None,
) -> FlashcardStatistics:
    """Add a session's numbers to the user's row for ``day`` (today by default).

    Accuracy is recomputed from the accumulated totals. The caller commits.
    """
    day = day or db.utc_today()
    row = session.query(FlashcardStatistics).filter_by(user=user, date=day).first()
    if row is None:
        row = FlashcardStatistics(
            user=user, date=day, flashcards_reviewed=0, correct_answers=0,
            total_questions=0, accuracy_rate=0.0, time_spent_minutes=0, topics_practiced=[],
        )
        session.add(row)
    row.flashcards_reviewed = (row.flashcards_reviewed or 0) + flashcards_reviewed
    row.correct_answers = (row.correct_answers or 0) + correct_answers
    row.total_questions = (row.total_questions or 0) + flashcards_reviewed
    row.accuracy_rate = (
        round(row.correct_answers / row.total_questions * 100, 2) if row.total_questions else 0.0
    )
    row.time_spent_minutes = (row.time_spent_minutes or 0) + time_spent_minutes
    merged = list(row.topics_practiced or [])
    for topic in topics or []:
        if topic and topic not in merged:
            merged.append(topic)
    row.topics_practiced = merged
    return row


def record_practice_session(
    user: str,
    flashcards_count: int,
    correct_count: int,
    time_spent_minutes: int,
    topics: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Record a practice session that happened outside a tracked review session."""
    if flashcards_count < 0 or correct_count < 0 or correct_count > flashcards_count:
        raise ValueError("correct_count must be between 0 and flashcards_count")
    session = get_session()
    try:
        row = upsert_daily_statistics(session, user, flashcards_count, correct_count,
                                      max(0, time_spent_minutes), topics)
        session.commit()
        result = _stat_to_dict(row)
    finally:
        session.close()
    invalidate_cache(user)
    return result


def get_daily_statistics(user: str, days_back: int = 30) -> List[Dict[str, Any]]:
    """Per-day rows for the last ``days_back`` days (1..365), oldest first."""
    if not 1 <= days_back <= MAX_DAYS_BACK:
        raise ValueError(f"days_back must be between 1 and {MAX_DAYS_BACK}")
    key = (user, "daily", days_back)
    cached = _cache_get(key, STATS_CACHE_TTL_SECONDS)
    if cached is not None:
        return cached

    start = db.utc_today() - datetime.timedelta(days=days_back - 1)
    session = get_session()
    rows = (
        session.query(FlashcardStatistics)
        .filter(FlashcardStatistics.user == user, FlashcardStatistics.date >= start)
        .order_by(FlashcardStatistics.date.asc())
        .all()
    )
    session.close()
    result = [_stat_to_dict(r) for r in rows]
    _cache_set(key, result)
    return result


def _study_dates(session: Session, user: str) -> set:
    rows = (
        session.query(FlashcardStatistics.date)
        .filter(FlashcardStatistics.user == user, FlashcardStatistics.flashcards_reviewed > 0)
        .all()
    )
    return {r.date for r in rows}


def compute_streaks(studied_dates: set, today: Optional[datetime.date] = None) -> Dict[str, int]:
    """Current streak may start today or yesterday; longest is the longest run of consecutive days."""
    today = today or db.utc_today()
    current = 0
    check = today
    if check not in studied_dates:
        check = today - datetime.timedelta(days=1)
    while check in studied_dates:
        current += 1
        check -= datetime.timedelta(days=1)

    longest = 0
    if studied_dates:
        ordered = sorted(studied_dates)
        run = 1
        for i in range(1, len(ordered)):
            if ordered[i] - ordered[i - 1] == datetime.timedelta(days=1):
                run += 1
            else:
                longest = max(longest, run)
                run = 1
        longest = max(longest, run)
    return {"current": current, "longest": longest}


def get_streak(user: str) -> Dict[str, int]:
    session = get_session()
    dates = _study_dates(session, user)
    session.close()
    return compute_streaks(dates)


def get_quick_stats(user: str) -> Dict[str, Any]:
    """Dashboard numbers. Cached for two minutes."""
    key = (user, "quick", None)
    cached = _cache_get(key, QUICK_STATS_CACHE_TTL_SECONDS)
    if cached is not None:
        return cached

    session = get_session()
    totals = (
        session.query(
            func.coalesce(func.sum(FlashcardStatistics.flashcards_reviewed), 0),
            func.coalesce(func.sum(FlashcardStatistics.correct_answers), 0),
            func.coalesce(func.sum(FlashcardStatistics.total_questions), 0),
            func.coalesce(func.sum(FlashcardStatistics.time_spent_minutes), 0),
            func.max(FlashcardStatistics.date),
        )
        .filter(FlashcardStatistics.user == user)
        .one()
    )
    dates = _study_dates(session, user)
    session.close()

    reviewed, correct, questions, minutes, last_date = totals
    today = db.utc_today()
    month_start = today.replace(day=1)
    result = {
        "total_cards_reviewed": int(reviewed),
        "accuracy_rate": round(correct / questions * 100, 1) if questions else 0.0,
        "current_streak": compute_streaks(dates, today)["current"],
        "total_time_minutes": int(minutes),
        "study_days_this_month": len([d for d in dates if month_start <= d <= today]),
        "last_study_date": last_date.isoformat() if last_date else None,
    }
    _cache_set(key, result)
    return result


def _srs_stage(review: FlashcardReview) -> str:
    if review.interval_days <= 6:
        return "learning"
    if review.interval_days <= 30:
        return "young"
    return "mature"


def get_analytics_data(user: str) -> Dict[str, Any]:
    """Compute advanced analytics for the progress page.

    Returns a dict with keys:
        streak      – {current, longest}
        heatmap     – [{date, count}, …] for last 90 days
        srs_stages  – {new, learning, young, mature}
        forecast    – [{date, count}, …] for next 14 days (overdue folded into today)
        weakest     – 10 reviewed cards with the lowest ease
        strongest   – 10 reviewed cards with the longest interval
        averages    – {avg_ease, avg_interval, mature_count, accuracy}
        lessons     – {passed, in_progress}
        rewards     – {coins, xp}
    """
    key = (user, "analytics", None)
    cached = _cache_get(key, STATS_CACHE_TTL_SECONDS)
    if cached is not None:
        return cached

    session: Session = get_session()
    today = db.utc_today()
    result: Dict[str, Any] = {}

    try:
        result["streak"] = compute_streaks(_study_dates(session, user), today)

        # ── Heatmap (last 90 days) ────────────────────────────────────
        heatmap_start = today - datetime.timedelta(days=89)
        heatmap_rows = (
            session.query(FlashcardStatistics.date, FlashcardStatistics.flashcards_reviewed)
            .filter(FlashcardStatistics.user == user, FlashcardStatistics.date >= heatmap_start)
            .all()
        )
        heatmap_map = {r.date: (r.flashcards_reviewed or 0) for r in heatmap_rows}
        result["heatmap"] = [
            {"date": (heatmap_start + datetime.timedelta(days=i)).isoformat(),
             "count": heatmap_map.get(heatmap_start + datetime.timedelta(days=i), 0)}
            for i in range(90)
        ]

        # ── SRS stage distribution ────────────────────────────────────
        reviews = session.query(FlashcardReview).filter(FlashcardReview.user == user).all()
        catalog_size = session.query(Flashcard).count()
        stages = {"new": max(0, catalog_size - len(reviews)), "learning": 0, "young": 0, "mature": 0}
        for review in reviews:
            stages[_srs_stage(review)] += 1
        result["srs_stages"] = stages

        # ── Review forecast (next 14 days) ────────────────────────────
        forecast_counts: Dict[datetime.date, int] = {}
        for review in reviews:
            due = max(review.due_date, today)
            if due < today + datetime.timedelta(days=14):
                forecast_counts[due] = forecast_counts.get(due, 0) + 1
        result["forecast"] = [
            {"date": (today + datetime.timedelta(days=i)).isoformat(),
             "count": forecast_counts.get(today + datetime.timedelta(days=i), 0)}
            for i in range(14)
        ]

        # ── Weakest / strongest cards ─────────────────────────────────
        labels = {
            c.id: c.vietnamese for c in session.query(Flashcard.id, Flashcard.vietnamese)
            .filter(Flashcard.id.in_([r.flashcard_id for r in reviews])).all()
        } if reviews else {}

        def _card_row(r: FlashcardReview) -> Dict[str, Any]:
            return {
                "flashcard_id": r.flashcard_id,
                "label": labels.get(r.flashcard_id, r.flashcard_id),
                "ease_factor": round(r.ease_factor or 0.0, 2),
                "interval_days": r.interval_days,
                "due_date": r.due_date.isoformat() if r.due_date else None,
                "accuracy": round(r.correct_reviews / r.total_reviews * 100, 1) if r.total_reviews else 0.0,
            }

        result["weakest"] = [_card_row(r) for r in sorted(reviews, key=lambda r: (r.ease_factor, r.interval_days))[:10]]
        result["strongest"] = [_card_row(r) for r in sorted(reviews, key=lambda r: (-r.interval_days, -r.ease_factor))[:10]]

        # ── Averages ──────────────────────────────────────────────────
        total_reviews = sum(r.total_reviews or 0 for r in reviews)
        total_correct = sum(r.correct_reviews or 0 for r in reviews)
        result["averages"] = {
            "avg_ease": round(sum(r.ease_factor for r in reviews) / len(reviews), 2) if reviews else 0.0,
            "avg_interval": round(sum(r.interval_days for r in reviews) / len(reviews), 1) if reviews else 0.0,
            "mature_count": stages["mature"],
            "accuracy": round(total_correct / total_reviews * 100, 1) if total_reviews else 0.0,
        }

        # ── Lessons and rewards ───────────────────────────────────────
        lesson_rows = session.query(UserLessonProgress.status).filter(UserLessonProgress.user == user).all()
        result["lessons"] = {
            "passed": len([r for r in lesson_rows if r.status == "passed"]),
            "in_progress": len([r for r in lesson_rows if r.status == "in_progress"]),
        }
        reward = session.query(UserReward).filter_by(user=user).first()
        result["rewards"] = {"coins": reward.coins if reward else 0, "xp": reward.xp if reward else 0}
    finally:
        session.close()

    _cache_set(key, result)
    return result
