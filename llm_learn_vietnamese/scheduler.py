import datetime
import math
from dataclasses import dataclass
from typing import Optional, Tuple

REVIEW_RESULTS = ("correct", "incorrect", "unsure")
MIN_EASE_FACTOR = 1.3
DEFAULT_EASE_FACTOR = 2.5


def sm2_schedule(
    interval: int,
    ease_factor: float,
    repetitions: int,
    quality: int,
) -> Tuple[int, float, int, datetime.datetime]:
    """
    Schedule a manually graded card with SuperMemo-2.

    ``quality`` is the 0-5 recall grade: below 3 is a lapse that resets the
    repetition count and brings the card back tomorrow. Successful recalls
    step through 1 day, 6 days, then the previous interval scaled by the
    updated ease factor (rounded up). The ease factor never drops below
    ``MIN_EASE_FACTOR``.

    Returns ``(interval_days, ease_factor, repetitions, next_review)`` with
    ``next_review`` as an aware UTC datetime.
    """
    quality = max(0, min(5, quality))

    new_ef = ease_factor + (0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02))
    if new_ef < MIN_EASE_FACTOR:
        new_ef = MIN_EASE_FACTOR

    if quality < 3:
        new_reps = 0
        new_interval = 1
    else:
        new_reps = repetitions + 1
        if new_reps == 1:
            new_interval = 1
        elif new_reps == 2:
            new_interval = 6
        else:
            new_interval = math.ceil(interval * new_ef)

    next_review = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=new_interval)

    return new_interval, new_ef, new_reps, next_review


@dataclass
class ReviewSchedule:
    ease_factor: float
    repetition_count: int
    interval_days: int
    due_date: datetime.date


def schedule_review_result(
    result: str,
    ease_factor: Optional[float] = None,
    repetition_count: Optional[int] = None,
    interval_days: Optional[int] = None,
    today: Optional[datetime.date] = None,
    is_new: bool = False,
) -> ReviewSchedule:
    """
    Scheduling update for a flashcard review graded correct / incorrect / unsure.

    Only "correct" counts as a success; "unsure" is scheduled like a miss.

    First review of a card (is_new=True):
      ease 2.6 on success else 2.3, repetitions 1 or 0, interval 1 day.

    Later reviews:
      ease  = max(1.3, ease + 0.1) on success, max(1.3, ease - 0.2) otherwise
      reps  = reps + 1 on success, else 0
      interval = 1 if reps <= 1, 6 if reps == 2, else round(previous interval × ease)
    """
    if result not in REVIEW_RESULTS:
        raise ValueError(f"Unknown review result: {result!r}")
    today = today or datetime.datetime.now(datetime.timezone.utc).date()
    is_correct = result == "correct"

    if is_new:
        new_ease = 2.6 if is_correct else 2.3
        new_reps = 1 if is_correct else 0
        new_interval = 1
    else:
        ease = ease_factor if ease_factor else DEFAULT_EASE_FACTOR
        new_ease = max(MIN_EASE_FACTOR, ease + (0.1 if is_correct else -0.2))
        new_reps = (repetition_count or 0) + 1 if is_correct else 0
        if new_reps <= 1:
            new_interval = 1
        elif new_reps == 2:
            new_interval = 6
        else:
            # Python's round() is banker's rounding; keep half-up
            new_interval = int(math.floor((interval_days or 6) * new_ease + 0.5))

    return ReviewSchedule(
        ease_factor=round(new_ease, 4),
        repetition_count=new_reps,
        interval_days=new_interval,
        due_date=today + datetime.timedelta(days=new_interval),
    )
