import datetime

import pytest

from llm_learn_vietnamese.scheduler import sm2_schedule, schedule_review_result


def test_sm2_first_success_schedules_one_day() -> None:
    interval, ef, reps, next_review = sm2_schedule(1, 2.5, 0, 5)
    assert interval == 1
    assert reps == 1
    assert ef == pytest.approx(2.6)
    assert next_review > datetime.datetime.now(datetime.timezone.utc)


def test_sm2_second_success_schedules_six_days() -> None:
    interval, ef, reps, _ = sm2_schedule(1, 2.6, 1, 5)
    assert (interval, reps) == (6, 2)
    assert ef == pytest.approx(2.7)


def test_sm2_third_success_multiplies_interval() -> None:
    interval, ef, reps, _ = sm2_schedule(6, 2.7, 2, 4)
    assert reps == 3
    assert ef == pytest.approx(2.7)
    assert interval == 17


def test_sm2_lapse_resets_repetitions() -> None:
    interval, ef, reps, _ = sm2_schedule(30, 2.5, 5, 2)
    assert (interval, reps) == (1, 0)
    assert ef == pytest.approx(2.18)


def test_sm2_ease_factor_floor_and_quality_clamp() -> None:
    _, ef, _, _ = sm2_schedule(1, 1.3, 0, -4)
    assert ef == pytest.approx(1.3)
    interval, _, reps, _ = sm2_schedule(1, 2.5, 0, 9)
    assert (interval, reps) == (1, 1)


def test_first_review_correct() -> None:
    today = datetime.date(2026, 5, 1)
    s = schedule_review_result("correct", is_new=True, today=today)
    assert s.ease_factor == 2.6
    assert s.repetition_count == 1
    assert s.interval_days == 1
    assert s.due_date == datetime.date(2026, 5, 2)


def test_first_review_incorrect() -> None:
    s = schedule_review_result("incorrect", is_new=True, today=datetime.date(2026, 5, 1))
    assert (s.ease_factor, s.repetition_count, s.interval_days) == (2.3, 0, 1)


def test_repeat_reviews_grow_interval() -> None:
    today = datetime.date(2026, 5, 1)
    second = schedule_review_result("correct", 2.6, 1, 1, today=today)
    assert (second.ease_factor, second.repetition_count, second.interval_days) == (2.7, 2, 6)
    third = schedule_review_result("correct", second.ease_factor, second.repetition_count,
                                   second.interval_days, today=today)
    assert third.ease_factor == 2.8
    assert third.repetition_count == 3
    assert third.interval_days == 17
    assert third.due_date == today + datetime.timedelta(days=17)


def test_unsure_is_scheduled_like_a_miss() -> None:
    s = schedule_review_result("unsure", 2.5, 4, 20, today=datetime.date(2026, 5, 1))
    assert s.repetition_count == 0
    assert s.interval_days == 1
    assert s.ease_factor == 2.3


def test_ease_never_drops_below_minimum() -> None:
    s = schedule_review_result("incorrect", 1.4, 0, 1, today=datetime.date(2026, 5, 1))
    assert s.ease_factor == 1.3


def test_unknown_result_rejected() -> None:
    with pytest.raises(ValueError):
        schedule_review_result("maybe")
