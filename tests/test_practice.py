"""
Tests for lesson exercises: the runner, server-side answers, submission,
pass thresholds and rewards.
"""

import os
import tempfile

os.environ["TEST_MODE"] = "1"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from typing import Any, Dict, Generator

from llm_learn_vietnamese import db, practice, statistics
from llm_learn_vietnamese.practice import ExerciseRunner


@pytest.fixture(scope="function")
def temp_db() -> Generator[None, None, None]:
    """Setup transient SQLite DB for testing."""
    fd, path = tempfile.mkstemp()
    os.close(fd)
    db.engine = create_engine(f"sqlite:///{path}")
    db.SessionLocal = sessionmaker(bind=db.engine, expire_on_commit=False)
    db.Base.metadata.create_all(bind=db.engine)
    statistics.invalidate_cache()
    yield
    os.unlink(path)


def _seed_practice_set(zone_level: int = 1) -> Dict[str, int]:
    """One zone, topic and lesson with a three-question practice set."""
    session = db.get_session()
    zone = db.Zone(level=zone_level, name=f"Zone {zone_level}")
    session.add(zone)
    session.flush()
    topic = db.Topic(zone_id=zone.id, slug=f"greetings-{zone_level}", name="Greetings", sort_order=1)
    session.add(topic)
    session.flush()
    lesson = db.Lesson(topic_id=topic.id, title="Saying hello", sort_order=1)
    session.add(lesson)
    session.flush()
    practice_set = db.PracticeSet(lesson_id=lesson.id, topic_id=topic.id, title="Hello drills",
                                  coin_reward=10, xp_reward=20)
    session.add(practice_set)
    session.flush()
    questions = [
        db.Question(practice_set_id=practice_set.id, type="multiple-choice", sort_order=1,
                    data={"correctChoiceId": "a", "choices": [{"id": "a", "text": "Xin chào"},
                                                              {"id": "b", "text": "Tạm biệt"}]}),
        db.Question(practice_set_id=practice_set.id, type="error-correction", sort_order=2,
                    data={"target": "Tôi đi học."}),
        db.Question(practice_set_id=practice_set.id, type="grammar-structure", sort_order=3,
                    data={"correctChoiceId": 1, "hint": "Subject comes first."}),
    ]
    session.add_all(questions)
    session.commit()
    ids = {
        "set": practice_set.id, "lesson": lesson.id, "topic": topic.id,
        "q1": questions[0].id, "q2": questions[1].id, "q3": questions[2].id,
    }
    session.close()
    return ids


# ── Runner ─────────────────────────────────────────────────────────

def test_runner_revisits_skipped_questions() -> None:
    runner = ExerciseRunner([1, 2, 3])
    runner.skip(1)
    assert runner.current_question_id == 2
    runner.answer({"id": 2, "type": "multiple-choice", "correctChoiceId": "x"}, "x")
    runner.advance()
    runner.answer({"id": 3, "type": "multiple-choice", "correctChoiceId": "x"}, "y")
    runner.advance()
    assert runner.phase == "skipped"
    assert runner.current_question_id == 1
    runner.answer({"id": 1, "type": "multiple-choice", "correctChoiceId": "x"}, "x")
    runner.advance()
    assert runner.completed
    assert runner.progress() == {"total": 3, "correct": 2, "incorrect": 1, "skipped": 0, "accuracy": 67}


def test_runner_marks_question_incorrect_after_three_skips() -> None:
    runner = ExerciseRunner([1, 2])
    runner.skip(1)
    runner.answer({"id": 2, "type": "multiple-choice", "correctChoiceId": "x"}, "x")
    runner.advance()
    assert runner.current_question_id == 1
    runner.skip(1)
    assert runner.current_question_id == 1
    runner.skip(1)
    assert runner.completed
    assert runner.attempts["1"]["status"] == "skipped"
    assert runner.attempts["1"]["grade"]["is_correct"] is False
    assert runner.progress()["accuracy"] == 50


def test_runner_state_survives_serialisation() -> None:
    runner = ExerciseRunner([5, 6], {"5": "role-play"})
    runner.skip(5)
    restored = ExerciseRunner.from_dict(runner.to_dict())
    assert restored.current_question_id == 6
    assert restored.skipped_queue == [5]
    assert restored.skip_counts == {"5": 1}
    assert ExerciseRunner([]).completed


def test_pass_thresholds_by_zone() -> None:
    assert practice.pass_threshold_for_zone(None) == 65
    assert practice.pass_threshold_for_zone(1) == 65
    assert practice.pass_threshold_for_zone(3) == 75
    assert practice.pass_threshold_for_zone(5) == 80
    assert practice.pass_threshold_for_zone(9) == 80


# ── Server-side flow ───────────────────────────────────────────────

def test_full_exercise_flow_awards_first_pass(temp_db: Any) -> None:
    ids = _seed_practice_set(zone_level=1)
    user = "student"

    started = practice.start_exercise(user, ids["set"])
    assert started["resumed"] is False
    assert started["attempt_no"] == 1
    assert started["pass_criteria"]["min_accuracy"] == 65
    assert [q["id"] for q in started["questions"]] == [ids["q1"], ids["q2"], ids["q3"]]
    rid = started["practice_result_id"]

    step = practice.answer_question(user, rid, ids["q1"], "a", 1200)
    assert step["grade"]["is_correct"] is True
    assert step["next_question_id"] == ids["q2"]

    step = practice.skip_question(user, rid, ids["q2"])
    assert step["next_question_id"] == ids["q3"]

    step = practice.answer_question(user, rid, ids["q3"], 2)
    assert step["grade"]["feedback"] == "Incorrect. Subject comes first."
    assert step["next_question_id"] == ids["q2"]

    step = practice.answer_question(user, rid, ids["q2"], "toi di hoc")
    assert step["completed"] is True
    assert step["progress"]["correct"] == 2

    result = practice.submit_exercise(user, rid, time_spent_seconds=95)
    assert result["passed"] is True  # 67% against the 65% beginner threshold
    assert result["is_first_pass"] is True
    assert result["coins_earned"] == 10
    assert result["xp_earned"] == 20

    session = db.get_session()
    stored = session.get(db.PracticeResult, rid)
    progress = session.query(db.UserLessonProgress).filter_by(user=user, lesson_id=ids["lesson"]).first()
    reward = session.query(db.UserReward).filter_by(user=user).first()
    details = session.query(db.PracticeResultDetail).filter_by(practice_result_id=rid).all()
    session.close()
    assert stored.score_percent == 67
    assert stored.weak_question_types == {"grammar-structure": 1}
    assert progress.status == "passed"
    assert progress.best_score_percent == 67
    assert (reward.coins, reward.xp) == (10, 20)
    assert len(details) == 3

    with pytest.raises(ValueError):
        practice.submit_exercise(user, rid)


def test_second_pass_earns_no_rewards(temp_db: Any) -> None:
    ids = _seed_practice_set()
    user = "student"
    all_correct = [
        {"questionId": ids[q], "questionType": "multiple-choice", "grade": {"isCorrect": True}}
        for q in ("q1", "q2", "q3")
    ]
    first = practice.start_exercise(user, ids["set"])
    assert practice.submit_exercise(user, first["practice_result_id"], all_correct)["is_first_pass"] is True

    second = practice.start_exercise(user, ids["set"])
    assert second["attempt_no"] == 2
    result = practice.submit_exercise(user, second["practice_result_id"], all_correct)
    assert result["passed"] is True
    assert result["is_first_pass"] is False
    assert result["coins_earned"] == 0


def test_higher_zone_needs_higher_score(temp_db: Any) -> None:
    ids = _seed_practice_set(zone_level=4)
    user = "student"
    started = practice.start_exercise(user, ids["set"])
    assert started["pass_criteria"] == {"min_accuracy": 80, "min_correct": None}
    attempts = [
        {"question_id": ids["q1"], "question_type": "multiple-choice", "grade": {"is_correct": True}},
        {"question_id": ids["q2"], "question_type": "error-correction", "grade": {"is_correct": True}},
        {"question_id": ids["q3"], "question_type": "grammar-structure", "grade": {"is_correct": False}},
    ]
    result = practice.submit_exercise(user, started["practice_result_id"], attempts)
    assert result["passed"] is False
    assert result["coins_earned"] == 0

    session = db.get_session()
    stored = session.get(db.PracticeResult, started["practice_result_id"])
    progress = session.query(db.UserLessonProgress).filter_by(user=user, lesson_id=ids["lesson"]).first()
    session.close()
    assert progress.status == "in_progress"
    assert progress.pass_threshold == 80
    assert stored.pass_criteria["min_accuracy"] == 80
    assert stored.weak_question_types == {"grammar-structure": 1}


def test_start_resumes_in_progress_attempt(temp_db: Any) -> None:
    ids = _seed_practice_set()
    first = practice.start_exercise("student", ids["set"])
    practice.answer_question("student", first["practice_result_id"], ids["q1"], "b")
    again = practice.start_exercise("student", ids["set"])
    assert again["resumed"] is True
    assert again["practice_result_id"] == first["practice_result_id"]
    assert again["state"]["current_index"] == 1

    resumed = practice.resume_exercise("student", ids["set"])
    assert resumed["id"] == first["practice_result_id"]
    assert practice.resume_exercise("other", ids["set"]) is None


def test_exercise_errors(temp_db: Any) -> None:
    ids = _seed_practice_set()
    with pytest.raises(LookupError):
        practice.start_exercise("student", 999)
    started = practice.start_exercise("student", ids["set"])
    rid = started["practice_result_id"]
    with pytest.raises(ValueError):
        practice.answer_question("student", rid, ids["q3"], 1)
    with pytest.raises(LookupError):
        practice.answer_question("intruder", rid, ids["q1"], "a")
    with pytest.raises(LookupError):
        practice.submit_exercise("intruder", rid)
