"""
Lesson exercises: the question runner, attempts stored per practice result,
and submission with zone-based pass rules, rewards and lesson progress.
"""

import datetime
import math
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .db import (
    Lesson, PracticeResult, PracticeResultDetail, PracticeSet, Question, Topic,
    UserLessonProgress, UserReward, Zone, get_session, DEBUG_MODE,
)
from .grading import GradeResult, grade_question

MAX_SKIPS = 3
ZONE_PASS_THRESHOLDS = {1: 65, 2: 70, 3: 75, 4: 80, 5: 80}
DEFAULT_PASS_THRESHOLD = 80


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def pass_threshold_for_zone(zone_level: Optional[int]) -> int:
    """Minimum score percent needed to pass in a zone. Unknown zones use 80."""
    return ZONE_PASS_THRESHOLDS.get(zone_level or 1, DEFAULT_PASS_THRESHOLD)


class ExerciseRunner:
    """Walks a learner through a practice set.

    Questions are answered in order (the ``main`` phase). Skipped questions
    are queued and revisited once the main pass is done (the ``skipped``
    phase). A question skipped three times is marked incorrect.

    Attempts and skip counts are keyed by ``str(question_id)`` so the state
    survives a JSON round trip unchanged.
    """

    def __init__(self, question_ids: List[int], question_types: Optional[Dict[str, str]] = None):
        self.question_ids = list(question_ids)
        self.question_types = dict(question_types or {})
        self.phase = "main"
        self.current_index = 0
        self.skipped_queue: List[int] = []
        self.skip_counts: Dict[str, int] = {}
        self.attempts: Dict[str, Dict[str, Any]] = {}
        self.completed = not self.question_ids

    @property
    def current_question_id(self) -> Optional[int]:
        if self.completed:
            return None
        if self.phase == "main":
            if self.current_index < len(self.question_ids):
                return self.question_ids[self.current_index]
            return None
        return self.skipped_queue[0] if self.skipped_queue else None

    def _record(self, question_id: int, user_answer: Any, grade: GradeResult, status: str,
                time_spent_ms: int) -> Dict[str, Any]:
        attempt = {
            "question_id": question_id,
            "question_type": self.question_types.get(str(question_id), "unknown"),
            "user_answer": user_answer,
            "status": status,
            "time_spent_ms": time_spent_ms,
            "grade": grade.to_dict(),
        }
        # A later attempt replaces an earlier one
        self.attempts[str(question_id)] = attempt
        return attempt

    def answer(self, question: Dict[str, Any], user_answer: Any, time_spent_ms: int = 0) -> GradeResult:
        """Grade and record an answer. Call ``advance()`` to move on."""
        question_id = question["id"]
        if question.get("type"):
            self.question_types[str(question_id)] = question["type"]
        grade = grade_question(question, user_answer)
        self._record(question_id, user_answer, grade, "answered", time_spent_ms)
        if self.phase == "skipped" and question_id in self.skipped_queue:
            self.skipped_queue.remove(question_id)
        return grade

    def skip(self, question_id: int) -> None:
        count = self.skip_counts.get(str(question_id), 0) + 1
        self.skip_counts[str(question_id)] = count

        if count >= MAX_SKIPS:
            self._record(question_id, None,
                         GradeResult(False, 0.0, f"Marked incorrect after {MAX_SKIPS} skips"),
                         "skipped", 0)
            if question_id in self.skipped_queue:
                self.skipped_queue.remove(question_id)
            self.advance()
            return

        if self.phase == "main":
            if question_id not in self.skipped_queue:
                self.skipped_queue.append(question_id)
            self.advance()
        else:
            if question_id in self.skipped_queue:
                self.skipped_queue.remove(question_id)
            self.skipped_queue.append(question_id)

    def advance(self) -> None:
        if self.completed:
            return
        if self.phase == "main":
            self.current_index += 1
            if self.current_index >= len(self.question_ids):
                if self.skipped_queue:
                    self.phase = "skipped"
                else:
                    self.completed = True
        elif not self.skipped_queue:
            self.completed = True

    def progress(self) -> Dict[str, int]:
        total = len(self.question_ids)
        correct = len([a for a in self.attempts.values() if a["grade"]["is_correct"]])
        incorrect = len(self.attempts) - correct
        answered = correct + incorrect
        return {
            "total": total,
            "correct": correct,
            "incorrect": incorrect,
            "skipped": total - correct - incorrect,
            "accuracy": _round_half_up(correct / answered * 100) if answered else 0,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_ids": self.question_ids,
            "question_types": self.question_types,
            "phase": self.phase,
            "current_index": self.current_index,
            "skipped_queue": self.skipped_queue,
            "skip_counts": self.skip_counts,
            "attempts": self.attempts,
            "completed": self.completed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExerciseRunner":
        runner = cls(data.get("question_ids") or [], data.get("question_types"))
        runner.phase = data.get("phase", "main")
        runner.current_index = data.get("current_index", 0)
        runner.skipped_queue = list(data.get("skipped_queue") or [])
        runner.skip_counts = dict(data.get("skip_counts") or {})
        runner.attempts = dict(data.get("attempts") or {})
        runner.completed = bool(data.get("completed", runner.completed))
        return runner


def _question_to_dict(question: Question) -> Dict[str, Any]:
    payload = dict(question.data or {})
    payload["id"] = question.id
    payload["type"] = question.type
    payload["sort_order"] = question.sort_order
    return payload


def get_practice_set_questions(practice_set_id: int) -> List[Dict[str, Any]]:
    session = get_session()
    try:
        questions = (
            session.query(Question)
            .filter_by(practice_set_id=practice_set_id)
            .order_by(Question.sort_order.asc(), Question.id.asc())
            .all()
        )
        return [_question_to_dict(q) for q in questions]
    finally:
        session.close()


def _zone_level_for_set(session: Session, practice_set: PracticeSet) -> int:
    topic_id = practice_set.topic_id
    if topic_id is None and practice_set.lesson_id is not None:
        lesson = session.get(Lesson, practice_set.lesson_id)
        topic_id = lesson.topic_id if lesson else None
    topic = session.get(Topic, topic_id) if topic_id is not None else None
    zone = session.get(Zone, topic.zone_id) if topic else None
    return zone.level if zone else 1


def _pass_criteria(threshold: int) -> Dict[str, Any]:
    return {"min_accuracy": threshold, "min_correct": None}


def start_exercise(user: str, practice_set_id: int) -> Dict[str, Any]:
    """Resume the newest in-progress attempt, or open a new one."""
    questions = get_practice_set_questions(practice_set_id)
    session = get_session()
    try:
        practice_set = session.get(PracticeSet, practice_set_id)
        if practice_set is None:
            raise LookupError(f"Practice set {practice_set_id} not found")

        existing = (
            session.query(PracticeResult)
            .filter_by(user=user, practice_set_id=practice_set_id, status="in_progress")
            .order_by(PracticeResult.created_at.desc(), PracticeResult.id.desc())
            .first()
        )
        if existing is not None:
            if DEBUG_MODE:
                print(f"🔁 Resuming practice result {existing.id} for {user}")
            runner_state = existing.session_state
            return {
                "practice_result_id": existing.id,
                "attempt_no": existing.attempt_no,
                "resumed": True,
                "pass_criteria": existing.pass_criteria,
                "questions": questions,
                "state": runner_state,
            }

        attempt_count = (
            session.query(PracticeResult)
            .filter_by(user=user, practice_set_id=practice_set_id)
            .count()
        )
        runner = ExerciseRunner([q["id"] for q in questions],
                                {str(q["id"]): q["type"] for q in questions})
        result = PracticeResult(
            user=user,
            practice_set_id=practice_set_id,
            attempt_no=attempt_count + 1,
            status="in_progress",
            pass_criteria=_pass_criteria(pass_threshold_for_zone(_zone_level_for_set(session, practice_set))),
            session_state=runner.to_dict(),
        )
        session.add(result)
        session.commit()
        print(f"✅ Started practice set {practice_set_id} attempt {result.attempt_no} for {user}")
        return {
            "practice_result_id": result.id,
            "attempt_no": result.attempt_no,
            "resumed": False,
            "pass_criteria": result.pass_criteria,
            "questions": questions,
            "state": result.session_state,
        }
    finally:
        session.close()


def resume_exercise(user: str, practice_set_id: int) -> Optional[Dict[str, Any]]:
    """The newest in-progress attempt with its saved details, or None."""
    session = get_session()
    try:
        result = (
            session.query(PracticeResult)
            .filter_by(user=user, practice_set_id=practice_set_id, status="in_progress")
            .order_by(PracticeResult.created_at.desc(), PracticeResult.id.desc())
            .first()
        )
        if result is None:
            return None
        details = (
            session.query(PracticeResultDetail)
            .filter_by(practice_result_id=result.id)
            .order_by(PracticeResultDetail.id.asc())
            .all()
        )
        return {
            "id": result.id,
            "attempt_no": result.attempt_no,
            "state": result.session_state,
            "details": [
                {
                    "question_id": d.question_id,
                    "is_correct": d.is_correct,
                    "time_spent_ms": d.time_spent_ms,
                    "answer_data": d.answer_data,
                    "status": d.status,
                }
                for d in details
            ],
        }
    finally:
        session.close()


def _get_in_progress_result(session: Session, user: str, practice_result_id: int) -> PracticeResult:
    result = session.get(PracticeResult, practice_result_id)
    if result is None or result.user != user:
        raise LookupError("Practice result not found")
    if result.status != "in_progress":
        raise ValueError("Practice result already submitted")
    return result


def save_exercise_state(user: str, practice_result_id: int, runner: ExerciseRunner) -> None:
    session = get_session()
    try:
        result = _get_in_progress_result(session, user, practice_result_id)
        result.session_state = runner.to_dict()
        session.commit()
    finally:
        session.close()


def _runner_step(result: PracticeResult, runner: ExerciseRunner) -> Dict[str, Any]:
    result.session_state = runner.to_dict()
    return {
        "practice_result_id": result.id,
        "next_question_id": runner.current_question_id,
        "completed": runner.completed,
        "progress": runner.progress(),
        "state": result.session_state,
    }


def _load_current(session: Session, user: str, practice_result_id: int,
                  question_id: int) -> tuple:
    result = _get_in_progress_result(session, user, practice_result_id)
    runner = ExerciseRunner.from_dict(result.session_state or {})
    if runner.current_question_id != question_id:
        raise ValueError(f"Question {question_id} is not the current question")
    return result, runner


def answer_question(user: str, practice_result_id: int, question_id: int, user_answer: Any,
                    time_spent_ms: int = 0) -> Dict[str, Any]:
    """Grade the answer to the current question and move the runner on."""
    session = get_session()
    try:
        result, runner = _load_current(session, user, practice_result_id, question_id)
        question = session.get(Question, question_id)
        if question is None:
            raise LookupError(f"Question {question_id} not found")
        grade = runner.answer(_question_to_dict(question), user_answer, time_spent_ms)
        runner.advance()
        step = _runner_step(result, runner)
        session.commit()
        step["grade"] = grade.to_dict()
        return step
    finally:
        session.close()


def skip_question(user: str, practice_result_id: int, question_id: int) -> Dict[str, Any]:
    session = get_session()
    try:
        result, runner = _load_current(session, user, practice_result_id, question_id)
        runner.skip(question_id)
        step = _runner_step(result, runner)
        session.commit()
        return step
    finally:
        session.close()


def _update_lesson_progress(session: Session, user: str, practice_set: PracticeSet,
                            score_percent: float, passed: bool, threshold: int,
                            now: datetime.datetime) -> None:
    progress = (
        session.query(UserLessonProgress)
        .filter_by(user=user, lesson_id=practice_set.lesson_id)
        .first()
    )
    if progress is None:
        session.add(UserLessonProgress(
            user=user,
            lesson_id=practice_set.lesson_id,
            topic_id=practice_set.topic_id,
            status="passed" if passed else "in_progress",
            total_attempts=1,
            best_score_percent=score_percent,
            first_attempted_at=now,
            last_attempted_at=now,
            passed_at=now if passed else None,
            pass_threshold=threshold,
        ))
        return

    progress.total_attempts = (progress.total_attempts or 0) + 1
    progress.last_attempted_at = now
    progress.pass_threshold = threshold
    if score_percent > (progress.best_score_percent or 0):
        progress.best_score_percent = score_percent
    if passed and progress.status != "passed":
        progress.status = "passed"
        progress.passed_at = now
    elif progress.status == "not_started":
        progress.status = "in_progress"


def _attempt_field(attempt: Dict[str, Any], name: str, client_name: str) -> Any:
    """Read an attempt field stored by the runner, or sent by a client in camelCase."""
    return attempt.get(name, attempt.get(client_name))


def _attempt_correct(attempt: Dict[str, Any]) -> bool:
    grade = attempt.get("grade") or {}
    return bool(grade.get("is_correct", grade.get("isCorrect")))


def _award(session: Session, user: str, coins: int, xp: int) -> None:
    reward = session.query(UserReward).filter_by(user=user).first()
    if reward is None:
        reward = UserReward(user=user, coins=0, xp=0)
        session.add(reward)
    reward.coins = (reward.coins or 0) + coins
    reward.xp = (reward.xp or 0) + xp


def submit_exercise(user: str, practice_result_id: int,
                    attempts: Optional[List[Dict[str, Any]]] = None,
                    score_percent: Optional[float] = None,
                    time_spent_seconds: int = 0) -> Dict[str, Any]:
    """Finish an attempt.

    ``attempts`` defaults to the ones held by the saved runner. Pass/fail is
    decided here from the zone threshold; a client-computed ``passed`` flag is
    never trusted. Rewards are only given on the first pass of a set.
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    session = get_session()
    try:
        result = _get_in_progress_result(session, user, practice_result_id)
        practice_set = session.get(PracticeSet, result.practice_set_id)
        if practice_set is None:
            raise LookupError("Practice set not found")

        runner = ExerciseRunner.from_dict(result.session_state or {})
        if attempts is None:
            attempts = list(runner.attempts.values())
        total_questions = len(runner.question_ids) or len(attempts)

        total_correct = len([a for a in attempts if _attempt_correct(a)])
        total_incorrect = len(attempts) - total_correct
        if score_percent is None:
            score_percent = _round_half_up(total_correct / total_questions * 100) if total_questions else 0

        threshold = pass_threshold_for_zone(_zone_level_for_set(session, practice_set))
        passed = score_percent >= threshold

        earlier_pass = (
            session.query(PracticeResult)
            .filter(
                PracticeResult.user == user,
                PracticeResult.practice_set_id == practice_set.id,
                PracticeResult.passed.is_(True),
                PracticeResult.id != result.id,
            )
            .first()
        )
        is_first_pass = earlier_pass is None and passed

        weak_question_types: Dict[str, int] = {}
        for attempt in attempts:
            if not _attempt_correct(attempt):
                qtype = _attempt_field(attempt, "question_type", "questionType") or "unknown"
                weak_question_types[qtype] = weak_question_types.get(qtype, 0) + 1

        coins = (practice_set.coin_reward or 0) if is_first_pass else 0
        xp = (practice_set.xp_reward or 0) if is_first_pass else 0

        result.status = "completed"
        result.score_percent = score_percent
        result.pass_criteria = _pass_criteria(threshold)
        result.total_correct = total_correct
        result.total_incorrect = total_incorrect
        result.total_skipped = max(0, total_questions - total_correct - total_incorrect)
        result.time_spent_seconds = time_spent_seconds
        result.weak_question_types = weak_question_types
        result.passed = passed
        result.is_first_pass = is_first_pass
        result.coins_earned = coins
        result.xp_earned = xp
        result.updated_at = now

        for attempt in attempts:
            grade = attempt.get("grade") or {}
            try:
                question_id = int(_attempt_field(attempt, "question_id", "questionId"))
            except (TypeError, ValueError):
                question_id = None
            session.add(PracticeResultDetail(
                practice_result_id=result.id,
                question_id=question_id,
                question_type=_attempt_field(attempt, "question_type", "questionType"),
                is_correct=_attempt_correct(attempt),
                time_spent_ms=_attempt_field(attempt, "time_spent_ms", "timeSpentMs") or 0,
                answer_data={
                    "user_answer": _attempt_field(attempt, "user_answer", "userAnswer"),
                    "score": grade.get("score"),
                    "feedback": grade.get("feedback"),
                },
                status=attempt.get("status") or "answered",
            ))

        if practice_set.lesson_id and practice_set.topic_id:
            _update_lesson_progress(session, user, practice_set, score_percent, passed, threshold, now)
        if is_first_pass:
            _award(session, user, coins, xp)

        session.commit()
        print(f"✅ Submitted practice result {result.id}: {score_percent}% "
              f"(threshold {threshold}%, {'passed' if passed else 'not passed'})")
        return {
            "practice_result_id": result.id,
            "passed": passed,
            "is_first_pass": is_first_pass,
            "coins_earned": coins,
            "xp_earned": xp,
            "topic_id": practice_set.topic_id,
            "lesson_id": practice_set.lesson_id,
        }
    finally:
        session.close()
