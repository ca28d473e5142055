"""
Server-side grading for lesson exercise questions.

A question is a dict shaped like the stored ``Question.data`` payload plus
its ``type``. Answers come straight from the client JSON.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List

from .normalize import normalize_for_comparison


@dataclass
class GradeResult:
    is_correct: bool
    score: float
    feedback: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _count_matched_pairs(pairs: List[Dict[str, Any]], answer: Any, value_key: str) -> int:
    pair_ids = {pair.get("id") for pair in pairs}
    if isinstance(answer, list):
        return len([pid for pid in answer if pid in pair_ids])
    matched = 0
    for match in (answer or {}).values():
        if not isinstance(match, dict):
            continue
        if any(pair.get("id") == match.get("pairId") and pair.get(value_key) == match.get(value_key)
               for pair in pairs):
            matched += 1
    return matched


def _grade_matching(question: Dict[str, Any], answer: Any, value_key: str, perfect: str) -> GradeResult:
    pairs = question.get("pairs") or []
    total = len(pairs)
    matched = _count_matched_pairs(pairs, answer, value_key)
    is_correct = matched == total
    return GradeResult(
        is_correct=is_correct,
        score=matched / total if total else 0.0,
        feedback=perfect if is_correct else f"{matched}/{total} pairs correct",
    )


def _positional_matches(user_words: List[str], correct: List[str]) -> int:
    count = 0
    for i in range(min(len(user_words), len(correct))):
        if normalize_for_comparison(user_words[i] or "") == normalize_for_comparison(correct[i] or ""):
            count += 1
    return count


def _grade_choose_words(question: Dict[str, Any], answer: Any) -> GradeResult:
    user_words: List[str] = answer if isinstance(answer, list) else []
    qd = question.get("question_data") or {}
    subtype = qd.get("subtype")
    data = qd.get("data")

    if subtype and data:
        if subtype == "fill_in_blanks":
            correct = (data.get("blanks") or {}).get("correct") or []
            count = 0
            for i, expected in enumerate(correct):
                given = user_words[i] if i < len(user_words) else ""
                if normalize_for_comparison(given or "") == normalize_for_comparison(expected or ""):
                    count += 1
            is_correct = len(correct) > 0 and count == len(correct) and len(user_words) == len(correct)
            return GradeResult(
                is_correct=is_correct,
                score=count / len(correct) if correct else 0.0,
                feedback="All blanks correct!" if is_correct else f"{count}/{len(correct)} blanks correct",
            )

        tokens: List[str] = data.get("tokens") or []
        count = _positional_matches(user_words, tokens)
        if subtype == "translation":
            canonical = (data.get("canonical_sentence") or " ".join(tokens)).strip()
            user_sentence = " ".join(user_words).strip()
            is_correct = (
                len(tokens) > 0
                and len(user_words) == len(tokens)
                and normalize_for_comparison(user_sentence) == normalize_for_comparison(canonical)
            )
            perfect = "Perfect translation!"
        else:
            # sentence scramble and other token-ordered variants
            is_correct = len(tokens) > 0 and len(user_words) == len(tokens) and count == len(tokens)
            perfect = "Perfect sentence!"
        return GradeResult(
            is_correct=is_correct,
            score=count / len(tokens) if tokens else 0.0,
            feedback=perfect if is_correct else f"{count}/{len(tokens)} tokens in correct order",
        )

    # Legacy questions carry a flat list of correct words
    correct_words: List[str] = question.get("correctAnswer") or []
    normalized_correct = {normalize_for_comparison(w) for w in correct_words}
    count = len([w for w in user_words if normalize_for_comparison(w) in normalized_correct])
    is_correct = len(correct_words) > 0 and count == len(correct_words) and len(user_words) == len(correct_words)
    return GradeResult(
        is_correct=is_correct,
        score=count / len(correct_words) if correct_words else 0.0,
        feedback="Perfect translation!" if is_correct else f"{count}/{len(correct_words)} words correct",
    )


def _grade_role_play(question: Dict[str, Any], answer: Any) -> GradeResult:
    steps = question.get("steps") or []
    choices = answer if isinstance(answer, list) else []
    total = len(steps)
    correct_steps = len([
        step for i, step in enumerate(steps)
        if i < len(choices) and choices[i] == step.get("expected")
    ])
    accuracy = correct_steps / total if total else 0.0
    is_correct = accuracy > 0.5
    pct = round(accuracy * 100)
    if is_correct:
        feedback = f"Great role-play! {correct_steps}/{total} steps correct ({pct}% accuracy)"
    else:
        feedback = (f"{correct_steps}/{total} steps correct ({pct}% accuracy). "
                    "Try to get more than 50% correct next time!")
    return GradeResult(is_correct=is_correct, score=accuracy, feedback=feedback)


def grade_question(question: Dict[str, Any], answer: Any) -> GradeResult:
    """Grade one answer. Unknown question types are graded incorrect."""
    qtype = question.get("type")

    if qtype == "multiple-choice":
        is_correct = answer == question.get("correctChoiceId")
        if is_correct:
            feedback = "Correct!"
        else:
            correct_text = next((c.get("text") for c in question.get("choices") or []
                                 if c.get("id") == question.get("correctChoiceId")), None)
            feedback = f"Incorrect. The correct answer is: {correct_text}"
        return GradeResult(is_correct, 1.0 if is_correct else 0.0, feedback)

    if qtype == "word-matching":
        return _grade_matching(question, answer, "vietnamese", "Perfect matching!")

    if qtype == "synonyms-matching":
        return _grade_matching(question, answer, "word2", "All synonyms matched correctly!")

    if qtype == "choose-words":
        return _grade_choose_words(question, answer)

    if qtype == "error-correction":
        target = question.get("target") or ""
        is_correct = normalize_for_comparison(answer or "") == normalize_for_comparison(target)
        feedback = "Correct correction!" if is_correct else f'The correct sentence is: "{target}"'
        return GradeResult(is_correct, 1.0 if is_correct else 0.0, feedback)

    if qtype == "grammar-structure":
        is_correct = answer == question.get("correctChoiceId")
        hint = question.get("hint") or "Please review the grammar rule."
        return GradeResult(is_correct, 1.0 if is_correct else 0.0,
                           "Correct grammar!" if is_correct else f"Incorrect. {hint}")

    if qtype == "dialogue-completion":
        is_correct = answer == question.get("correctChoiceId")
        return GradeResult(is_correct, 1.0 if is_correct else 0.0,
                           "Good dialogue completion!" if is_correct else "Try a more appropriate response")

    if qtype == "role-play":
        return _grade_role_play(question, answer)

    return GradeResult(False, 0.0, "Unknown question type")
