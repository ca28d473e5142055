"""
Tutor conversations: daily message quotas, conversation and message storage,
LLM tutor replies grounded on the knowledge base, and end-of-conversation
feedback.
"""

import datetime
import os
import time
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import rag
from .db import ChatMessage, Conversation, ConversationFeedback, get_session, get_user_settings
from .structured import (
    FEEDBACK_CATEGORIES, FEEDBACK_PROMPT, FEEDBACK_SYSTEM, TUTOR_SYSTEM,
    CategoryScore, ConversationFeedbackData, VocabularySuggestion, extract_json_object,
)

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"

ENTITLEMENTS = {
    "guest": {"max_messages_per_day": 5, "available_chat_models": ["chat-model"]},
    "FREE": {"max_messages_per_day": 5, "available_chat_models": ["chat-model"]},
    "PLUS": {"max_messages_per_day": 60, "available_chat_models": ["chat-model", "chat-model-reasoning"]},
    "UNLIMITED": {"max_messages_per_day": 200, "available_chat_models": ["chat-model", "chat-model-reasoning"]},
}
QUOTA_WINDOW_HOURS = 24
HISTORY_LIMIT = 20
CONVERSATION_TYPES = ("chat", "voice")
DIFFICULTY_LEVELS = ("beginner", "intermediate", "advanced")
CONVERSATION_STATUSES = ("active", "completed", "abandoned")
_UPDATABLE_FIELDS = (
    "title", "topic", "difficulty_level", "status", "duration_seconds",
    "message_count", "user_message_count", "is_completed", "completed_at",
)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _conversation_to_dict(conv: Conversation) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "topic": conv.topic,
        "difficulty_level": conv.difficulty_level,
        "conversation_type": conv.conversation_type,
        "status": conv.status,
        "message_count": conv.message_count,
        "user_message_count": conv.user_message_count,
        "duration_seconds": conv.duration_seconds,
        "is_completed": conv.is_completed,
        "created_at": conv.created_at.isoformat() if conv.created_at else None,
        "completed_at": conv.completed_at.isoformat() if conv.completed_at else None,
    }


def _message_to_dict(msg: ChatMessage) -> Dict[str, Any]:
    return {
        "id": msg.id,
        "conversation_id": msg.conversation_id,
        "role": msg.role,
        "content": msg.content,
        "sequence_number": msg.sequence_number,
        "created_at": msg.created_at.isoformat() if msg.created_at else None,
    }


# ── Quotas ──────────────────────────────────────────────────────────────

def get_user_type(user: Optional[str]) -> str:
    if not user:
        return "guest"
    return get_user_settings(user)["tier"]


def _count_recent_user_messages(session: Session, user: str) -> int:
    since = _now() - datetime.timedelta(hours=QUOTA_WINDOW_HOURS)
    return (
        session.query(ChatMessage)
        .join(Conversation, ChatMessage.conversation_id == Conversation.id)
        .filter(Conversation.user == user, ChatMessage.role == "user", ChatMessage.created_at >= since)
        .count()
    )


def get_remaining_messages(user: Optional[str]) -> Dict[str, Any]:
    """Messages left in the rolling 24 hour window."""
    user_type = get_user_type(user)
    entitlement = ENTITLEMENTS.get(user_type, ENTITLEMENTS["guest"])
    used = 0
    if user:
        session = get_session()
        try:
            used = _count_recent_user_messages(session, user)
        finally:
            session.close()
    limit = entitlement["max_messages_per_day"]
    return {
        "user_type": user_type,
        "max_messages_per_day": limit,
        "used": used,
        "remaining": max(0, limit - used),
        "available_chat_models": entitlement["available_chat_models"],
    }


# ── Conversations and messages ──────────────────────────────────────────

def create_conversation(user: str, title: Optional[str] = None, topic: Optional[str] = None,
                        difficulty_level: Optional[str] = None, conversation_type: str = "chat") -> Dict[str, Any]:
    if conversation_type not in CONVERSATION_TYPES:
        raise ValueError(f"conversation_type must be one of {', '.join(CONVERSATION_TYPES)}")
    if difficulty_level is not None and difficulty_level not in DIFFICULTY_LEVELS:
        raise ValueError(f"difficulty_level must be one of {', '.join(DIFFICULTY_LEVELS)}")
    session = get_session()
    try:
        conv = Conversation(
            user=user,
            title=(title or topic or "New conversation")[:200],
            topic=topic,
            difficulty_level=difficulty_level,
            conversation_type=conversation_type,
            status="active",
            message_count=0,
            user_message_count=0,
            duration_seconds=0,
            is_completed=False,
        )
        session.add(conv)
        session.commit()
        return _conversation_to_dict(conv)
    finally:
        session.close()


def _get_owned(session: Session, user: str, conversation_id: int) -> Optional[Conversation]:
    conv = session.get(Conversation, conversation_id)
    if conv is None or conv.user != user:
        return None
    return conv


def get_conversation(user: str, conversation_id: int) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        conv = _get_owned(session, user, conversation_id)
        return _conversation_to_dict(conv) if conv else None
    finally:
        session.close()


def list_conversations(user: str, status: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Newest first."""
    session = get_session()
    try:
        query = session.query(Conversation).filter(Conversation.user == user)
        if status:
            query = query.filter(Conversation.status == status)
        query = query.order_by(Conversation.created_at.desc(), Conversation.id.desc())
        if limit:
            query = query.limit(limit)
        return [_conversation_to_dict(c) for c in query.all()]
    finally:
        session.close()


def _parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """ISO-8601 string or datetime to a naive UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"completed_at: not an ISO-8601 timestamp: {value!r}")
    if not isinstance(value, datetime.datetime):
        raise ValueError("completed_at: must be an ISO-8601 timestamp")
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


def _clean_update(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = [k for k in fields if k not in _UPDATABLE_FIELDS]
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(unknown)}")
    cleaned: Dict[str, Any] = {}
    errors: List[str] = []
    for key, value in fields.items():
        if key in ("title", "topic"):
            if value is not None and not isinstance(value, str):
                errors.append(f"{key}: must be a string")
            else:
                cleaned[key] = value.strip() if value else value
        elif key == "difficulty_level":
            if value not in DIFFICULTY_LEVELS:
                errors.append(f"difficulty_level: must be one of {', '.join(DIFFICULTY_LEVELS)}")
            cleaned[key] = value
        elif key == "status":
            if value not in CONVERSATION_STATUSES:
                errors.append(f"status: must be one of {', '.join(CONVERSATION_STATUSES)}")
            cleaned[key] = value
        elif key == "is_completed":
            if not isinstance(value, bool):
                errors.append("is_completed: must be true or false")
            cleaned[key] = value
        elif key == "completed_at":
            try:
                cleaned[key] = _parse_timestamp(value)
            except ValueError as e:
                errors.append(str(e))
        else:
            # Counters
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                errors.append(f"{key}: must be a non-negative integer")
            cleaned[key] = value
    if errors:
        raise ValueError("Invalid conversation update: " + "; ".join(errors))
    return cleaned


def update_conversation(user: str, conversation_id: int, **fields: Any) -> Optional[Dict[str, Any]]:
    fields = _clean_update(fields)
    session = get_session()
    try:
        conv = _get_owned(session, user, conversation_id)
        if conv is None:
            return None
        for key, value in fields.items():
            setattr(conv, key, value)
        if fields.get("is_completed") and conv.completed_at is None:
            conv.completed_at = _now()
        session.commit()
        return _conversation_to_dict(conv)
    finally:
        session.close()


def delete_conversation(user: str, conversation_id: int) -> bool:
    session = get_session()
    try:
        conv = _get_owned(session, user, conversation_id)
        if conv is None:
            return False
        session.query(ChatMessage).filter_by(conversation_id=conversation_id).delete()
        session.query(ConversationFeedback).filter_by(conversation_id=conversation_id).delete()
        session.delete(conv)
        session.commit()
        return True
    finally:
        session.close()


def _append_message(session: Session, conv: Conversation, role: str, content: str) -> ChatMessage:
    last = (
        session.query(ChatMessage)
        .filter_by(conversation_id=conv.id)
        .order_by(ChatMessage.sequence_number.desc())
        .first()
    )
    msg = ChatMessage(
        conversation_id=conv.id,
        role=role,
        content=content,
        sequence_number=(last.sequence_number if last else 0) + 1,
    )
    session.add(msg)
    conv.message_count = (conv.message_count or 0) + 1
    if role == "user":
        conv.user_message_count = (conv.user_message_count or 0) + 1
    return msg


def add_message(user: str, conversation_id: int, role: str, content: str) -> Optional[Dict[str, Any]]:
    if role not in ("user", "assistant"):
        raise ValueError("role must be 'user' or 'assistant'")
    if not content or not content.strip():
        raise ValueError("content is required")
    session = get_session()
    try:
        conv = _get_owned(session, user, conversation_id)
        if conv is None:
            return None
        msg = _append_message(session, conv, role, content.strip())
        session.commit()
        return _message_to_dict(msg)
    finally:
        session.close()


def get_messages(user: str, conversation_id: int) -> Optional[List[Dict[str, Any]]]:
    session = get_session()
    try:
        if _get_owned(session, user, conversation_id) is None:
            return None
        messages = (
            session.query(ChatMessage)
            .filter_by(conversation_id=conversation_id)
            .order_by(ChatMessage.sequence_number.asc())
            .all()
        )
        return [_message_to_dict(m) for m in messages]
    finally:
        session.close()


# ── Tutor replies ───────────────────────────────────────────────────────

def _knowledge_context(text: str, model: Any) -> Optional[Dict[str, Any]]:
    """Knowledge base hits for a learner message, or None when the message
    does not look like a grammar or folklore question."""
    intent = rag.analyze_query(text)
    if not intent.keywords and intent.confidence <= 0.3:
        return None
    try:
        result = rag.search_knowledge_base(text, "both", 5, model)
    except Exception as e:
        print(f"⚠️ Knowledge base search failed, answering without it: {e}")
        return None
    if result["grammar"] is None and result["folklore"] is None:
        return None
    return result


def send_tutor_message(user: str, conversation_id: int, text: str, model: Any,
                       use_knowledge_base: bool = True) -> Dict[str, Any]:
    """Store the learner's message, ask the tutor model and store its reply."""
    if model is None:
        raise ValueError("AI model is required for tutor chat. Please ensure OpenAI API key is configured.")
    if not text or not text.strip():
        raise ValueError("message is required")

    quota = get_remaining_messages(user)
    if quota["remaining"] <= 0:
        raise ValueError(
            f"Daily message limit reached ({quota['max_messages_per_day']} messages for {quota['user_type']})"
        )

    history = get_messages(user, conversation_id)
    if history is None:
        raise LookupError(f"Conversation {conversation_id} not found")

    knowledge = _knowledge_context(text, model) if use_knowledge_base else None

    lines = []
    for msg in history[-HISTORY_LIMIT:]:
        speaker = "Learner" if msg["role"] == "user" else "Tutor"
        lines.append(f"{speaker}: {msg['content']}")
    lines.append(f"Learner: {text.strip()}")
    prompt = "\n".join(lines)
    if knowledge is not None:
        prompt = f"{knowledge['context']}\n{prompt}"

    if DEBUG_MODE:
        print(f"🤖 Tutor prompt for conversation {conversation_id}: {len(prompt)} characters")
    response = model.prompt(prompt, system=TUTOR_SYSTEM)
    reply = response.text().strip()

    session = get_session()
    try:
        conv = _get_owned(session, user, conversation_id)
        if conv is None:
            raise LookupError(f"Conversation {conversation_id} not found")
        user_msg = _append_message(session, conv, "user", text.strip())
        assistant_msg = _append_message(session, conv, "assistant", reply)
        session.commit()
        payload = {
            "user_message": _message_to_dict(user_msg),
            "reply": _message_to_dict(assistant_msg),
        }
    finally:
        session.close()

    payload["knowledge"] = {
        "grammar": knowledge["grammar"],
        "folklore": knowledge["folklore"],
    } if knowledge else None
    payload["remaining_messages"] = max(0, quota["remaining"] - 1)
    return payload


# ── Feedback ────────────────────────────────────────────────────────────

def format_transcript(messages: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"- {'Học sinh' if m['role'] == 'user' else 'AI'}: {m['content']}" for m in messages
    )


def _clamp_score(value: Any) -> float:
    try:
        return max(0.0, min(100.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def parse_feedback(data: Dict[str, Any]) -> ConversationFeedbackData:
    """Validate the model's feedback JSON. Raises ValueError on a bad shape."""
    if "totalScore" not in data or not isinstance(data.get("categoryScores"), list):
        raise ValueError("Feedback is missing totalScore or categoryScores")
    categories = [
        CategoryScore(str(c.get("name", "")), _clamp_score(c.get("score")), str(c.get("comment", "")))
        for c in data["categoryScores"] if isinstance(c, dict)
    ]
    suggestions = [
        VocabularySuggestion(str(v.get("word", "")), str(v.get("meaning", "")), str(v.get("example", "")))
        for v in data.get("vocabularySuggestions") or [] if isinstance(v, dict)
    ]
    return ConversationFeedbackData(
        total_score=_clamp_score(data["totalScore"]),
        category_scores=categories,
        strengths=[str(s) for s in data.get("strengths") or []],
        areas_for_improvement=[str(s) for s in data.get("areasForImprovement") or []],
        final_assessment=str(data.get("finalAssessment") or ""),
        vocabulary_suggestions=suggestions,
        grammar_notes=[str(s) for s in data.get("grammarNotes") or []],
        pronunciation_tips=[str(s) for s in data.get("pronunciationTips") or []],
    )


def fallback_feedback() -> ConversationFeedbackData:
    return ConversationFeedbackData(
        total_score=0.0,
        category_scores=[CategoryScore(name, 0.0, "Chưa thể đánh giá tự động") for name in FEEDBACK_CATEGORIES],
        strengths=[],
        areas_for_improvement=[],
        final_assessment="Không thể tạo nhận xét tự động cho cuộc hội thoại này. Vui lòng thử lại sau.",
    )


def _feedback_to_dict(row: ConversationFeedback) -> Dict[str, Any]:
    return {
        "conversation_id": row.conversation_id,
        "total_score": row.total_score,
        "category_scores": row.category_scores,
        "strengths": row.strengths,
        "areas_for_improvement": row.areas_for_improvement,
        "final_assessment": row.final_assessment,
        "vocabulary_suggestions": row.vocabulary_suggestions,
        "grammar_notes": row.grammar_notes,
        "pronunciation_tips": row.pronunciation_tips,
        "ai_model": row.ai_model,
        "ai_processing_time_ms": row.ai_processing_time_ms,
    }


def generate_conversation_feedback(user: str, conversation_id: int, model: Any) -> Dict[str, Any]:
    """Score a finished conversation and store the result (one row per conversation and user)."""
    if model is None:
        raise ValueError("AI model is required for feedback. Please ensure OpenAI API key is configured.")
    messages = get_messages(user, conversation_id)
    if messages is None:
        raise LookupError(f"Conversation {conversation_id} not found")
    if not messages:
        raise ValueError("Conversation has no messages to evaluate")

    prompt = FEEDBACK_PROMPT.format(transcript=format_transcript(messages),
                                    categories=", ".join(FEEDBACK_CATEGORIES))
    start = time.time()
    try:
        response = model.prompt(prompt, system=FEEDBACK_SYSTEM)
        data = extract_json_object(response.text())
        if data is None:
            raise ValueError("No JSON object in feedback reply")
        feedback = parse_feedback(data)
    except Exception as e:
        print(f"❌ Feedback generation failed for conversation {conversation_id}: {e}")
        feedback = fallback_feedback()
    elapsed_ms = int((time.time() - start) * 1000)

    values = feedback.to_dict()
    session = get_session()
    try:
        row = session.query(ConversationFeedback).filter_by(conversation_id=conversation_id, user=user).first()
        if row is None:
            row = ConversationFeedback(conversation_id=conversation_id, user=user)
            session.add(row)
        for key, value in values.items():
            setattr(row, key, value)
        row.ai_model = getattr(model, "model_name", None)
        row.ai_processing_time_ms = elapsed_ms
        session.commit()
        return _feedback_to_dict(row)
    finally:
        session.close()


def get_conversation_feedback(user: str, conversation_id: int) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        row = session.query(ConversationFeedback).filter_by(conversation_id=conversation_id, user=user).first()
        return _feedback_to_dict(row) if row else None
    finally:
        session.close()
