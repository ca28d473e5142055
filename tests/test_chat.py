"""
Tests for tutor conversations: quotas, conversation storage, tutor replies
and conversation feedback.
"""

import os
import json
import tempfile

os.environ["TEST_MODE"] = "1"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from typing import Any, Generator, List

from llm_learn_vietnamese import chat, db, rag

GRAMMAR_TEXT = "Cách dùng trạng ngữ chỉ thời gian trong câu tiếng Việt"

GOOD_FEEDBACK = json.dumps({
    "totalScore": 120,
    "categoryScores": [
        {"name": "Ngữ pháp (Grammar)", "score": "85", "comment": "Tốt"},
        {"name": "Từ vựng (Vocabulary)", "score": -5, "comment": "Cần thêm"},
    ],
    "strengths": ["Chào hỏi tự nhiên"],
    "areasForImprovement": ["Dấu thanh"],
    "finalAssessment": "Bạn tiến bộ nhanh.",
    "vocabularySuggestions": [{"word": "cảm ơn", "meaning": "thank you", "example": "Cảm ơn bạn."}],
    "grammarNotes": ["Dùng 'đã' cho quá khứ"],
    "pronunciationTips": ["Luyện dấu hỏi"],
}, ensure_ascii=False)


class MockResponse:
    def __init__(self, content: str):
        self.content = content

    def text(self) -> str:
        return self.content


class MockAIModel:
    """Mock AI model for consistent testing without actual API calls."""

    model_name = "mock-tutor"

    def __init__(self, feedback_reply: str = GOOD_FEEDBACK):
        self.feedback_reply = feedback_reply
        self.prompts: List[str] = []

    def prompt(self, prompt_text: str, system: str = "") -> MockResponse:
        if "friendly Vietnamese tutor" in system:
            self.prompts.append(prompt_text)
            return MockResponse("  Xin chào! (Hello!)  ")
        if "giáo viên tiếng Việt" in system:
            return MockResponse(self.feedback_reply)
        if "extract search keywords" in system:
            return MockResponse(json.dumps({"keywords": ["trạng ngữ"], "contextualizedQuery": GRAMMAR_TEXT}))
        return MockResponse("")


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


@pytest.fixture
def mock_model() -> MockAIModel:
    """Provide a mock AI model for testing."""
    return MockAIModel()


# ── Quotas ─────────────────────────────────────────────────────────

def test_guest_quota() -> None:
    quota = chat.get_remaining_messages(None)
    assert quota["user_type"] == "guest"
    assert quota["remaining"] == 5
    assert quota["used"] == 0


def test_tier_quotas(temp_db: Any) -> None:
    assert chat.get_remaining_messages("free_user")["max_messages_per_day"] == 5
    db.set_user_settings("plus_user", tier="PLUS")
    quota = chat.get_remaining_messages("plus_user")
    assert quota["max_messages_per_day"] == 60
    assert "chat-model-reasoning" in quota["available_chat_models"]


def test_quota_counts_user_messages_only(temp_db: Any) -> None:
    user = "counter"
    conv = chat.create_conversation(user)
    chat.add_message(user, conv["id"], "user", "một")
    chat.add_message(user, conv["id"], "assistant", "hai")
    quota = chat.get_remaining_messages(user)
    assert quota["used"] == 1
    assert quota["remaining"] == 4


# ── Conversations ──────────────────────────────────────────────────

def test_conversation_crud(temp_db: Any) -> None:
    user = "talker"
    first = chat.create_conversation(user, topic="Ordering food", difficulty_level="beginner")
    assert first["title"] == "Ordering food"
    assert first["status"] == "active"
    second = chat.create_conversation(user, title="Travel talk")
    assert [c["id"] for c in chat.list_conversations(user)] == [second["id"], first["id"]]
    assert chat.get_conversation("stranger", first["id"]) is None

    updated = chat.update_conversation(user, first["id"], is_completed=True, status="completed")
    assert updated["is_completed"] is True
    assert updated["completed_at"] is not None
    assert [c["id"] for c in chat.list_conversations(user, status="completed")] == [first["id"]]
    assert chat.update_conversation("stranger", first["id"], title="x") is None

    assert chat.delete_conversation("stranger", first["id"]) is False
    assert chat.delete_conversation(user, first["id"]) is True
    assert chat.get_conversation(user, first["id"]) is None


@pytest.mark.parametrize("kwargs", [
    {"conversation_type": "video"},
    {"difficulty_level": "expert"},
])
def test_create_conversation_validation(kwargs: Any) -> None:
    with pytest.raises(ValueError):
        chat.create_conversation("u", **kwargs)


def test_update_conversation_validation(temp_db: Any) -> None:
    conv = chat.create_conversation("u")
    with pytest.raises(ValueError):
        chat.update_conversation("u", conv["id"], user="someone_else")
    with pytest.raises(ValueError):
        chat.update_conversation("u", conv["id"], status="archived")
    for bad in ({"completed_at": "yesterday"}, {"completed_at": 12},
                {"message_count": "5"}, {"duration_seconds": -1}, {"is_completed": "yes"},
                {"title": ["x"]}):
        with pytest.raises(ValueError):
            chat.update_conversation("u", conv["id"], **bad)


def test_update_conversation_parses_timestamps(temp_db: Any) -> None:
    conv = chat.create_conversation("u")
    updated = chat.update_conversation("u", conv["id"], completed_at="2026-03-10T15:00:00+07:00",
                                       duration_seconds=95, title="  Ở chợ  ")
    assert updated["completed_at"] == "2026-03-10T08:00:00"
    assert updated["duration_seconds"] == 95
    assert updated["title"] == "Ở chợ"
    cleared = chat.update_conversation("u", conv["id"], completed_at=None)
    assert cleared["completed_at"] is None


def test_messages_are_sequenced(temp_db: Any) -> None:
    user = "writer"
    conv = chat.create_conversation(user)
    chat.add_message(user, conv["id"], "user", "  Xin chào  ")
    chat.add_message(user, conv["id"], "assistant", "Chào bạn")
    messages = chat.get_messages(user, conv["id"])
    assert [(m["sequence_number"], m["role"], m["content"]) for m in messages] == [
        (1, "user", "Xin chào"), (2, "assistant", "Chào bạn"),
    ]
    assert chat.get_messages("stranger", conv["id"]) is None
    assert chat.add_message("stranger", conv["id"], "user", "hi") is None
    with pytest.raises(ValueError):
        chat.add_message(user, conv["id"], "system", "hi")
    with pytest.raises(ValueError):
        chat.add_message(user, conv["id"], "user", "   ")


# ── Tutor replies ──────────────────────────────────────────────────

def test_send_tutor_message(temp_db: Any, mock_model: MockAIModel) -> None:
    user = "learner"
    conv = chat.create_conversation(user)
    result = chat.send_tutor_message(user, conv["id"], "xin chao", mock_model)
    assert result["user_message"]["sequence_number"] == 1
    assert result["reply"]["content"] == "Xin chào! (Hello!)"
    assert result["reply"]["sequence_number"] == 2
    assert result["knowledge"] is None
    assert result["remaining_messages"] == 4

    chat.send_tutor_message(user, conv["id"], "cam on", mock_model)
    assert mock_model.prompts[-1] == "Learner: xin chao\nTutor: Xin chào! (Hello!)\nLearner: cam on"
    stored = chat.get_conversation(user, conv["id"])
    assert stored["message_count"] == 4
    assert stored["user_message_count"] == 2


def test_tutor_reply_uses_knowledge_base(temp_db: Any, mock_model: MockAIModel) -> None:
    rag.add_grammar_chunk(GRAMMAR_TEXT, category_en="Adverbials")
    conv = chat.create_conversation("learner")
    result = chat.send_tutor_message("learner", conv["id"], "How to use trạng ngữ in a sentence", mock_model)
    assert result["knowledge"]["grammar"]["sources"][0]["content"] == GRAMMAR_TEXT
    assert result["knowledge"]["folklore"] is None
    assert mock_model.prompts[-1].startswith("Retrieved knowledge:")


def test_send_tutor_message_errors(temp_db: Any, mock_model: MockAIModel) -> None:
    conv = chat.create_conversation("learner")
    with pytest.raises(ValueError):
        chat.send_tutor_message("learner", conv["id"], "hi", None)
    with pytest.raises(ValueError):
        chat.send_tutor_message("learner", conv["id"], "  ", mock_model)
    with pytest.raises(LookupError):
        chat.send_tutor_message("learner", 999, "hi", mock_model)


def test_daily_limit_blocks_messages(temp_db: Any, mock_model: MockAIModel) -> None:
    conv = chat.create_conversation("busy")
    for i in range(5):
        chat.add_message("busy", conv["id"], "user", f"tin nhắn {i}")
    with pytest.raises(ValueError) as exc:
        chat.send_tutor_message("busy", conv["id"], "one more", mock_model)
    assert "Daily message limit reached" in str(exc.value)


# ── Feedback ───────────────────────────────────────────────────────

def test_format_transcript() -> None:
    transcript = chat.format_transcript([
        {"role": "user", "content": "Xin chào"}, {"role": "assistant", "content": "Chào bạn"},
    ])
    assert transcript == "- Học sinh: Xin chào\n- AI: Chào bạn"


def test_generate_feedback(temp_db: Any, mock_model: MockAIModel) -> None:
    user = "graded"
    conv = chat.create_conversation(user)
    chat.add_message(user, conv["id"], "user", "Tôi đi chợ hôm qua")
    feedback = chat.generate_conversation_feedback(user, conv["id"], mock_model)
    assert feedback["total_score"] == 100.0
    assert [c["score"] for c in feedback["category_scores"]] == [85.0, 0.0]
    assert feedback["vocabulary_suggestions"][0]["word"] == "cảm ơn"
    assert feedback["ai_model"] == "mock-tutor"
    assert chat.get_conversation_feedback(user, conv["id"])["strengths"] == ["Chào hỏi tự nhiên"]
    assert chat.get_conversation_feedback("stranger", conv["id"]) is None


def test_feedback_falls_back_on_bad_reply(temp_db: Any) -> None:
    user = "graded"
    conv = chat.create_conversation(user)
    chat.add_message(user, conv["id"], "user", "Xin chào")
    chat.generate_conversation_feedback(user, conv["id"], MockAIModel())
    feedback = chat.generate_conversation_feedback(user, conv["id"], MockAIModel(feedback_reply="{not json"))
    assert feedback["total_score"] == 0.0
    assert len(feedback["category_scores"]) == 5
    assert feedback["category_scores"][0]["comment"] == "Chưa thể đánh giá tự động"

    session = db.get_session()
    rows = session.query(db.ConversationFeedback).filter_by(conversation_id=conv["id"]).count()
    session.close()
    assert rows == 1


def test_feedback_errors(temp_db: Any, mock_model: MockAIModel) -> None:
    conv = chat.create_conversation("u")
    with pytest.raises(ValueError):
        chat.generate_conversation_feedback("u", conv["id"], mock_model)
    with pytest.raises(LookupError):
        chat.generate_conversation_feedback("u", 999, mock_model)
    with pytest.raises(ValueError):
        chat.parse_feedback({"totalScore": 50})
