"""
Tests for the Flask JSON API: response envelopes, error mapping and the
main learner flows through the HTTP layer.
"""

import io
import os
import json
import tempfile

# Set test mode before importing the app
os.environ["TEST_MODE"] = "1"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from typing import Any, Generator, Tuple

from llm_learn_vietnamese import db, flashcards, statistics


class MockResponse:
    def __init__(self, content: str):
        self.content = content

    def text(self) -> str:
        return self.content


class MockAIModel:
    """Mock AI model for consistent testing without actual API calls."""

    model_name = "mock-model"

    def prompt(self, prompt_text: str, system: str = "") -> MockResponse:
        if "friendly Vietnamese tutor" in system:
            return MockResponse("Chào bạn! Hôm nay bạn thế nào?")
        if "giáo viên tiếng Việt" in system:
            return MockResponse(json.dumps({
                "totalScore": 72,
                "categoryScores": [{"name": "Ngữ pháp (Grammar)", "score": 70, "comment": "Khá"}],
                "strengths": ["Tự tin"],
                "areasForImprovement": ["Thanh điệu"],
                "finalAssessment": "Tốt.",
            }))
        return MockResponse("")


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


@pytest.fixture
def client(temp_db: Any) -> Any:
    """Create a Flask test client."""
    import app as flask_app
    flask_app.app.config["TESTING"] = True
    flask_app.app.config["SECRET_KEY"] = "test-secret"
    with flask_app.app.test_client() as c:
        with flask_app.app.app_context():
            yield c


@pytest.fixture
def with_ai(monkeypatch: pytest.MonkeyPatch) -> MockAIModel:
    import app as flask_app
    model = MockAIModel()
    monkeypatch.setattr(flask_app, "ai_model", model)
    monkeypatch.setattr(flask_app, "study_ai_model", model)
    return model


def _seed_cards() -> None:
    for i in range(3):
        flashcards.add_flashcard(f"món {i}", [f"dish {i}"], flashcard_id=f"food-{i}", topic=["Food"])
    flashcards.add_flashcard("con mèo", ["cat"], flashcard_id="animal-0", topic=["Animals"])


# ── Basics ─────────────────────────────────────────────────────────

def test_health(client: Any) -> None:
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "ok"
    assert data["database"] is True
    assert data["test_mode"] is True


def test_ai_status_without_model(client: Any) -> None:
    data = client.get("/ai_status").get_json()
    assert data["ai_enabled"] is False
    assert data["model"] is None


# ── Flashcards ─────────────────────────────────────────────────────

def test_flashcard_lookup_and_saving(client: Any) -> None:
    _seed_cards()
    resp = client.get("/api/flashcards")
    assert resp.get_json()["status"] == "success"
    assert len(resp.get_json()["flashcards"]) == 4

    card = client.get("/api/flashcards/food-1").get_json()["flashcard"]
    assert card["vietnamese"] == "món 1"
    assert card["is_saved"] is False

    toggled = client.post("/api/saved-flashcards/food-1/toggle").get_json()
    assert toggled["is_saved"] is True
    assert client.get("/api/flashcards/food-1").get_json()["flashcard"]["is_saved"] is True
    assert [c["id"] for c in client.get("/api/saved-flashcards").get_json()["flashcards"]] == ["food-1"]

    assert client.get("/api/flashcards/missing").status_code == 404
    assert client.post("/api/saved-flashcards/missing/toggle").status_code == 404


def test_flashcard_catalog_routes(client: Any) -> None:
    _seed_cards()
    page = client.get("/api/flashcards/topic/Food?limit=2").get_json()
    assert page["total"] == 3
    assert page["has_more"] is True
    batch = client.post("/api/flashcards/batch", json={"ids": ["animal-0", "food-0"]}).get_json()
    assert [c["id"] for c in batch["flashcards"]] == ["animal-0", "food-0"]
    assert client.get("/api/flashcards/search?q=meo").get_json()["flashcards"][0]["id"] == "animal-0"
    assert client.get("/api/flashcards/counts").get_json()["complexity"]["all"] == 4
    assert client.get("/api/flashcards/others/longest").status_code == 400
    assert client.get("/api/flashcards/topics?complexity=hard").status_code == 400


def test_import_csv_upload(client: Any) -> None:
    csv_bytes = "vietnamese,english,topic\nnhà,house,Home\n".encode("utf-8")
    resp = client.post("/api/flashcards/import",
                       data={"file": (io.BytesIO(csv_bytes), "cards.csv")},
                       content_type="multipart/form-data")
    assert resp.status_code == 200
    assert resp.get_json()["imported"] == 1

    bad = client.post("/api/flashcards/import",
                      data={"file": (io.BytesIO(b"x"), "cards.txt")},
                      content_type="multipart/form-data")
    assert bad.status_code == 400


def test_custom_flashcards(client: Any) -> None:
    created = client.post("/api/custom-flashcards", json={"vietnamese_text": "phở", "english_text": "noodle soup"})
    assert created.status_code == 201
    card_id = created.get_json()["flashcard"]["id"]

    invalid = client.post("/api/custom-flashcards", json={"vietnamese_text": ""})
    assert invalid.status_code == 400
    assert "vietnamese_text: is required" in invalid.get_json()["message"]

    updated = client.patch(f"/api/custom-flashcards/{card_id}", json={"topic": "Food"})
    assert updated.get_json()["flashcard"]["topic"] == "Food"
    assert client.patch("/api/custom-flashcards/999", json={"topic": "x"}).status_code == 404
    assert client.delete(f"/api/custom-flashcards/{card_id}").status_code == 200
    assert client.delete(f"/api/custom-flashcards/{card_id}").status_code == 404


def test_daily_flashcards(client: Any) -> None:
    _seed_cards()
    data = client.get("/api/flashcards/daily?count=2").get_json()
    assert data["status"] == "success"
    assert len(data["flashcards"]) == 2
    assert data["expires_at"].endswith("Z")


# ── Review sessions ────────────────────────────────────────────────

def test_review_session_flow(client: Any) -> None:
    _seed_cards()
    created = client.post("/api/review/sessions", json={"topic": "Food", "numberOfCards": 2})
    assert created.status_code == 201
    body = created.get_json()
    session_id = body["session_id"]
    first_id = body["flashcards"][0]["id"]

    recorded = client.post(f"/api/review/sessions/{session_id}/result",
                           json={"flashcardId": first_id, "result": "correct", "timeSpentMs": 900})
    assert recorded.status_code == 200
    assert recorded.get_json()["repetition_count"] == 1

    bad = client.post(f"/api/review/sessions/{session_id}/result",
                      json={"flashcard_id": first_id, "result": "maybe"})
    assert bad.status_code == 400
    missing = client.post(f"/api/review/sessions/{session_id}/result", json={"result": "correct"})
    assert missing.status_code == 400

    done = client.post(f"/api/review/sessions/{session_id}/complete")
    assert done.get_json()["session"]["completed_cards"] == 1
    assert client.post(f"/api/review/sessions/{session_id}/complete").status_code == 400

    assert client.get(f"/api/review/sessions/{session_id}").get_json()["session"]["status"] == "completed"
    assert client.get("/api/review/sessions/999").status_code == 404
    assert client.post("/api/review/sessions/999/complete").status_code == 404

    stats = client.get("/api/statistics/quick").get_json()["stats"]
    assert stats["total_cards_reviewed"] == 1


def test_review_availability_and_empty_pool(client: Any) -> None:
    _seed_cards()
    availability = client.post("/api/review/availability", json={"topic": "Food", "num_cards": 10}).get_json()
    assert availability["available_count"] == 3
    assert availability["insufficient"] is True
    assert client.post("/api/review/sessions", json={"topic": "Weather"}).status_code == 400
    assert client.post("/api/review/availability", json={"num_cards": 500}).status_code == 400


def test_due_and_manual_review(client: Any) -> None:
    _seed_cards()
    empty = client.get("/api/review/due").get_json()
    assert empty["status"] == "no_cards"
    assert empty["flashcards"] == []

    ok = client.post("/api/review/manual", json={"flashcard_id": "food-0", "quality": 4}).get_json()
    assert ok["is_correct"] is True
    assert ok["review"]["repetition_count"] == 1
    assert client.post("/api/review/manual", json={"flashcard_id": "food-0", "quality": 9}).status_code == 400
    assert client.post("/api/review/manual", json={"flashcard_id": "food-0", "quality": "x"}).status_code == 400
    assert client.post("/api/review/manual", json={"flashcard_id": "nope", "quality": 3}).status_code == 404


# ── Statistics and settings ────────────────────────────────────────

def test_statistics_routes(client: Any) -> None:
    recorded = client.post("/api/statistics/practice",
                           json={"flashcards_count": 8, "correct_count": 6, "time_spent_minutes": 5})
    assert recorded.get_json()["day"]["accuracy_rate"] == 75.0
    assert client.post("/api/statistics/practice",
                       json={"flashcards_count": 1, "correct_count": 2}).status_code == 400
    assert len(client.get("/api/statistics/daily?days_back=7").get_json()["days"]) == 1
    assert client.get("/api/statistics/daily?days_back=0").status_code == 400
    assert client.get("/api/statistics/streak").get_json()["current"] == 1

    analytics = client.get("/api/analytics")
    assert analytics.status_code == 200
    data = analytics.get_json()
    assert "streak" in data
    assert len(data["forecast"]) == 14


def test_settings(client: Any) -> None:
    assert client.get("/api/settings").get_json()["settings"]["tier"] == "FREE"
    updated = client.post("/api/settings", json={"tier": "PLUS", "timezone": "Asia/Ho_Chi_Minh"}).get_json()
    assert updated["settings"] == {"user": "default_user", "tier": "PLUS", "timezone": "Asia/Ho_Chi_Minh"}
    assert client.post("/api/settings", json={"tier": "GOLD"}).status_code == 400
    assert client.post("/api/settings", json={"timezone": "Mars/Olympus"}).status_code == 400


# ── Lessons and exercises ──────────────────────────────────────────

def _seed_lesson() -> Tuple[int, int]:
    session = db.get_session()
    zone = db.Zone(level=1, name="Beginner")
    session.add(zone)
    session.flush()
    topic = db.Topic(zone_id=zone.id, slug="numbers", name="Numbers")
    session.add(topic)
    session.flush()
    lesson = db.Lesson(topic_id=topic.id, title="One to ten", sort_order=1)
    session.add(lesson)
    session.flush()
    practice_set = db.PracticeSet(lesson_id=lesson.id, topic_id=topic.id, coin_reward=5, xp_reward=10)
    session.add(practice_set)
    session.flush()
    session.add(db.Question(practice_set_id=practice_set.id, type="multiple-choice", sort_order=1,
                            data={"correctChoiceId": "b"}))
    session.commit()
    ids = (topic.id, practice_set.id)
    session.close()
    return ids


def test_lesson_exercise_flow(client: Any) -> None:
    topic_id, set_id = _seed_lesson()
    lessons = client.get(f"/api/topics/{topic_id}/lessons").get_json()
    assert lessons["lessons"][0]["unlock"] == {"is_locked": False}
    assert client.get("/api/topics/999/lessons").status_code == 404

    questions = client.get(f"/api/practice-sets/{set_id}/questions").get_json()["questions"]
    assert client.get(f"/api/practice-sets/{set_id}/resume").status_code == 404

    started = client.post(f"/api/practice-sets/{set_id}/start").get_json()
    result_id = started["practice_result_id"]
    assert client.get(f"/api/practice-sets/{set_id}/resume").get_json()["result"]["id"] == result_id

    assert client.post(f"/api/practice-results/{result_id}/answer", json={"answer": "b"}).status_code == 400
    step = client.post(f"/api/practice-results/{result_id}/answer",
                       json={"questionId": questions[0]["id"], "answer": "b", "timeSpentMs": 800}).get_json()
    assert step["completed"] is True
    assert step["grade"]["is_correct"] is True

    submitted = client.post(f"/api/practice-results/{result_id}/submit", json={"timeSpentSeconds": 20}).get_json()
    assert submitted["passed"] is True
    assert submitted["coins_earned"] == 5
    assert client.post(f"/api/practice-results/{result_id}/submit", json={}).status_code == 400
    assert client.post("/api/practice-results/999/submit", json={}).status_code == 404


# ── Knowledge base ─────────────────────────────────────────────────

def test_rag_routes(client: Any) -> None:
    created = client.post("/api/rag/grammar", json={
        "content": "Dùng 'đã' để nói về quá khứ", "category_en": "Tense markers",
    })
    assert created.status_code == 201
    assert client.post("/api/rag/grammar", json={}).status_code == 400
    assert client.post("/api/rag/folklore", json={"type": "idiom"}).status_code == 400
    assert client.post("/api/rag/folklore", json={
        "type": "idiom", "vi_content": ["Nước chảy đá mòn"], "definition_en": "Dripping water wears stone",
    }).status_code == 201

    found = client.post("/api/rag/search", json={"query": "Dùng 'đã' để nói về quá khứ", "search_type": "grammar"})
    assert found.status_code == 200
    assert found.get_json()["grammar"]["sources"][0]["category_en"] == "Tense markers"
    assert client.post("/api/rag/search", json={"query": ""}).status_code == 400
    assert client.post("/api/rag/search", json={"query": "x", "max_results": "many"}).status_code == 400


# ── Tutor chat ─────────────────────────────────────────────────────

def test_conversation_routes(client: Any) -> None:
    created = client.post("/api/conversations", json={"topic": "Weather", "difficulty_level": "beginner"})
    assert created.status_code == 201
    conv_id = created.get_json()["conversation"]["id"]
    assert client.post("/api/conversations", json={"conversation_type": "video"}).status_code == 400

    assert [c["id"] for c in client.get("/api/conversations").get_json()["conversations"]] == [conv_id]
    patched = client.patch(f"/api/conversations/{conv_id}", json={"title": "Rainy days"}).get_json()
    assert patched["conversation"]["title"] == "Rainy days"
    assert client.patch(f"/api/conversations/{conv_id}", json={"user": "x"}).status_code == 400
    assert client.patch(f"/api/conversations/{conv_id}", json={"completed_at": "soon"}).status_code == 400
    assert client.get("/api/conversations/999").status_code == 404
    assert client.get("/api/conversations/999/messages").status_code == 404
    assert client.delete(f"/api/conversations/{conv_id}").status_code == 200
    assert client.delete(f"/api/conversations/{conv_id}").status_code == 404


def test_chat_requires_model(client: Any) -> None:
    conv_id = client.post("/api/conversations", json={}).get_json()["conversation"]["id"]
    resp = client.post(f"/api/conversations/{conv_id}/messages", json={"message": "xin chào"})
    assert resp.status_code == 400
    assert "AI model" in resp.get_json()["message"]
    assert client.post(f"/api/conversations/{conv_id}/feedback").status_code == 400


def test_chat_with_model(client: Any, with_ai: MockAIModel) -> None:
    quota = client.get("/api/chat/quota").get_json()
    assert quota["remaining"] == 5

    conv_id = client.post("/api/conversations", json={}).get_json()["conversation"]["id"]
    sent = client.post(f"/api/conversations/{conv_id}/messages", json={"message": "xin chào"})
    assert sent.status_code == 200
    assert sent.get_json()["reply"]["content"] == "Chào bạn! Hôm nay bạn thế nào?"
    assert sent.get_json()["remaining_messages"] == 4
    assert client.post(f"/api/conversations/{conv_id}/messages", json={"message": " "}).status_code == 400
    assert client.post("/api/conversations/999/messages", json={"message": "hi"}).status_code == 404

    messages = client.get(f"/api/conversations/{conv_id}/messages").get_json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]

    assert client.get(f"/api/conversations/{conv_id}/feedback").status_code == 404
    feedback = client.post(f"/api/conversations/{conv_id}/feedback").get_json()["feedback"]
    assert feedback["total_score"] == 72.0
    assert feedback["ai_model"] == "mock-model"
    assert client.get(f"/api/conversations/{conv_id}/feedback").get_json()["feedback"]["final_assessment"] == "Tốt."
