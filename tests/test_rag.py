"""
Tests for knowledge base retrieval: query routing, keyword extraction,
rank fusion, hybrid grammar and folklore search.
"""

import os
import json
import tempfile

os.environ["TEST_MODE"] = "1"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from typing import Any, Generator

from llm_learn_vietnamese import db, rag
from llm_learn_vietnamese.structured import QueryIntent

GRAMMAR_TEXT = "Cách dùng trạng ngữ chỉ thời gian trong câu tiếng Việt"
PROVERB = "Có công mài sắt, có ngày nên kim"


class MockResponse:
    def __init__(self, content: str):
        self.content = content

    def text(self) -> str:
        return self.content


class MockAIModel:
    """Mock AI model for consistent testing without actual API calls."""

    def __init__(self, keywords_reply: str = "", variations_reply: str = ""):
        self.keywords_reply = keywords_reply
        self.variations_reply = variations_reply
        self.calls = []

    def prompt(self, prompt_text: str, system: str = "") -> MockResponse:
        self.calls.append(system)
        if "extract search keywords" in system:
            return MockResponse(self.keywords_reply)
        if "rephrase search keywords" in system:
            return MockResponse(self.variations_reply)
        return MockResponse("Mock response")


class FailingModel:
    def prompt(self, prompt_text: str, system: str = "") -> MockResponse:
        raise RuntimeError("upstream unavailable")


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


def _seed_knowledge_base() -> None:
    rag.add_grammar_chunk(
        GRAMMAR_TEXT,
        category_vi="Trạng ngữ",
        category_en="Adverbials",
        metadata={
            "grammar_point": "trạng ngữ chỉ thời gian",
            "keywords": {"vi": ["trạng ngữ"], "en": ["adverbial of time"]},
            "examples": ["Hôm qua, tôi đi học."],
            "tags": {"en": ["adverbials", "time"]},
        },
    )
    rag.add_folklore_chunk(
        "proverb", [PROVERB], ["Grinding iron day after day makes a needle"],
        category_en="Perseverance", definition_en="Hard work pays off in the end",
    )


# ── Query analysis ─────────────────────────────────────────────────

def test_analyze_query_routes_folklore() -> None:
    intent = rag.analyze_query("Find a proverb about patience")
    assert intent.search_type == "folklore"
    assert intent.confidence >= 0.65
    assert "proverb" in intent.keywords


def test_analyze_query_routes_grammar() -> None:
    intent = rag.analyze_query("How to use the particle đã in a sentence")
    assert intent.search_type == "grammar"
    assert intent.confidence == 1.0


def test_analyze_query_without_indicators_searches_both() -> None:
    intent = rag.analyze_query("xin chao")
    assert intent.search_type == "both"
    assert intent.confidence == 0.3
    assert intent.keywords == []


def test_query_helpers() -> None:
    low = QueryIntent("both", 0.3, [], "")
    assert rag.optimize_query_for_search("vn greetings", low) == "Vietnamese grammar Vietnamese greetings"
    assert rag.optimize_query_for_search("Tiếng Việt", QueryIntent("grammar", 0.9, [], "")) == "Tiếng Việt"
    assert rag.suggest_refinements("tense rules", QueryIntent("grammar", 0.9, [], "")) == [
        'Add "Vietnamese" to specify the language context'
    ]
    assert rag.extract_simple_keywords("What is the Vietnamese word order?") == ["vietnamese", "word", "order"]


# ── Keyword extraction ─────────────────────────────────────────────

def test_fallback_keywords_keep_vietnamese_words() -> None:
    extraction = rag.fallback_keyword_extraction("Cách dùng trạng ngữ trong câu")
    assert extraction.keywords == ["cách", "dùng", "trạng"]
    assert extraction.contextualized_query == "Cách dùng trạng ngữ trong câu"


def test_extract_keywords_from_fenced_json() -> None:
    reply = "```json\n" + json.dumps({
        "keywords": ["chủ ngữ", "subject"],
        "contextualizedQuery": "Chủ ngữ là thành phần chính của câu.",
        "explanation": "Core term",
    }, ensure_ascii=False) + "\n```"
    extraction = rag.extract_keywords_for_rag("What is chủ ngữ?", MockAIModel(keywords_reply=reply))
    assert extraction.keywords == ["chủ ngữ", "subject"]
    assert extraction.contextualized_query == "Chủ ngữ là thành phần chính của câu."


@pytest.mark.parametrize("model", [
    MockAIModel(keywords_reply="I cannot help with that"),
    MockAIModel(keywords_reply='{"keywords": [], "contextualizedQuery": "x"}'),
    MockAIModel(keywords_reply='{"keywords": ["a"]}'),
    FailingModel(),
    None,
])
def test_extract_keywords_falls_back(model: Any) -> None:
    extraction = rag.extract_keywords_for_rag("explain classifier usage", model)
    assert extraction.keywords == ["classifier", "usage"]
    assert extraction.explanation.startswith("Fallback")


def test_query_variations_filter_lines() -> None:
    reply = "\n".join([
        "1. Trạng ngữ chỉ thời gian đứng đầu câu tiếng Việt",
        "short",
        "2) Time adverbials placement in Vietnamese sentences",
    ])
    variations = rag.generate_query_variations(["trạng ngữ"], MockAIModel(variations_reply=reply))
    assert variations == [
        "Trạng ngữ chỉ thời gian đứng đầu câu tiếng Việt",
        "Time adverbials placement in Vietnamese sentences",
    ]
    assert rag.generate_query_variations([], MockAIModel()) == []
    assert rag.generate_query_variations(["x"], FailingModel()) == []


# ── Fusion and re-ranking ──────────────────────────────────────────

def test_reciprocal_rank_fusion_rewards_agreement() -> None:
    fused = rag.reciprocal_rank_fusion([
        {"results": [{"id": 1}, {"id": 2}], "weight": 1.0, "method": "semantic"},
        {"results": [{"id": 2}], "weight": 1.0, "method": "fulltext"},
    ])
    assert [r["id"] for r in fused] == [2, 1]
    assert fused[0]["search_methods"] == ["semantic", "fulltext"]
    assert fused[0]["relevance_score"] == pytest.approx(1 / 62 + 1 / 61)
    assert fused[1]["relevance_score"] == pytest.approx(1 / 61)


def test_contextual_rerank_boosts_grammar_point() -> None:
    results = [
        {"id": 1, "content": "other", "relevance_score": 0.05, "metadata": {}},
        {"id": 2, "content": "other", "relevance_score": 0.01,
         "metadata": {"grammar_point": "câu hỏi với không"}},
    ]
    reranked = rag.contextual_rerank(results, ["không"])
    assert reranked[0]["id"] == 2
    assert reranked[0]["relevance_score"] == pytest.approx(0.01 + 0.3)


def test_trigram_search() -> None:
    rows = [{"id": 1, "text": "thành ngữ"}, {"id": 2, "text": "completely different"}]
    hits = rag.trigram_search(rows, lambda r: r["text"], "thành ngữ")
    assert [h["id"] for h in hits] == [1]
    assert hits[0]["similarity"] == pytest.approx(1.0)
    assert rag.trigram_search([], lambda r: r["text"], "x") == []


# ── Hybrid search ──────────────────────────────────────────────────

def test_search_grammar_only(temp_db: Any) -> None:
    _seed_knowledge_base()
    result = rag.search_knowledge_base(GRAMMAR_TEXT, "grammar", 3)
    assert result["folklore"] is None
    sources = result["grammar"]["sources"]
    assert sources[0]["content"] == GRAMMAR_TEXT
    assert "_vectors" not in sources[0]
    assert "semantic-content" in sources[0]["search_methods"]
    assert result["grammar"]["related_topics"] == ["adverbials", "time"]
    assert result["context"].startswith("Retrieved knowledge:")
    assert "[1] Adverbials:" in result["context"]
    assert "Examples: Hôm qua, tôi đi học." in result["context"]


def test_search_folklore_only(temp_db: Any) -> None:
    _seed_knowledge_base()
    result = rag.search_knowledge_base(PROVERB, "folklore", 3)
    assert result["grammar"] is None
    items = result["folklore"]["items"]
    assert items[0]["vi_content"] == [PROVERB]
    assert "content-array" in items[0]["search_methods"]
    assert result["folklore"]["usage_examples"] == [PROVERB]
    assert "Perseverance" in result["folklore"]["cultural_context"]


def test_context_numbering_continues_after_grammar() -> None:
    context = rag.build_context_for_llm(
        [{"category_en": "Adverbials", "contextualized_chunk": "time words", "metadata": {}}],
        [{"type": "proverb", "vi_content": [PROVERB], "en_content": ["Persevere"], "definition_en": "Keep going"}],
    )
    assert "[1] Adverbials: time words" in context
    assert f"[2] proverb: {PROVERB}" in context
    assert "Meaning: Keep going" in context


def test_search_with_model_uses_extracted_keywords(temp_db: Any) -> None:
    _seed_knowledge_base()
    reply = json.dumps({"keywords": ["trạng ngữ", "adverbial"], "contextualizedQuery": GRAMMAR_TEXT})
    model = MockAIModel(keywords_reply=reply, variations_reply="")
    result = rag.search_grammar_chunks("when do I put time words first", 3, model)
    assert result["extracted_keywords"] == ["trạng ngữ", "adverbial"]
    assert result["results"][0]["content"] == GRAMMAR_TEXT
    assert any("extract search keywords" in s for s in model.calls)


@pytest.mark.parametrize("kwargs", [
    {"query": "  "},
    {"query": "x", "search_type": "web"},
    {"query": "x", "max_results": 0},
    {"query": "x", "max_results": 11},
])
def test_search_knowledge_base_validation(kwargs: Any) -> None:
    with pytest.raises(ValueError):
        rag.search_knowledge_base(**kwargs)


def test_ingestion_validation(temp_db: Any) -> None:
    with pytest.raises(ValueError):
        rag.add_grammar_chunk("   ")
    with pytest.raises(ValueError):
        rag.add_folklore_chunk("idiom", [])


def test_keyword_filter_treats_wildcards_literally(temp_db: Any) -> None:
    plain = rag.add_grammar_chunk("Từ chỉ số lượng: một, hai, ba")
    literal = rag.add_grammar_chunk("Giảm giá 100% cho học_sinh")

    def matching(terms: Any) -> list:
        session = db.get_session()
        ids = [c.id for c in session.query(db.GrammarChunk)
               .filter(rag._keyword_filter(db.GrammarChunk.contextualized_chunk, terms)).all()]
        session.close()
        return ids

    assert matching(["%"]) == [literal]
    assert matching(["_"]) == [literal]
    assert matching(["100%"]) == [literal]
    assert matching(["hai"]) == [plain]
