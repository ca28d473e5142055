"""
Retrieval over the grammar and folklore knowledge bases.

A query is routed (grammar, folklore or both), rewritten into keywords and a
contextualised sentence by the LLM, embedded, and searched several ways:
cosine similarity over stored vectors, keyword matching over text columns,
and character-trigram TF-IDF similarity. The ranked lists are merged with
reciprocal rank fusion and re-ranked on keyword overlap.
"""

import os
import re
import time
from typing import Any, Dict, List, Optional

from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity
from sqlalchemy import or_

from . import db
from .db import FolkloreChunk, GrammarChunk, get_session
from .structured import (
    KEYWORD_EXTRACTION_PROMPT, KEYWORD_EXTRACTION_SYSTEM,
    QUERY_VARIATIONS_PROMPT, QUERY_VARIATIONS_SYSTEM,
    KeywordExtraction, QueryEmbedding, QueryIntent, extract_json_object,
)

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"

SEARCH_TYPES = ("grammar", "folklore", "both")
ROUTING_CONFIDENCE_THRESHOLD = 0.65
RRF_K = 60
MAX_RESULTS_LIMIT = 10
TRIGRAM_SIMILARITY_THRESHOLD = 0.25

# ── Query analysis ──────────────────────────────────────────────────────

GRAMMAR_KEYWORDS = [
    "grammar", "syntax", "sentence", "structure", "tense", "verb", "noun",
    "adjective", "adverb", "pronoun", "particle", "classifier", "conjunction",
    "preposition", "clause", "phrase", "subject", "object", "predicate",
    "modifier", "complement", "aspect", "mood", "voice",
    "chu ngu", "chủ ngữ", "tuc tu", "tục từ", "trang ngu", "trạng ngữ",
    "bo ngu", "bổ ngữ", "dinh ngu", "định ngữ", "dai tu", "đại từ",
    "dong tu", "động từ", "tinh tu", "tính từ", "danh tu", "danh từ",
    "pho tu", "phó từ", "lien tu", "liên từ", "gioi tu", "giới từ",
    "how to use", "how do you", "when to use", "what is", "what are",
    "explain", "difference between", "usage of", "rule", "rules for",
]

GRAMMAR_PATTERNS = [
    re.compile(r"\b(how|when|what|why)\s+(to\s+)?(use|say|form|make|construct)\b", re.IGNORECASE),
    re.compile(r"\b(grammar|grammatical|syntax|syntactic)\b", re.IGNORECASE),
    re.compile(r"\b(sentence\s+structure|word\s+order)\b", re.IGNORECASE),
    re.compile(r"\b(tense|aspect|mood|voice)\b", re.IGNORECASE),
    re.compile(r"\bexplain\s+['\"`“”]?\w+['\"`“”]?\s+(in\s+vietnamese)?\b", re.IGNORECASE),
]

FOLKLORE_KEYWORDS = [
    "proverb", "proverbs", "saying", "sayings", "idiom", "idioms",
    "folk song", "folk songs", "folksong", "folksongs",
    "expression", "expressions", "phrase", "phrases",
    "wisdom", "traditional", "cultural", "culture",
    "vietnamese culture", "vietnamese saying", "vietnamese proverb",
    "tuc ngu", "tục ngữ", "ca dao", "thanh ngu", "thành ngữ",
    "dieu ca", "điệu ca", "tho ca", "thơ ca", "dan gian", "dân gian",
    "perseverance", "hard work", "family", "filial piety", "friendship",
    "love", "nature", "patience", "virtue", "education",
    "respect", "gratitude", "loyalty", "honesty", "kindness",
]

FOLKLORE_PATTERNS = [
    re.compile(r"\b(proverb|saying|idiom)\s+(about|on|related to)\b", re.IGNORECASE),
    re.compile(r"\b(traditional|cultural|folk)\s+(saying|proverb|song|wisdom|expression)\b", re.IGNORECASE),
    re.compile(r"\b(tell me|show me|find|search for|give me)\s+(a|some)?\s*(vietnamese)?\s*(proverb|saying|idiom)",
               re.IGNORECASE),
    re.compile(r"\b(vietnamese\s+)?(culture|cultural|tradition|traditional)\b", re.IGNORECASE),
    re.compile(r"\b(folk\s*song|ca\s*dao|tục\s*ngữ|thành\s*ngữ)\b", re.IGNORECASE),
]

_ANALYZER_STOPWORDS = {
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "about", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "what", "when", "where", "how", "why",
}

_EXTRACTION_STOPWORDS = {
    "what", "is", "are", "the", "a", "an", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "how", "why", "when", "where",
    "explain", "vietnamese", "grammar", "trong", "là", "gì", "như", "với",
}

_NON_WORD_RE = re.compile(r"[^\w\s]")
_NUMBERING_RE = re.compile(r"^\d+[\.\)]\s*")


def _unique(items: List[str]) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def analyze_query(query: str) -> QueryIntent:
    """Decide which knowledge base(s) a query should search.

    Keyword hits score 1, pattern hits score 2. A side that holds at least
    65% of the total score wins; otherwise both are searched.
    """
    query_lower = query.lower().strip()
    grammar_score = 0
    folklore_score = 0
    found: List[str] = []

    for keyword in GRAMMAR_KEYWORDS:
        if keyword in query_lower:
            grammar_score += 1
            found.append(keyword)
    grammar_score += 2 * len([p for p in GRAMMAR_PATTERNS if p.search(query)])

    for keyword in FOLKLORE_KEYWORDS:
        if keyword in query_lower:
            folklore_score += 1
            found.append(keyword)
    folklore_score += 2 * len([p for p in FOLKLORE_PATTERNS if p.search(query)])

    total = grammar_score + folklore_score
    if total == 0:
        return QueryIntent("both", 0.3, [], "No clear indicators - searching both databases")

    grammar_confidence = grammar_score / total
    folklore_confidence = folklore_score / total

    if grammar_confidence >= ROUTING_CONFIDENCE_THRESHOLD:
        return QueryIntent("grammar", grammar_confidence,
                           [k for k in found if k in GRAMMAR_KEYWORDS],
                           f"Strong grammar indicators ({grammar_score} matches)")
    if folklore_confidence >= ROUTING_CONFIDENCE_THRESHOLD:
        return QueryIntent("folklore", folklore_confidence,
                           [k for k in found if k in FOLKLORE_KEYWORDS],
                           f"Strong folklore indicators ({folklore_score} matches)")
    return QueryIntent("both", max(grammar_confidence, folklore_confidence), found,
                       f"Mixed indicators (grammar: {grammar_score}, folklore: {folklore_score})")


def extract_simple_keywords(query: str) -> List[str]:
    words = _NON_WORD_RE.sub(" ", query.lower()).split()
    return _unique([w for w in words if len(w) > 2 and w not in _ANALYZER_STOPWORDS])


def suggest_refinements(query: str, intent: QueryIntent) -> List[str]:
    suggestions = []
    if intent.confidence < 0.5:
        suggestions.append(
            'Try being more specific: "Explain Vietnamese grammar rule for..." or "Find a proverb about..."'
        )
    if intent.search_type == "grammar" and "vietnamese" not in query.lower():
        suggestions.append('Add "Vietnamese" to specify the language context')
    if intent.search_type == "folklore" and intent.confidence < 0.7:
        suggestions.append('Use keywords like "proverb", "saying", "folk song", or "idiom" for better results')
    return suggestions


def optimize_query_for_search(query: str, intent: QueryIntent) -> str:
    optimized = re.sub(r"\bvn\b", "Vietnamese", query.strip(), flags=re.IGNORECASE)
    optimized = re.sub(r"\bvi\b", "Vietnamese", optimized, flags=re.IGNORECASE)
    if intent.confidence < 0.5 and intent.search_type in ("grammar", "both"):
        optimized = f"Vietnamese grammar {optimized}"
    return optimized


# ── Keyword extraction and query embedding ─────────────────────────────

def fallback_keyword_extraction(query: str) -> KeywordExtraction:
    words = _NON_WORD_RE.sub(" ", query.lower()).split()
    keywords = _unique([w for w in words if len(w) > 3 and w not in _EXTRACTION_STOPWORDS])[:8]
    print(f"⚠️ Keyword extraction fallback for '{query[:80]}': {keywords}")
    return KeywordExtraction(keywords, query, "Fallback to simple keyword extraction due to LLM error")


def extract_keywords_for_rag(query: str, model: Any = None) -> KeywordExtraction:
    """Ask the model for search keywords and a contextualised query.

    Any failure (no model, no JSON, missing fields) falls back to plain
    keyword extraction with the original query as context.
    """
    if model is None:
        return fallback_keyword_extraction(query)
    try:
        response = model.prompt(KEYWORD_EXTRACTION_PROMPT.format(query=query), system=KEYWORD_EXTRACTION_SYSTEM)
        data = extract_json_object(response.text())
        if data is None:
            print("⚠️ No JSON in keyword extraction reply")
            return fallback_keyword_extraction(query)

        keywords = data.get("keywords")
        if not isinstance(keywords, list) or not keywords:
            print("⚠️ Keyword extraction returned no keywords")
            return fallback_keyword_extraction(query)
        contextualized = data.get("contextualizedQuery")
        if not isinstance(contextualized, str) or not contextualized:
            print("⚠️ Keyword extraction returned no contextualized query")
            return fallback_keyword_extraction(query)

        if DEBUG_MODE:
            print(f"🔎 Extracted {len(keywords)} keywords: {keywords}")
        return KeywordExtraction(
            [str(k) for k in keywords],
            contextualized,
            data.get("explanation") or "No explanation provided",
        )
    except Exception as e:
        print(f"❌ Keyword extraction failed: {e}")
        return fallback_keyword_extraction(query)


def generate_query_variations(keywords: List[str], model: Any = None) -> List[str]:
    """Two or three alternative phrasings of the keywords, one per line."""
    if not keywords or model is None:
        return []
    try:
        response = model.prompt(QUERY_VARIATIONS_PROMPT.format(keywords=", ".join(keywords)),
                                system=QUERY_VARIATIONS_SYSTEM)
        lines = [_NUMBERING_RE.sub("", line).strip() for line in response.text().split("\n")]
        return [line for line in lines if 20 < len(line) < 200][:3]
    except Exception as e:
        print(f"❌ Query variation generation failed: {e}")
        return []


def generate_query_embedding(query: str, model: Any = None, use_keyword_extraction: bool = True) -> QueryEmbedding:
    if not use_keyword_extraction:
        return QueryEmbedding(db._get_embedding(query), [], [], query)

    extraction = extract_keywords_for_rag(query, model)
    primary = db._get_embedding(extraction.contextualized_query)
    variations = generate_query_variations(extraction.keywords, model)
    variation_embeddings = [db._get_embedding(v) for v in variations]
    if DEBUG_MODE:
        print(f"🔎 Query embedding: {len(extraction.keywords)} keywords, {len(variation_embeddings)} variations")
    return QueryEmbedding(primary, variation_embeddings, extraction.keywords, extraction.contextualized_query)


# ── Fusion and re-ranking ───────────────────────────────────────────────

def reciprocal_rank_fusion(ranked_lists: List[Dict[str, Any]], k: int = RRF_K) -> List[Dict[str, Any]]:
    """Merge ranked lists of ``{results, weight, method}``.

    Each item scores ``weight / (k + rank + 1)`` per list it appears in.
    Returns copies of the items with ``relevance_score`` and
    ``search_methods`` set, best first.
    """
    merged: Dict[Any, Dict[str, Any]] = {}
    for ranked in ranked_lists:
        for rank, item in enumerate(ranked["results"]):
            score = ranked["weight"] / (k + rank + 1)
            entry = merged.get(item["id"])
            if entry is None:
                merged[item["id"]] = {"item": item, "score": score, "methods": [ranked["method"]]}
            else:
                entry["score"] += score
                entry["methods"].append(ranked["method"])

    fused = [
        dict(entry["item"], relevance_score=entry["score"], search_methods=entry["methods"])
        for entry in merged.values()
    ]
    fused.sort(key=lambda r: r["relevance_score"], reverse=True)
    return fused


def contextual_rerank(results: List[Dict[str, Any]], keywords: List[str]) -> List[Dict[str, Any]]:
    """Boost fused results on keyword overlap and on how many methods found them."""
    reranked = []
    lowered = [k.lower() for k in keywords]
    for result in results:
        boost = 0.0
        content = (result.get("content") or "").lower()
        context = (result.get("contextualized_chunk") or "").lower()
        for keyword in lowered:
            if keyword in content:
                boost += 0.15
            if keyword in context:
                boost += 0.2

        meta = result.get("metadata") or {}
        meta_keywords = meta.get("keywords") or {}
        all_meta = [m.lower() for m in (meta_keywords.get("vi") or []) + (meta_keywords.get("en") or [])]
        for keyword in lowered:
            if any(keyword in m or m in keyword for m in all_meta):
                boost += 0.25

        method_count = len(result.get("search_methods") or []) or 1
        if method_count >= 3:
            boost += 0.15
        elif method_count >= 2:
            boost += 0.08

        grammar_point = (meta.get("grammar_point") or "").lower()
        if grammar_point:
            boost += 0.3 * len([k for k in lowered if k in grammar_point])

        reranked.append(dict(result, relevance_score=result.get("relevance_score", 0.0) + boost))
    reranked.sort(key=lambda r: r["relevance_score"], reverse=True)
    return reranked


# ── Search primitives ───────────────────────────────────────────────────

def _vector_search(rows: List[Dict[str, Any]], field: str, query_vec: Any, threshold: float,
                   count: int) -> List[Dict[str, Any]]:
    scored = []
    for row in rows:
        vec = row["_vectors"].get(field)
        if vec is None:
            continue
        similarity = db._cosine_similarity(query_vec, vec)
        if similarity > threshold:
            scored.append((similarity, row))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [dict(row, similarity=sim) for sim, row in scored[:count]]


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _keyword_filter(column: Any, terms: List[str]) -> Any:
    return or_(*[column.ilike(f"%{_escape_like(term)}%", escape="\\") for term in terms])


def _rank_by_term_hits(rows: List[Dict[str, Any]], text_of: Any, terms: List[str], count: int) -> List[Dict[str, Any]]:
    lowered = [t.lower() for t in terms]
    ranked = sorted(
        rows,
        key=lambda r: (-len([t for t in lowered if t in (text_of(r) or "").lower()]), r["id"]),
    )
    return ranked[:count]


def trigram_search(rows: List[Dict[str, Any]], text_of: Any, search_term: str,
                   threshold: float = TRIGRAM_SIMILARITY_THRESHOLD, count: int = 10) -> List[Dict[str, Any]]:
    """Character-trigram TF-IDF similarity between ``search_term`` and each row's text."""
    documents = [text_of(r) or "" for r in rows]
    if not rows or not search_term.strip() or not any(d.strip() for d in documents):
        return []
    vectorizer = TfidfVectorizer(analyzer="char_wb", ngram_range=(3, 3), lowercase=True)
    tfidf_matrix = vectorizer.fit_transform(documents + [search_term])
    similarities = cosine_similarity(tfidf_matrix[-1], tfidf_matrix[:-1]).flatten()
    scored = [(float(similarities[i]), rows[i]) for i in range(len(rows)) if similarities[i] >= threshold]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [dict(row, similarity=sim) for sim, row in scored[:count]]


def _public(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in row.items() if not k.startswith("_")}


def _grammar_to_dict(chunk: GrammarChunk) -> Dict[str, Any]:
    return {
        "id": chunk.id,
        "content": chunk.content,
        "contextualized_chunk": chunk.contextualized_chunk,
        "category_vi": chunk.category_vi,
        "category_en": chunk.category_en,
        "metadata": dict(chunk.meta or {}),
        "_vectors": {
            "content": db._deserialize_embedding(chunk.content_embedding),
            "context": db._deserialize_embedding(chunk.context_embedding),
            "keywords": db._deserialize_embedding(chunk.keywords_embedding),
        },
    }


def _folklore_to_dict(chunk: FolkloreChunk) -> Dict[str, Any]:
    return {
        "id": chunk.id,
        "type": chunk.type,
        "vi_content": list(chunk.vi_content or []),
        "en_content": list(chunk.en_content or []),
        "category_vi": chunk.category_vi,
        "category_en": chunk.category_en,
        "sub_category_vi": chunk.sub_category_vi,
        "sub_category_en": chunk.sub_category_en,
        "definition_vi": chunk.definition_vi,
        "definition_en": chunk.definition_en,
        "detailed_explanations": chunk.detailed_explanations,
        "_vectors": {"embedding": db._deserialize_embedding(chunk.embedding)},
    }


def _grammar_keyword_text(row: Dict[str, Any]) -> str:
    meta = row.get("metadata") or {}
    keywords = meta.get("keywords") or {}
    parts = [row.get("category_vi"), row.get("category_en"), meta.get("grammar_point")]
    parts += (keywords.get("vi") or []) + (keywords.get("en") or [])
    return " ".join(p for p in parts if p)


def _folklore_content_text(row: Dict[str, Any]) -> str:
    return " ".join(row.get("vi_content", []) + row.get("en_content", []))


# ── Hybrid searches ─────────────────────────────────────────────────────

def search_grammar_chunks(query: str, limit: int = 5, model: Any = None,
                          query_embedding: Optional[QueryEmbedding] = None) -> Dict[str, Any]:
    start = time.time()
    embedded = query_embedding or generate_query_embedding(query, model)
    keywords = embedded.keywords
    terms = keywords or [query]

    session = get_session()
    try:
        rows = [_grammar_to_dict(c) for c in session.query(GrammarChunk).all()]
        fts_ids = [
            c.id for c in session.query(GrammarChunk)
            .filter(_keyword_filter(GrammarChunk.contextualized_chunk, terms)).all()
        ]
    finally:
        session.close()

    primary = embedded.primary_embedding
    ranked_lists = [
        {"results": _vector_search(rows, "content", primary, 0.65, limit * 2),
         "weight": 1.2, "method": "semantic-content"},
        {"results": _vector_search(rows, "context", primary, 0.65, limit * 2),
         "weight": 1.3, "method": "semantic-context"},
        {"results": _vector_search(rows, "keywords", primary, 0.55, limit * 2),
         "weight": 1.0, "method": "semantic-keywords"},
        {"results": _rank_by_term_hits([r for r in rows if r["id"] in fts_ids],
                                       lambda r: r["contextualized_chunk"], terms, limit * 2),
         "weight": 0.9, "method": "fulltext"},
        {"results": trigram_search(rows, _grammar_keyword_text,
                                   " ".join(keywords[:3]) if keywords else query, count=limit * 2),
         "weight": 0.8, "method": "keyword-trigram"},
    ]
    for idx, vec in enumerate(embedded.variation_embeddings):
        found = _vector_search(rows, "content", vec, 0.6, limit)
        if found:
            ranked_lists.append({"results": found, "weight": 0.7 - idx * 0.1, "method": f"variation-{idx + 1}"})

    fused = reciprocal_rank_fusion(ranked_lists)
    reranked = contextual_rerank(fused, keywords)
    if DEBUG_MODE:
        print(f"🔎 Grammar search: {len(fused)} candidates from {len(ranked_lists)} methods")
    return {
        "results": [_public(r) for r in reranked[:limit]],
        "response_time_ms": int((time.time() - start) * 1000),
        "total_candidates": len(fused),
        "extracted_keywords": keywords,
    }


def search_folklore_chunks(query: str, limit: int = 5, model: Any = None,
                           query_embedding: Optional[QueryEmbedding] = None) -> Dict[str, Any]:
    start = time.time()
    embedded = query_embedding or generate_query_embedding(query, model)
    keywords = embedded.keywords
    terms = keywords or [query]

    session = get_session()
    try:
        rows = [_folklore_to_dict(c) for c in session.query(FolkloreChunk).all()]
        vi_ids = [c.id for c in session.query(FolkloreChunk)
                  .filter(_keyword_filter(FolkloreChunk.definition_vi, terms)).all()]
        en_ids = [c.id for c in session.query(FolkloreChunk)
                  .filter(_keyword_filter(FolkloreChunk.definition_en, terms)).all()]
    finally:
        session.close()

    top_terms = keywords[:3] if keywords else [query]
    content_hits = [
        r for r in rows
        if any(t.lower() in _folklore_content_text(r).lower() for t in top_terms)
    ]

    fused = reciprocal_rank_fusion([
        {"results": _vector_search(rows, "embedding", embedded.primary_embedding, 0.65, limit * 2),
         "weight": 1.0, "method": "semantic"},
        {"results": _rank_by_term_hits([r for r in rows if r["id"] in vi_ids],
                                       lambda r: r["definition_vi"], terms, limit * 2),
         "weight": 0.9, "method": "fulltext-vi"},
        {"results": _rank_by_term_hits([r for r in rows if r["id"] in en_ids],
                                       lambda r: r["definition_en"], terms, limit * 2),
         "weight": 0.8, "method": "fulltext-en"},
        {"results": _rank_by_term_hits(content_hits, _folklore_content_text, top_terms, limit * 2),
         "weight": 0.7, "method": "content-array"},
    ])
    reranked = contextual_rerank(fused, keywords)
    return {
        "results": [_public(r) for r in reranked[:limit]],
        "response_time_ms": int((time.time() - start) * 1000),
        "total_candidates": len(fused),
        "extracted_keywords": keywords,
    }


# ── Context assembly ────────────────────────────────────────────────────

def build_context_for_llm(grammar_results: Optional[List[Dict[str, Any]]],
                          folklore_results: Optional[List[Dict[str, Any]]]) -> str:
    """Numbered source list for the tutor prompt. Folklore numbering continues after grammar."""
    context = "Retrieved knowledge:\n\n"
    grammar_results = grammar_results or []
    folklore_results = folklore_results or []

    if grammar_results:
        context += "=== Grammar Sources ===\n"
        for i, r in enumerate(grammar_results):
            context += f"[{i + 1}] {r.get('category_en')}: {r.get('contextualized_chunk')}\n"
            examples = (r.get("metadata") or {}).get("examples") or []
            if examples:
                context += f"Examples: {'; '.join(examples)}\n"
            context += "\n"

    if folklore_results:
        offset = len(grammar_results)
        context += "=== Folklore & Cultural Sources ===\n"
        for i, r in enumerate(folklore_results):
            vi = r.get("vi_content") or [""]
            en = r.get("en_content") or [""]
            context += f"[{offset + i + 1}] {r.get('type')}: {vi[0]}\n"
            context += f"English: {en[0]}\n"
            context += f"Meaning: {r.get('definition_en')}\n\n"

    return context


def extract_related_topics(results: List[Dict[str, Any]]) -> List[str]:
    topics: List[str] = []
    for r in results:
        topics.extend(((r.get("metadata") or {}).get("tags") or {}).get("en") or [])
    return _unique(topics)[:5]


def extract_cultural_context(results: List[Dict[str, Any]]) -> str:
    categories = _unique([r["category_en"] for r in results if r.get("category_en")])
    return f"These items belong to the following cultural themes: {', '.join(categories)}"


def extract_usage_examples(results: List[Dict[str, Any]]) -> List[str]:
    examples: List[str] = []
    for r in results:
        examples.extend((r.get("vi_content") or [])[:2])
    return examples[:5]


def search_knowledge_base(query: str, search_type: str = "both", max_results: int = 5,
                          model: Any = None) -> Dict[str, Any]:
    """Route, search and assemble tutor context for a learner question."""
    if not query or not query.strip():
        raise ValueError("query is required")
    if search_type not in SEARCH_TYPES:
        raise ValueError(f"search_type must be one of {', '.join(SEARCH_TYPES)}")
    if not 1 <= max_results <= MAX_RESULTS_LIMIT:
        raise ValueError(f"max_results must be between 1 and {MAX_RESULTS_LIMIT}")

    start = time.time()
    if search_type == "both":
        intent = analyze_query(query)
        print(f"🔎 Query routed to {intent.search_type} ({intent.confidence:.2f}): {intent.reasoning}")
    else:
        intent = QueryIntent(search_type, 1.0, [], "Manual selection")

    optimized = optimize_query_for_search(query, intent)
    embedded = generate_query_embedding(optimized, model)

    grammar = None
    folklore = None
    if intent.search_type in ("grammar", "both"):
        grammar = search_grammar_chunks(optimized, max_results, model, query_embedding=embedded)
    if intent.search_type in ("folklore", "both"):
        folklore = search_folklore_chunks(optimized, max_results, model, query_embedding=embedded)

    grammar_results = grammar["results"] if grammar else []
    folklore_results = folklore["results"] if folklore else []

    return {
        "message": f"Found {len(grammar_results) + len(folklore_results)} relevant sources",
        "intent": intent.to_dict(),
        "optimized_query": optimized,
        "refinements": suggest_refinements(query, intent),
        "context": build_context_for_llm(grammar_results, folklore_results),
        "grammar": {
            "sources": grammar_results,
            "related_topics": extract_related_topics(grammar_results),
            "response_time_ms": grammar["response_time_ms"],
        } if grammar_results else None,
        "folklore": {
            "items": folklore_results,
            "cultural_context": extract_cultural_context(folklore_results),
            "usage_examples": extract_usage_examples(folklore_results),
            "response_time_ms": folklore["response_time_ms"],
        } if folklore_results else None,
        "response_time_ms": int((time.time() - start) * 1000),
    }


# ── Ingestion ───────────────────────────────────────────────────────────

def add_grammar_chunk(content: str, contextualized_chunk: Optional[str] = None,
                      category_vi: Optional[str] = None, category_en: Optional[str] = None,
                      metadata: Optional[Dict[str, Any]] = None) -> int:
    """Store a grammar chunk with its three embeddings. Returns the new id."""
    if not content or not content.strip():
        raise ValueError("content is required")
    metadata = metadata or {}
    contextualized_chunk = contextualized_chunk or content
    keywords = metadata.get("keywords") or {}
    keyword_text = " ".join((keywords.get("vi") or []) + (keywords.get("en") or [])) or contextualized_chunk

    session = get_session()
    try:
        chunk = GrammarChunk(
            content=content,
            contextualized_chunk=contextualized_chunk,
            category_vi=category_vi,
            category_en=category_en,
            meta=metadata,
            content_embedding=db._serialize_embedding(db._get_embedding(content)),
            context_embedding=db._serialize_embedding(db._get_embedding(contextualized_chunk)),
            keywords_embedding=db._serialize_embedding(db._get_embedding(keyword_text)),
        )
        session.add(chunk)
        session.commit()
        chunk_id = chunk.id
    finally:
        session.close()
    print(f"✅ Added grammar chunk {chunk_id} ({category_en or 'uncategorised'})")
    return chunk_id


def add_folklore_chunk(type: str, vi_content: List[str], en_content: Optional[List[str]] = None,
                       category_vi: Optional[str] = None, category_en: Optional[str] = None,
                       sub_category_vi: Optional[str] = None, sub_category_en: Optional[str] = None,
                       definition_vi: Optional[str] = None, definition_en: Optional[str] = None,
                       detailed_explanations: Optional[str] = None) -> int:
    if not vi_content:
        raise ValueError("vi_content is required")
    text = " ".join(vi_content + (en_content or []) + [definition_en or "", definition_vi or ""]).strip()

    session = get_session()
    try:
        chunk = FolkloreChunk(
            type=type,
            vi_content=list(vi_content),
            en_content=list(en_content or []),
            category_vi=category_vi,
            category_en=category_en,
            sub_category_vi=sub_category_vi,
            sub_category_en=sub_category_en,
            definition_vi=definition_vi,
            definition_en=definition_en,
            detailed_explanations=detailed_explanations,
            embedding=db._serialize_embedding(db._get_embedding(text)),
        )
        session.add(chunk)
        session.commit()
        chunk_id = chunk.id
    finally:
        session.close()
    print(f"✅ Added {type} {chunk_id}")
    return chunk_id
