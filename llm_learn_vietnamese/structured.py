import json
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Pull the outermost JSON object out of a model reply.

    Code fences and any prose around the object are ignored. Returns None when
    no object is present; malformed JSON raises ``json.JSONDecodeError``.
    """
    raw = (raw or "").strip()
    if raw.startswith("```"):
        lines = raw.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        raw = "\n".join(lines)
    match = _JSON_OBJECT_RE.search(raw)
    if not match:
        return None
    data = json.loads(match.group(0))
    return data if isinstance(data, dict) else None


@dataclass
class QueryIntent:
    search_type: str  # grammar | folklore | both
    confidence: float
    keywords: List[str]
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class KeywordExtraction:
    keywords: List[str]
    contextualized_query: str
    explanation: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QueryEmbedding:
    primary_embedding: Any
    variation_embeddings: List[Any]
    keywords: List[str]
    contextualized_query: str = ""


@dataclass
class CategoryScore:
    name: str
    score: float
    comment: str


@dataclass
class VocabularySuggestion:
    word: str
    meaning: str
    example: str


@dataclass
class ConversationFeedbackData:
    total_score: float
    category_scores: List[CategoryScore]
    strengths: List[str]
    areas_for_improvement: List[str]
    final_assessment: str
    vocabulary_suggestions: List[VocabularySuggestion] = field(default_factory=list)
    grammar_notes: List[str] = field(default_factory=list)
    pronunciation_tips: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


FEEDBACK_CATEGORIES = [
    "Phát âm (Pronunciation)",
    "Ngữ pháp (Grammar)",
    "Từ vựng (Vocabulary)",
    "Giao tiếp (Communication)",
    "Độ trôi chảy (Fluency)",
]


KEYWORD_EXTRACTION_SYSTEM = "You extract search keywords for a Vietnamese grammar knowledge base."

KEYWORD_EXTRACTION_PROMPT = """
Bạn là chuyên gia ngữ pháp tiếng Việt. Phân tích câu hỏi và trích xuất từ khóa để tìm kiếm.

Câu hỏi: "{query}"

Nhiệm vụ:
1. Trích xuất 5-10 từ khóa quan trọng (tiếng Việt và tiếng Anh nếu có)
2. Viết 2-4 câu mô tả ngữ cảnh của các từ khóa này
3. Giải thích ngắn gọn vì sao chọn các từ khóa này

OUTPUT FORMAT (JSON only):
{{
  "keywords": ["...", "..."],
  "contextualizedQuery": "...",
  "explanation": "..."
}}

Ví dụ:
Câu hỏi: "What is chủ ngữ in Vietnamese?"
{{
  "keywords": ["chủ ngữ", "subject", "thành phần câu", "sentence structure", "cú pháp", "syntax"],
  "contextualizedQuery": "Chủ ngữ (subject) là thành phần chính của câu tiếng Việt, chỉ người hoặc vật thực hiện hành động. Quan hệ với vị ngữ trong cấu trúc câu.",
  "explanation": "Thuật ngữ tiếng Việt, tương đương tiếng Anh và các khái niệm cú pháp liên quan."
}}
"""

QUERY_VARIATIONS_SYSTEM = "You rephrase search keywords into alternative search sentences."

QUERY_VARIATIONS_PROMPT = """
Từ danh sách từ khóa sau, viết 2-3 cách diễn đạt khác nhau để tìm kiếm trong tài liệu ngữ pháp.

Từ khóa: {keywords}

Yêu cầu:
- Mỗi cách diễn đạt là một câu hoàn chỉnh (15-30 từ)
- Kết hợp thuật ngữ tiếng Việt và tiếng Anh
- Mỗi câu một dòng, không đánh số
"""

TUTOR_SYSTEM = """
You are a friendly Vietnamese tutor. Answer in English unless the learner writes in Vietnamese,
include Vietnamese examples with English translations, and correct mistakes gently.
When retrieved knowledge is provided, ground your answer in it and cite sources as [1], [2].
"""

FEEDBACK_SYSTEM = (
    "Bạn là giáo viên tiếng Việt nhiều kinh nghiệm, "
    "chuyên đánh giá kỹ năng ngôn ngữ của người học nước ngoài."
)

FEEDBACK_PROMPT = """
Đánh giá kỹ năng tiếng Việt của học sinh dựa trên cuộc hội thoại sau.

Cuộc hội thoại:
{transcript}

1. Chấm điểm 0-100 cho từng kỹ năng (giữ đúng tên): {categories}
2. 3-5 điểm mạnh
3. 3-5 điểm cần cải thiện
4. Đánh giá tổng thể (2-3 câu)
5. 5-8 từ vựng hữu ích (nghĩa tiếng Anh và câu ví dụ)
6. 2-4 lưu ý ngữ pháp
7. 2-4 gợi ý phát âm

Dùng tiếng Việt cho mọi nhận xét.

OUTPUT FORMAT (JSON only, no explanations):
{{
  "totalScore": 0,
  "categoryScores": [{{"name": "...", "score": 0, "comment": "..."}}],
  "strengths": ["..."],
  "areasForImprovement": ["..."],
  "finalAssessment": "...",
  "vocabularySuggestions": [{{"word": "...", "meaning": "...", "example": "..."}}],
  "grammarNotes": ["..."],
  "pronunciationTips": ["..."]
}}
"""
