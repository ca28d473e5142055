"""
Flashcard catalog, saved cards, user-made cards and the daily card set.
"""

import csv
import datetime
import random
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from . import db
from .db import (
    CustomFlashcard, DailyFlashcardSet, Flashcard, FlashcardReview, SavedFlashcard,
    get_session, DEBUG_MODE,
)
from .normalize import normalize_vietnamese, search_vietnamese

COMPLEXITIES = ("all", "simple", "complex")
DEFAULT_DAILY_COUNT = 20


def flashcard_to_dict(card: Flashcard) -> Dict[str, Any]:
    return {
        "id": card.id,
        "vietnamese": card.vietnamese,
        "english": list(card.english or []),
        "type": card.type,
        "is_multiword": bool(card.is_multiword),
        "is_multimeaning": bool(card.is_multimeaning),
        "vietnamese_sentence": card.vietnamese_sentence,
        "english_sentence": card.english_sentence,
        "topic": list(card.topic or []),
        "audio_url": card.audio_url,
        "image_url": card.image_url,
        "text_complexity": card.text_complexity,
        "common_class": card.common_class,
        "common_meaning": card.common_meaning,
        "pronunciation": card.pronunciation,
    }


def _check_complexity(complexity: Optional[str]) -> str:
    value = (complexity or "all").lower()
    if value not in COMPLEXITIES:
        raise ValueError(f"complexity must be one of {', '.join(COMPLEXITIES)}")
    return value


def query_flashcards(
    session: Session,
    topic: Optional[str] = None,
    complexity: Optional[str] = None,
    common_words_only: bool = False,
) -> List[Flashcard]:
    """Catalog cards matching the filters, ordered by id.

    Topics are stored as a JSON list per card, so topic matching happens here
    rather than in SQL.
    """
    complexity = _check_complexity(complexity)
    query = session.query(Flashcard)
    if complexity != "all":
        query = query.filter(Flashcard.text_complexity == complexity)
    if common_words_only:
        query = query.filter(Flashcard.common_class.isnot(None), Flashcard.common_class != "")
    cards = query.order_by(Flashcard.id).all()
    if topic:
        wanted = topic.strip().lower()
        cards = [c for c in cards if any((t or "").lower() == wanted for t in (c.topic or []))]
    return cards


# ── Catalog ─────────────────────────────────────────────────────────────

def get_all_flashcards(skip: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
    session = get_session()
    cards = session.query(Flashcard).order_by(Flashcard.id).offset(max(0, skip)).limit(max(0, limit)).all()
    session.close()
    return [flashcard_to_dict(c) for c in cards]


def get_flashcard(flashcard_id: str) -> Optional[Dict[str, Any]]:
    session = get_session()
    card = session.get(Flashcard, flashcard_id)
    session.close()
    return flashcard_to_dict(card) if card else None


def get_flashcards_by_ids(flashcard_ids: List[str]) -> List[Dict[str, Any]]:
    """Fetch cards by id, keeping the order of ``flashcard_ids`` and skipping unknown ids."""
    if not flashcard_ids:
        return []
    session = get_session()
    rows = session.query(Flashcard).filter(Flashcard.id.in_(flashcard_ids)).all()
    session.close()
    by_id = {c.id: c for c in rows}
    return [flashcard_to_dict(by_id[fid]) for fid in flashcard_ids if fid in by_id]


def get_random_flashcards(count: int = 10, common_words_only: bool = False) -> List[Dict[str, Any]]:
    session = get_session()
    cards = query_flashcards(session, common_words_only=common_words_only)
    session.close()
    picked = random.sample(cards, min(max(0, count), len(cards)))
    return [flashcard_to_dict(c) for c in picked]


def search_flashcards(q: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Search Vietnamese and English text; tone marks are optional in the query."""
    term = (q or "").strip()
    if not term:
        return []
    session = get_session()
    cards = session.query(Flashcard).order_by(Flashcard.id).all()
    session.close()

    exact: List[Flashcard] = []
    partial: List[Flashcard] = []
    folded_term = normalize_vietnamese(term).lower()
    for card in cards:
        english = " | ".join(card.english or [])
        if normalize_vietnamese(card.vietnamese).lower() == folded_term:
            exact.append(card)
        elif search_vietnamese(card.vietnamese, term) or term.lower() in english.lower():
            partial.append(card)
    return [flashcard_to_dict(c) for c in (exact + partial)[:limit]]


def get_topics(complexity: Optional[str] = None) -> List[Dict[str, Any]]:
    """Distinct topics with card counts, sorted by name."""
    session = get_session()
    cards = query_flashcards(session, complexity=complexity)
    session.close()
    counts: Dict[str, int] = {}
    for card in cards:
        for topic in card.topic or []:
            if topic:
                counts[topic] = counts.get(topic, 0) + 1
    return [{"name": name, "count": counts[name]} for name in sorted(counts)]


def get_flashcards_by_topic(topic: str, skip: int = 0, limit: int = 20,
                            complexity: Optional[str] = None) -> Dict[str, Any]:
    session = get_session()
    cards = query_flashcards(session, topic=topic, complexity=complexity)
    session.close()
    skip = max(0, skip)
    page = cards[skip:skip + max(0, limit)]
    return {
        "flashcards": [flashcard_to_dict(c) for c in page],
        "total": len(cards),
        "skip": skip,
        "limit": limit,
        "has_more": skip + len(page) < len(cards),
    }


def get_flashcards_by_type(word_type: str, limit: int = 100) -> List[Dict[str, Any]]:
    session = get_session()
    cards = session.query(Flashcard).filter(Flashcard.type == word_type).order_by(Flashcard.id).limit(limit).all()
    session.close()
    return [flashcard_to_dict(c) for c in cards]


def get_multiword_flashcards(limit: int = 100) -> List[Dict[str, Any]]:
    session = get_session()
    cards = session.query(Flashcard).filter(Flashcard.is_multiword.is_(True)).order_by(Flashcard.id).limit(limit).all()
    session.close()
    return [flashcard_to_dict(c) for c in cards]


def get_multimeaning_flashcards(limit: int = 100) -> List[Dict[str, Any]]:
    session = get_session()
    cards = session.query(Flashcard).filter(Flashcard.is_multimeaning.is_(True)).order_by(Flashcard.id).limit(limit).all()
    session.close()
    return [flashcard_to_dict(c) for c in cards]


def get_flashcards_by_complexity(complexity: str, limit: int = 100) -> List[Dict[str, Any]]:
    session = get_session()
    cards = query_flashcards(session, complexity=complexity)[:limit]
    session.close()
    return [flashcard_to_dict(c) for c in cards]


def get_complexity_counts() -> Dict[str, int]:
    session = get_session()
    total = session.query(Flashcard).count()
    simple = session.query(Flashcard).filter(Flashcard.text_complexity == "simple").count()
    complex_ = session.query(Flashcard).filter(Flashcard.text_complexity == "complex").count()
    session.close()
    return {"all": total, "simple": simple, "complex": complex_}


def get_word_types() -> List[Dict[str, Any]]:
    session = get_session()
    rows = session.query(Flashcard.type).filter(Flashcard.type.isnot(None)).all()
    session.close()
    counts: Dict[str, int] = {}
    for (word_type,) in rows:
        counts[word_type] = counts.get(word_type, 0) + 1
    return [{"type": t, "count": counts[t]} for t in sorted(counts)]


def get_others_counts() -> Dict[str, int]:
    session = get_session()
    multiword = session.query(Flashcard).filter(Flashcard.is_multiword.is_(True)).count()
    multimeaning = session.query(Flashcard).filter(Flashcard.is_multimeaning.is_(True)).count()
    session.close()
    return {"multiword": multiword, "multimeaning": multimeaning}


def get_similar_flashcards(flashcard_id: str, limit: int = 5) -> List[Dict[str, Any]]:
    """Cards closest in embedding space to the given one.

    Embeddings are computed lazily and stored the first time a card takes part
    in a similarity lookup.
    """
    session = get_session()
    try:
        target = session.get(Flashcard, flashcard_id)
        if target is None:
            return []
        cards = session.query(Flashcard).all()
        dirty = False
        for card in cards:
            if card.embedding is None:
                text = f"{card.vietnamese} - {', '.join(card.english or [])}"
                card.embedding = db._serialize_embedding(db._get_embedding(text))
                dirty = True
        if dirty:
            session.commit()
        target_vec = db._deserialize_embedding(target.embedding)
        scored = [
            (db._cosine_similarity(target_vec, db._deserialize_embedding(c.embedding)), c)
            for c in cards if c.id != target.id
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [dict(flashcard_to_dict(c), similarity=round(score, 4)) for score, c in scored[:limit]]
    finally:
        session.close()


# ── Vocab keys ──────────────────────────────────────────────────────────

_VOCAB_KEY_RE = re.compile(r"^t(\d+)-l(\d+)-([a-z0-9]+(?:-[a-z0-9]+)*)$")


def slugify(text: str) -> str:
    folded = normalize_vietnamese(text or "").lower()
    return re.sub(r"[^a-z0-9]+", "-", folded).strip("-")


def make_vocab_key(topic_id: int, lesson_id: int, text: str) -> str:
    """Stable id for a lesson vocabulary item: ``t{topic}-l{lesson}-{slug}``."""
    slug = slugify(text)
    if not slug:
        raise ValueError("Cannot build a vocab key from empty text")
    return f"t{topic_id}-l{lesson_id}-{slug}"


def parse_vocab_key(key: str) -> Optional[Dict[str, Any]]:
    match = _VOCAB_KEY_RE.match(key or "")
    if not match:
        return None
    return {"topic_id": int(match.group(1)), "lesson_id": int(match.group(2)), "slug": match.group(3)}


def is_valid_vocab_key(key: str) -> bool:
    return parse_vocab_key(key) is not None


def add_flashcard(vietnamese: str, english: List[str], flashcard_id: Optional[str] = None,
                  topic_id: int = 0, lesson_id: int = 0, **fields: Any) -> bool:
    """Add a catalog card. Returns True if new, False if the id already exists."""
    card_id = flashcard_id or make_vocab_key(topic_id, lesson_id, vietnamese)
    session = get_session()
    if session.get(Flashcard, card_id) is not None:
        session.close()
        return False
    english = [e.strip() for e in english if e and e.strip()]
    card = Flashcard(
        id=card_id,
        vietnamese=vietnamese.strip(),
        english=english,
        is_multiword=fields.pop("is_multiword", len(vietnamese.split()) > 1),
        is_multimeaning=fields.pop("is_multimeaning", len(english) > 1),
        **fields,
    )
    session.add(card)
    session.commit()
    session.close()
    return True


def _split_list(raw: Optional[str]) -> List[str]:
    return [part.strip() for part in re.split(r"[;|]", raw or "") if part.strip()]


def import_flashcards_csv(csv_path: str) -> int:
    """Import catalog cards from CSV. Skips existing ids.

    Columns: id, vietnamese, english (``;`` separated), type, topic (``;``
    separated), vietnamese_sentence, english_sentence, text_complexity,
    common_class, common_meaning, pronunciation, audio_url, image_url.
    Returns the number of newly imported rows.
    """
    session: Session = get_session()
    imported = 0
    seen: set = set()

    with open(csv_path, "r", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        for row in reader:
            vietnamese = (row.get("vietnamese") or "").strip()
            if not vietnamese:
                continue
            card_id = (row.get("id") or "").strip() or make_vocab_key(0, 0, vietnamese)
            if card_id in seen or session.get(Flashcard, card_id) is not None:
                continue
            english = _split_list(row.get("english"))
            complexity = (row.get("text_complexity") or "simple").strip().lower()
            session.add(Flashcard(
                id=card_id,
                vietnamese=vietnamese,
                english=english,
                type=(row.get("type") or "").strip() or None,
                topic=_split_list(row.get("topic")),
                is_multiword=len(vietnamese.split()) > 1,
                is_multimeaning=len(english) > 1,
                vietnamese_sentence=row.get("vietnamese_sentence") or None,
                english_sentence=row.get("english_sentence") or None,
                text_complexity=complexity if complexity in ("simple", "complex") else "simple",
                common_class=(row.get("common_class") or "").strip() or None,
                common_meaning=row.get("common_meaning") or None,
                pronunciation=row.get("pronunciation") or None,
                audio_url=row.get("audio_url") or None,
                image_url=row.get("image_url") or None,
            ))
            seen.add(card_id)
            imported += 1

    session.commit()
    session.close()
    print(f"✅ Imported {imported} flashcards")
    return imported


# ── Saved cards ─────────────────────────────────────────────────────────

def toggle_saved_flashcard(user: str, flashcard_id: str) -> bool:
    """Save or unsave a card. Returns True if the card is saved afterwards."""
    session = get_session()
    existing = session.query(SavedFlashcard).filter_by(user=user, flashcard_id=flashcard_id).first()
    if existing:
        session.delete(existing)
        session.commit()
        session.close()
        return False
    if session.get(Flashcard, flashcard_id) is None:
        session.close()
        raise ValueError(f"Flashcard not found: {flashcard_id}")
    session.add(SavedFlashcard(user=user, flashcard_id=flashcard_id))
    session.commit()
    session.close()
    return True


def is_flashcard_saved(user: str, flashcard_id: str) -> bool:
    session = get_session()
    found = session.query(SavedFlashcard).filter_by(user=user, flashcard_id=flashcard_id).first() is not None
    session.close()
    return found


def get_saved_flashcard_ids(user: str) -> List[str]:
    session = get_session()
    rows = (
        session.query(SavedFlashcard.flashcard_id)
        .filter(SavedFlashcard.user == user)
        .order_by(SavedFlashcard.created_at.desc(), SavedFlashcard.id.desc())
        .all()
    )
    session.close()
    return [r.flashcard_id for r in rows]


def get_saved_flashcards(user: str) -> List[Dict[str, Any]]:
    """Saved cards, most recently saved first."""
    return get_flashcards_by_ids(get_saved_flashcard_ids(user))


# ── Custom cards ────────────────────────────────────────────────────────

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"""\bon\w+\s*=\s*("[^"]*"|'[^']*'|[^\s>]+)""", re.IGNORECASE)

_CUSTOM_FIELD_LIMITS = {
    "vietnamese_text": 500,
    "english_text": 500,
    "ipa_pronunciation": 200,
    "topic": 100,
    "word_type": 50,
    "source_type": 50,
}


def sanitize_text(text: str) -> str:
    """Trim and remove script blocks, ``javascript:`` and inline event handlers."""
    cleaned = _SCRIPT_RE.sub("", text or "")
    cleaned = _JS_PROTOCOL_RE.sub("", cleaned)
    return _EVENT_HANDLER_RE.sub("", cleaned).strip()


def validate_custom_flashcard(data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Validate and sanitise a user-made card.

    Raises ValueError naming every invalid field. With ``partial=True`` only
    the fields present are checked (used for updates).
    """
    errors: List[str] = []
    cleaned: Dict[str, Any] = {}

    for field_name, max_len in _CUSTOM_FIELD_LIMITS.items():
        required = field_name in ("vietnamese_text", "english_text") and not partial
        if field_name not in data or data[field_name] is None:
            if required:
                errors.append(f"{field_name}: is required")
            continue
        value = data[field_name]
        if not isinstance(value, str):
            errors.append(f"{field_name}: must be a string")
            continue
        value = sanitize_text(value)
        if field_name in ("vietnamese_text", "english_text") and not value:
            errors.append(f"{field_name}: is required")
        elif len(value) > max_len:
            errors.append(f"{field_name}: too long (max {max_len})")
        else:
            cleaned[field_name] = value

    if data.get("image_url"):
        url = data["image_url"]
        parsed = urlparse(url) if isinstance(url, str) else None
        if parsed is None or not parsed.scheme or not parsed.netloc:
            errors.append("image_url: must be a valid URL")
        elif parsed.scheme != "https":
            errors.append("image_url: must use HTTPS for security")
        else:
            cleaned["image_url"] = url
    elif "image_url" in data:
        cleaned["image_url"] = None

    if errors:
        raise ValueError(f"Invalid flashcard data: {', '.join(errors)}")
    return cleaned


def _custom_to_dict(card: CustomFlashcard) -> Dict[str, Any]:
    return {
        "id": card.id,
        "vietnamese_text": card.vietnamese_text,
        "english_text": card.english_text,
        "ipa_pronunciation": card.ipa_pronunciation,
        "image_url": card.image_url,
        "topic": card.topic,
        "word_type": card.word_type,
        "source_type": card.source_type,
        "created_at": card.created_at.isoformat() if card.created_at else None,
    }


def create_custom_flashcard(user: str, data: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = validate_custom_flashcard(data)
    session = get_session()
    card = CustomFlashcard(user=user, **cleaned)
    session.add(card)
    session.commit()
    result = _custom_to_dict(card)
    session.close()
    return result


def update_custom_flashcard(user: str, card_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Partially update a user's own card. Returns None if it does not exist or is not theirs."""
    cleaned = validate_custom_flashcard(data, partial=True)
    session = get_session()
    card = session.query(CustomFlashcard).filter_by(id=card_id, user=user).first()
    if card is None:
        session.close()
        return None
    for key, value in cleaned.items():
        setattr(card, key, value)
    session.commit()
    result = _custom_to_dict(card)
    session.close()
    return result


def delete_custom_flashcard(user: str, card_id: int) -> bool:
    session = get_session()
    card = session.query(CustomFlashcard).filter_by(id=card_id, user=user).first()
    if card is None:
        session.close()
        return False
    session.delete(card)
    session.commit()
    session.close()
    return True


def get_custom_flashcards(user: str) -> List[Dict[str, Any]]:
    session = get_session()
    cards = (
        session.query(CustomFlashcard)
        .filter(CustomFlashcard.user == user)
        .order_by(CustomFlashcard.created_at.desc(), CustomFlashcard.id.desc())
        .all()
    )
    session.close()
    return [_custom_to_dict(c) for c in cards]


# ── Daily set ───────────────────────────────────────────────────────────

def _user_zone(user: str) -> ZoneInfo:
    tz_name = db.get_user_settings(user)["timezone"] or "UTC"
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        print(f"⚠️ Unknown timezone '{tz_name}' for {user}, using UTC")
        return ZoneInfo("UTC")


def end_of_local_day(now: datetime.datetime, tz: ZoneInfo) -> datetime.datetime:
    """Next local midnight after ``now`` in ``tz``, as naive UTC."""
    local_now = now.astimezone(tz)
    next_midnight = datetime.datetime.combine(
        local_now.date() + datetime.timedelta(days=1), datetime.time.min, tzinfo=tz
    )
    return next_midnight.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def get_daily_flashcards(user: str, count: int = DEFAULT_DAILY_COUNT, common_words_only: bool = False,
                         now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    """The user's card set for today. Stable until the end of the day in their timezone.

    Due cards come first, the rest is filled at random from the catalog.
    """
    tz = _user_zone(user)
    now = now or datetime.datetime.now(datetime.timezone.utc)
    local_date = now.astimezone(tz).date()
    now_naive = now.astimezone(datetime.timezone.utc).replace(tzinfo=None)

    session = get_session()
    try:
        daily = session.query(DailyFlashcardSet).filter_by(user=user, date=local_date).first()
        if daily is not None and daily.expires_at > now_naive:
            ids = list(daily.flashcard_ids or [])
            if DEBUG_MODE:
                print(f"🗂️ Daily set cache hit for {user}: {len(ids)} cards")
        else:
            due_ids = [
                r.flashcard_id for r in session.query(FlashcardReview)
                .filter(FlashcardReview.user == user, FlashcardReview.due_date <= local_date)
                .order_by(FlashcardReview.due_date.asc())
                .limit(count)
                .all()
            ]
            pool = [c.id for c in query_flashcards(session, common_words_only=common_words_only)
                    if c.id not in due_ids]
            fill = random.sample(pool, min(len(pool), max(0, count - len(due_ids))))
            ids = due_ids + fill
            expires_at = end_of_local_day(now, tz)
            if daily is None:
                daily = DailyFlashcardSet(user=user, date=local_date, flashcard_ids=ids, expires_at=expires_at)
                session.add(daily)
            else:
                daily.flashcard_ids = ids
                daily.expires_at = expires_at
            session.commit()
        expires = daily.expires_at
    finally:
        session.close()

    return {
        "date": local_date.isoformat(),
        "expires_at": expires.isoformat() + "Z",
        "flashcards": get_flashcards_by_ids(ids),
    }
