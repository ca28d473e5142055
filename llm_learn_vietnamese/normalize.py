"""
Vietnamese text normalization.

Strips tone marks and vowel modifiers so learners typing without a
Vietnamese keyboard still match:

    "Xin chào"  -> "Xin chao"
    "Cà phê"    -> "Ca phe"
    "Đi học"    -> "Di hoc"
"""

import re
import unicodedata

_VIETNAMESE_BASES = {
    "a": "àáảãạăằắẳẵặâầấẩẫậ",
    "e": "èéẻẽẹêềếểễệ",
    "i": "ìíỉĩị",
    "o": "òóỏõọôồốổỗộơờớởỡợ",
    "u": "ùúủũụưừứửữự",
    "y": "ỳýỷỹỵ",
    "d": "đ",
}

_VIETNAMESE_MAP = {}
for _base, _accented in _VIETNAMESE_BASES.items():
    for _ch in _accented:
        _VIETNAMESE_MAP[ord(_ch)] = _base
        _VIETNAMESE_MAP[ord(_ch.upper())] = _base.upper()

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_vietnamese(text: str) -> str:
    """Replace every accented Vietnamese letter with its base letter, keeping case."""
    if not text:
        return ""
    # Decomposed input (combining marks) is composed first so the table applies
    return unicodedata.normalize("NFC", text).translate(_VIETNAMESE_MAP)


def _strip_punctuation_and_symbols(text: str) -> str:
    # Unicode categories P* (punctuation) and S* (symbols)
    return "".join(ch for ch in text if unicodedata.category(ch)[0] not in ("P", "S"))


def normalize_for_comparison(text: str, preserve_case: bool = False, preserve_whitespace: bool = False) -> str:
    """Normalize an answer for grading: no diacritics, no punctuation, single spaces, lowercase.

    >>> normalize_for_comparison("Xin chào, bạn khỏe không?")
    'xin chao ban khoe khong'
    """
    if not text:
        return ""
    normalized = _strip_punctuation_and_symbols(normalize_vietnamese(text))
    if not preserve_whitespace:
        normalized = _WHITESPACE_RE.sub(" ", normalized).strip()
    if not preserve_case:
        normalized = normalized.lower()
    return normalized


def compare_vietnamese(a: str, b: str, case_sensitive: bool = False, ignore_punctuation: bool = False) -> bool:
    """Compare two strings ignoring diacritics."""
    if not a or not b:
        return a == b
    if ignore_punctuation:
        return (normalize_for_comparison(a, preserve_case=case_sensitive)
                == normalize_for_comparison(b, preserve_case=case_sensitive))
    left = normalize_vietnamese(a)
    right = normalize_vietnamese(b)
    if case_sensitive:
        return left == right
    return left.lower() == right.lower()


def search_vietnamese(text: str, term: str, case_sensitive: bool = False) -> bool:
    """True if ``term`` occurs in ``text`` once both are stripped of diacritics."""
    if not text or not term:
        return False
    haystack = normalize_vietnamese(text)
    needle = normalize_vietnamese(term)
    if case_sensitive:
        return needle in haystack
    return needle.lower() in haystack.lower()
