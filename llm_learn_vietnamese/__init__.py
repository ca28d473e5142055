"""
LLM Learn Vietnamese

Vietnamese learning backend: flashcards with spaced repetition, lesson
exercises, progress statistics and an LLM tutor grounded on a grammar and
folklore knowledge base.
"""

from . import db
from . import scheduler
from . import normalize
from . import grading
from . import flashcards
from . import statistics
from . import review
from . import practice
from . import unlock
from . import structured
from . import rag
from . import chat

__version__ = "0.1.0"
__all__ = [
    "db", "scheduler", "normalize", "grading", "flashcards", "statistics",
    "review", "practice", "unlock", "structured", "rag", "chat",
]
