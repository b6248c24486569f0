# /app/workflows/prohibited_words.py

"""
Flow-selectable prohibited word lists.

A field opts in with ``prohibitedWordsList: <list id>``. Each list is a JSON
array of words in ``app/config/prohibited_words/<list id>.json``, loaded once.
Matching is a strict substring test after both sides are normalized: NFKC,
case-folded, with quotes, punctuation and separators removed so spacing or
dashes cannot split a word.
"""

import json
import re
import unicodedata
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet, Optional

WORD_LISTS_DIR = Path(__file__).resolve().parent.parent / "config" / "prohibited_words"

_QUOTES = re.compile(r"[“”\"׳״'’`´]")
_SEPARATORS = re.compile(r"[\s\-\u05BE\u2010-\u2015_.:,;!?()\[\]{}\\/]+")


def normalize_for_match(raw: object) -> str:
    text = unicodedata.normalize("NFKC", str(raw if raw is not None else "")).casefold()
    text = _QUOTES.sub("", text)
    return _SEPARATORS.sub("", text).strip()


def known_word_lists() -> FrozenSet[str]:
    return frozenset(path.stem for path in WORD_LISTS_DIR.glob("*.json"))


@lru_cache(maxsize=None)
def load_word_list(list_id: str) -> FrozenSet[str]:
    """Normalized words of a list; an unknown list is empty."""
    if list_id not in known_word_lists():
        return frozenset()
    words = json.loads((WORD_LISTS_DIR / f"{list_id}.json").read_text(encoding="utf-8"))
    return frozenset(word for word in (normalize_for_match(w) for w in words if w is not None) if word)


def find_prohibited_word(value: object, list_id: Optional[str]) -> Optional[str]:
    """The first (normalized) prohibited word contained in ``value``, or None."""
    list_id = (list_id or "").strip()
    if not list_id:
        return None
    haystack = normalize_for_match(value)
    if not haystack:
        return None
    for word in sorted(load_word_list(list_id)):
        if word in haystack:
            return word
    return None
