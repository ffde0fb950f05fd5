import re
from typing import Iterable

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_SEPARATOR_RE = re.compile(r"[\s_]+")

_STOPWORDS = frozenset(
    "a an and are as at be by for from has in is it of on or that the this to with "
    "will may can hypothesis evidence".split()
)


def tokenize(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall(text.lower()) if t not in _STOPWORDS and len(t) > 2}


def calculate_semantic_similarity(text_a: str, text_b: str) -> float:
    """Jaccard overlap of content words. 0.0 when either side has none."""
    tokens_a = tokenize(text_a)
    tokens_b = tokenize(text_b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def normalize_tags(tags: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for tag in tags:
        cleaned = _SEPARATOR_RE.sub(" ", tag).strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen
