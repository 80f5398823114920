import re
from typing import Iterable, Optional, Sequence

from rapidfuzz import fuzz

"""
Token-overlap matching helpers shared by the reconciler and the alternate
detector. rapidfuzz only breaks ties between equally overlapping phrases.
"""

_WORD_RE = re.compile(r"[a-z0-9]+")


def normalize_text(txt: str) -> str:
    txt = txt.replace("‘", "'").replace("’", "'").replace("&", " and ")
    txt = re.sub(r"[^\w\s]", " ", txt)
    txt = re.sub(r"\s+", " ", txt)
    return txt.strip().lower()


def stem(token: str) -> str:
    """Light suffix stripping, enough to line up plurals and verb forms."""
    if len(token) <= 3 or token.isdigit():
        return token
    for suffix, repl in (
        ("ies", "y"),
        ("ing", ""),
        ("ation", ""),
        ("ed", ""),
        ("es", ""),
        ("s", ""),
    ):
        if token.endswith(suffix) and len(token) - len(suffix) >= 3:
            if suffix == "es" and not token.endswith(("ses", "xes", "zes", "ches", "shes")):
                return token[:-1]
            return token[: -len(suffix)] + repl
    return token


def token_set(
    text: str,
    *,
    stopwords: Iterable[str] = (),
    drop_words: Iterable[str] = (),
) -> frozenset[str]:
    """Normalised, stemmed tokens of `text` without stopwords, brands or bare numbers."""
    skip = set(stopwords) | set(drop_words)
    tokens = []
    for word in _WORD_RE.findall(normalize_text(text)):
        if word in skip or word.isdigit() or len(word) < 2:
            continue
        tokens.append(stem(word))
    return frozenset(tokens)


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def best_token_match(
    query: frozenset[str],
    candidates: Sequence[frozenset[str]],
    *,
    threshold: float = 0.2,
    query_text: str = "",
    candidate_texts: Optional[Sequence[str]] = None,
) -> Optional[int]:
    """
    Index of the candidate whose token set best overlaps `query`.

    A candidate qualifies when Jaccard >= threshold or when every query
    token is contained in it. Ties on Jaccard fall back to the rapidfuzz
    token-set ratio on the raw texts, then to the lowest index.
    """
    if not query:
        return None

    best_idx: Optional[int] = None
    best_key: tuple[float, float] = (-1.0, -1.0)
    for idx, cand in enumerate(candidates):
        if not cand:
            continue
        score = jaccard(query, cand)
        if score < threshold and not query <= cand:
            continue
        ratio = 0.0
        if candidate_texts is not None and query_text:
            ratio = fuzz.token_set_ratio(
                normalize_text(query_text), normalize_text(candidate_texts[idx])
            )
        key = (score, ratio)
        if key > best_key:
            best_key = key
            best_idx = idx
    return best_idx
