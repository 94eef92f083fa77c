"""
Derived document attributes: difficulty tier, subject tags, key topics,
short summary; plus per-chunk topics and capitalised entities.

Cheap lexical heuristics computed once per successful ingestion and written
together with the INDEXED transition.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter

from scholarai.core.config import Settings
from scholarai.state.machine import DerivedMetadata

logger = logging.getLogger(__name__)

DIFFICULTY_TIERS = ("Beginner", "Intermediate", "Advanced", "Expert")

# Table order is the output order
SUBJECT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Mathematics":      ("equation", "theorem", "calculus", "algebra", "geometry", "math"),
    "Physics":          ("force", "energy", "quantum", "mechanics", "physics", "particle"),
    "Chemistry":        ("molecule", "atom", "chemical", "reaction", "compound", "element"),
    "Biology":          ("cell", "organism", "dna", "evolution", "species", "biology"),
    "Computer Science": ("algorithm", "programming", "software", "computer", "code", "data"),
    "History":          ("century", "war", "empire", "civilization", "historical", "ancient"),
    "Literature":       ("novel", "poetry", "author", "literary", "narrative", "character"),
    "Economics":        ("market", "economy", "trade", "gdp", "inflation", "economic"),
}

_SUBJECT_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    subject: [re.compile(rf"\b{re.escape(kw)}\b", re.IGNORECASE) for kw in keywords]
    for subject, keywords in SUBJECT_KEYWORDS.items()
}

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def count_words(text: str) -> int:
    return len(text.split())


def difficulty_tier(text: str, thresholds: tuple[float, float, float] = (15.0, 20.0, 25.0)) -> str:
    """
    score = avg_word_len * 2 + avg_sentence_len * 0.5, bucketed by `thresholds`.
    Empty text is Beginner.
    """
    words = text.split()
    if not words:
        return DIFFICULTY_TIERS[0]

    avg_word_len = sum(len(w) for w in words) / len(words)
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]
    avg_sentence_len = len(words) / max(1, len(sentences))
    score = avg_word_len * 2 + avg_sentence_len * 0.5

    for tier, limit in zip(DIFFICULTY_TIERS, thresholds):
        if score < limit:
            return tier
    return DIFFICULTY_TIERS[-1]


def classify_subjects(text: str, min_keyword_hits: int = 3) -> list[str]:
    """
    A subject qualifies when at least `min_keyword_hits` of its distinct
    keywords occur as whole words. Falls back to ["General"].
    """
    subjects = [
        subject
        for subject, patterns in _SUBJECT_PATTERNS.items()
        if sum(1 for p in patterns if p.search(text)) >= min_keyword_hits
    ]
    return subjects or ["General"]


def summarize(text: str, max_chars: int = 300) -> str:
    """First non-empty paragraph, truncated to max_chars with "..." appended."""
    for paragraph in text.split("\n\n"):
        paragraph = paragraph.strip()
        if paragraph:
            if len(paragraph) > max_chars:
                return paragraph[:max_chars] + "..."
            return paragraph
    return ""


# Common English function words; never reported as topics
STOP_WORDS: frozenset[str] = frozenset("""
    a an and are as at be but by can did do for had has he her him his how if in
    is it its me my no not of on or our out she so the to too up us was we who you
    about above after again against also among because been before being below
    between both could does doing down during each every from further have having
    here into itself just more most much must only other over same shall should
    some such than that their theirs them then there these they this those
    through under until upon very were what when where which while whom whose
    will with within without would your yours
""".split())

_TERM_RE   = re.compile(r"[a-z0-9]+")
_ENTITY_RE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")

# Single-document TF-IDF: idf = 1 + ln(N / (1 + df)) with N = df = 1
_SINGLE_DOC_IDF = 1.0 + math.log(1 / 2)


def extract_key_topics(text: str, max_topics: int = 10, min_score: float = 0.1) -> list[str]:
    """
    Highest TF-IDF terms of `text`, treated as a one-document corpus.

    The top `max_topics` non-stop-word terms are taken first; of those, only
    terms longer than 3 characters scoring above `min_score` are kept, so the
    result can be shorter than `max_topics`. Ties keep first-occurrence order.
    """
    counts = Counter(t for t in _TERM_RE.findall(text.lower()) if t not in STOP_WORDS)
    ranked = counts.most_common(max_topics) if max_topics > 0 else []
    return [
        term for term, tf in ranked
        if len(term) > 3 and tf * _SINGLE_DOC_IDF > min_score
    ]


def extract_entities(text: str, max_entities: int = 20) -> list[str]:
    """Runs of capitalised words, deduplicated in order of appearance."""
    seen = dict.fromkeys(m.group(0) for m in _ENTITY_RE.finditer(text))
    return [e for e in seen if 2 < len(e) < 50][:max_entities]


def derive_metadata(
    text:             str,
    thresholds:       tuple[float, float, float] = (15.0, 20.0, 25.0),
    min_keyword_hits: int = 3,
    summary_chars:    int = 300,
    max_topics:       int = 10,
) -> DerivedMetadata:
    derived = DerivedMetadata(
        difficulty=difficulty_tier(text, thresholds),
        subjects=classify_subjects(text, min_keyword_hits),
        summary=summarize(text, summary_chars) or None,
        key_topics=extract_key_topics(text, max_topics),
    )
    logger.debug(
        "Derived metadata | difficulty=%s subjects=%s topics=%s",
        derived.difficulty, derived.subjects, derived.key_topics,
    )
    return derived


def derive_metadata_from_settings(text: str, settings: Settings) -> DerivedMetadata:
    return derive_metadata(
        text,
        thresholds=tuple(settings.difficulty_thresholds),
        min_keyword_hits=settings.subject_min_keyword_hits,
        summary_chars=settings.summary_max_chars,
        max_topics=settings.key_topics_max,
    )
