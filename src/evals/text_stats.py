"""Deterministic text statistics: tokenization, n-gram repetition, vocabulary stats.

These are supplementary evidence for the fluency and convergence scorers and
the basis of the gate's similarity check and repetition suppression.
"""

from __future__ import annotations

import re
from collections import Counter
from itertools import combinations

from src.schemas.evaluation import VocabularyStats

_NON_WORD = re.compile(r"[^\w\s]")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_PUNCTUATION = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation, split on whitespace."""
    return _NON_WORD.sub("", text.lower()).split()


def ngrams(tokens: list[str], n: int) -> list[str]:
    if n <= 0 or len(tokens) < n:
        return []
    return [" ".join(tokens[i : i + n]) for i in range(len(tokens) - n + 1)]


def jaccard(a: set[str], b: set[str]) -> float:
    """Jaccard similarity of two sets. Two empty sets are 0, not 1."""
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def word_similarity(a: str, b: str) -> float:
    return jaccard(set(tokenize(a)), set(tokenize(b)))


def ngram_similarity(a: str, b: str, n: int = 3) -> float:
    return jaccard(set(ngrams(tokenize(a), n)), set(ngrams(tokenize(b), n)))


def corpus_repetition(texts: list[str], n: int) -> float:
    """Average pairwise Jaccard overlap of per-message n-gram sets.

    Returns 0.0 for fewer than two messages.
    """
    if len(texts) < 2:
        return 0.0
    sets = [set(ngrams(tokenize(t), n)) for t in texts]
    pairs = list(combinations(sets, 2))
    return sum(jaccard(a, b) for a, b in pairs) / len(pairs)


def max_similarity(candidate: str, others: list[str]) -> float:
    """Highest word-level Jaccard similarity between ``candidate`` and any of ``others``."""
    return max((word_similarity(candidate, o) for o in others), default=0.0)


def vocabulary_stats(texts: list[str]) -> VocabularyStats:
    words: list[str] = []
    sentence_lengths: list[int] = []
    punctuation = 0
    chars = 0
    for text in texts:
        words.extend(tokenize(text))
        punctuation += len(_PUNCTUATION.findall(text))
        chars += len(text)
        for sentence in _SENTENCE_SPLIT.split(text):
            count = len(sentence.split())
            if count:
                sentence_lengths.append(count)

    return VocabularyStats(
        unique_word_ratio=len(set(words)) / len(words) if words else 0.0,
        avg_sentence_length=(
            sum(sentence_lengths) / len(sentence_lengths) if sentence_lengths else 0.0
        ),
        punctuation_density=punctuation / chars if chars else 0.0,
    )


def pairwise_similarity(texts_by_agent: dict[str, list[str]]) -> dict[str, float]:
    """Word-set Jaccard between every pair of agents, keyed ``"a-b"`` (sorted)."""
    vocab = {
        agent: {w for t in texts for w in tokenize(t)}
        for agent, texts in texts_by_agent.items()
    }
    result: dict[str, float] = {}
    for a, b in combinations(sorted(vocab), 2):
        result[f"{a}-{b}"] = jaccard(vocab[a], vocab[b])
    return result


# ---------------------------------------------------------------------------
# Repetition detection
# ---------------------------------------------------------------------------


def detect_repetition(
    texts: list[str],
    threshold: float = 0.3,
    n: int = 3,
) -> tuple[bool, float]:
    """(detected, overlap) where overlap is the corpus n-gram repetition score."""
    overlap = corpus_repetition(texts, n)
    return overlap >= threshold, overlap


def find_repeated_ngrams(texts: list[str], n: int = 3) -> list[tuple[str, int]]:
    """N-grams that appear in two or more messages, most frequent first."""
    counts: Counter[str] = Counter()
    for text in texts:
        counts.update(set(ngrams(tokenize(text), n)))
    repeated = [(gram, count) for gram, count in counts.items() if count >= 2]
    repeated.sort(key=lambda item: (-item[1], item[0]))
    return repeated
