"""Repetition suppression.

Looks at the agent's last few messages; when their n-gram overlap crosses
the threshold it builds a prompt block listing the messages and the phrases
to avoid. Purely lexical, no judge calls.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

import structlog

from src.evals.policy import resolve_config
from src.evals.text_stats import detect_repetition, find_repeated_ngrams
from src.persistence import repository as repo

logger = structlog.get_logger(__name__)

RECENT_MESSAGE_COUNT = 5
MAX_LISTED_NGRAMS = 10


@dataclass
class RepetitionCheck:
    detected: bool = False
    overlap_score: float = 0.0
    repeated_ngrams: list[str] = field(default_factory=list)
    context: str | None = None


def build_repetition_context(texts: list[str], repeated_ngrams: list[str]) -> str:
    message_list = "\n".join(f'{i}. "{text}"' for i, text in enumerate(texts, 1))
    phrases = ", ".join(f'"{gram}"' for gram in repeated_ngrams[:MAX_LISTED_NGRAMS])
    return (
        f"### Recent Messages You've Sent\n{message_list}\n\n"
        "IMPORTANT: You've been repeating similar phrases. Vary your language, sentence "
        "structure, and conversation starters. Do not reuse the following phrases: "
        f"{phrases}"
    )


def check_repetition(texts: list[str], threshold: float = 0.3, n: int = 3) -> RepetitionCheck:
    if len(texts) < 2:
        return RepetitionCheck()
    detected, overlap = detect_repetition(texts, threshold, n)
    if not detected:
        return RepetitionCheck(overlap_score=overlap)
    grams = [gram for gram, _ in find_repeated_ngrams(texts, n)]
    return RepetitionCheck(
        detected=True,
        overlap_score=overlap,
        repeated_ngrams=grams,
        context=build_repetition_context(texts, grams),
    )


def check_repetition_suppression(conn: sqlite3.Connection, agent_id: str) -> RepetitionCheck:
    """Check the agent's last messages when its policy enables suppression."""
    settings = resolve_config(conn, agent_id).repetition
    if not settings.enabled:
        return RepetitionCheck()
    texts = [m.text for m in repo.get_recent_agent_messages(conn, agent_id, RECENT_MESSAGE_COUNT)]
    result = check_repetition(texts, settings.threshold)
    logger.info(
        "repetition_checked",
        agent_id=agent_id,
        messages=len(texts),
        detected=result.detected,
        overlap=round(result.overlap_score, 3),
    )
    return result
