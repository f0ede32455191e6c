"""Pre-recorded raw judge scores for the deterministic CI judge.

Scores are raw (before inversion): anti-pattern propositions carry low raw
scores, which invert to high final scores. Anything not listed scores 7.
"""

from __future__ import annotations

from typing import NamedTuple


class MockScore(NamedTuple):
    score: int
    reasoning: str


DEFAULT_SCORES: dict[str, MockScore] = {
    "adheres-to-persona": MockScore(7, "Agent generally maintains persona"),
    "uses-characteristic-language": MockScore(7, "Uses some characteristic speech patterns"),
    "generic-corporate-response": MockScore(2, "Rarely gives generic corporate responses"),
    "appropriate-emotional-tone": MockScore(7, "Shows appropriate emotional responses"),
}

CHARACTER_SCORES: dict[str, dict[str, MockScore]] = {
    "michael": {
        "michael-self-centered-humor": MockScore(8, "Consistently makes everything about himself"),
        "michael-thats-what-she-said": MockScore(7, "Uses signature humor regularly"),
        "michael-needs-to-be-liked": MockScore(8, "Constantly seeks approval from coworkers"),
        "michael-avoids-conflict": MockScore(7, "Tries to keep everyone happy"),
        "michael-pop-culture-references": MockScore(6, "Occasionally references movies and TV"),
        "michael-coworkers-as-family": MockScore(8, "Treats the office as his family"),
        "michael-inappropriate-without-realizing": MockScore(7, "Makes tone-deaf comments without awareness"),
        "michael-worlds-best-boss": MockScore(6, "References his management greatness sometimes"),
        "michael-malapropisms": MockScore(6, "Occasionally mangles common expressions"),
        "michael-dry-corporate-antipattern": MockScore(2, "Never gives dry corporate responses"),
    },
    "dwight": {
        "dwight-authority-hierarchy": MockScore(8, "Constantly references chain of command"),
        "dwight-loyal-to-michael": MockScore(8, "Unwavering loyalty to Michael"),
        "dwight-beet-farming": MockScore(6, "Mentions Schrute Farms periodically"),
        "dwight-survival-skills": MockScore(7, "References wilderness preparedness"),
        "dwight-literal-serious": MockScore(8, "Takes everything at face value"),
        "dwight-enforces-rules": MockScore(7, "Enforces office policies strictly"),
        "dwight-bears-battlestar": MockScore(6, "Brings up nerd culture interests"),
        "dwight-superiority-over-jim": MockScore(7, "Asserts dominance over Jim"),
        "dwight-militaristic-language": MockScore(7, "Uses commanding, tactical language"),
        "dwight-casual-laid-back-antipattern": MockScore(1, "Never casual or dismissive about work"),
    },
    "jim": {
        "jim-sarcasm-dry-wit": MockScore(8, "Consistently delivers deadpan humor"),
        "jim-pranks-on-dwight": MockScore(7, "References pranks and mischief"),
        "jim-references-pam": MockScore(7, "Mentions Pam naturally in conversation"),
        "jim-laid-back-demeanor": MockScore(8, "Stays relaxed in all situations"),
        "jim-camera-look-asides": MockScore(6, "Makes knowing meta-observations"),
        "jim-deflects-with-humor": MockScore(7, "Uses humor to avoid serious topics"),
        "jim-disinterest-corporate": MockScore(7, "Shows indifference to corporate culture"),
        "jim-takes-hierarchy-seriously-antipattern": MockScore(2, "Never takes office politics seriously"),
    },
    "pam": {
        "pam-supportive-encouraging": MockScore(8, "Consistently supportive toward colleagues"),
        "pam-art-creative-pursuits": MockScore(6, "References art and creative interests"),
        "pam-quiet-inner-strength": MockScore(7, "Shows determination when it matters"),
        "pam-connection-with-jim": MockScore(7, "Natural warmth toward Jim"),
        "pam-observational-humor": MockScore(6, "Notices everyday absurdities"),
        "pam-polite-but-firm": MockScore(7, "Pleasant but can push back"),
        "pam-empathy-emotional-awareness": MockScore(8, "Highly attuned to others' feelings"),
        "pam-aggressive-domineering-antipattern": MockScore(1, "Never aggressive or domineering"),
    },
}


def get_mock_scores(agent_id: str) -> dict[str, MockScore]:
    """Default scores merged with the character's own."""
    return {**DEFAULT_SCORES, **CHARACTER_SCORES.get(agent_id, {})}


def get_all_mock_scores() -> dict[str, MockScore]:
    merged = dict(DEFAULT_SCORES)
    for scores in CHARACTER_SCORES.values():
        merged.update(scores)
    return merged
