"""Correction strategies for a candidate message that failed the gate.

- Regeneration: the upstream agent is handed a JSON feedback document and
  asked for a new candidate.
- Direct correction: the ``corrector`` model rewrites the text itself.
  Any failure (timeout, provider error, bad output) returns the input text
  unchanged.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog
from langchain_core.messages import HumanMessage
from langchain_core.utils.json import parse_json_markdown

from src.config import get_agent_settings
from src.evals.gate.checks import QualityCheck
from src.evals.judge import usage_of
from src.models import create_llm
from src.schemas.evaluation import TokenUsage

logger = structlog.get_logger(__name__)

RECOMMENDATIONS: dict[str, str] = {
    "persona_adherence": (
        "Rewrite to better match your character's personality traits, speech patterns, and behaviors."
    ),
    "self_consistency": (
        "Ensure your message does not contradict your previous statements in this conversation."
    ),
    "fluency": "Use natural, varied language. Avoid repeating phrases or using formulaic patterns.",
    "suitability": (
        "Make your message a reasonable response to the conversation or a productive step toward a goal."
    ),
    "similarity": "Say something new instead of repeating one of your recent messages.",
}

ESCALATION = (
    "IMPORTANT: Your previous attempts also failed quality checks. You MUST be MORE RADICAL "
    "in your changes and produce something VERY different from previous attempts. It is "
    "better to stop acting than to act poorly."
)


def build_recommendation(dimension: str, reasoning: str) -> str:
    return f"{RECOMMENDATIONS.get(dimension, '')} (Issue: {reasoning})".strip()


def failed_dimension_details(check: QualityCheck) -> list[dict[str, Any]]:
    """Failed checks as dicts, including a failed similarity check."""
    details = [
        {
            "dimension": d.dimension,
            "score": d.score,
            "threshold": check.thresholds.get(d.dimension),
            "reasoning": d.reasoning,
            "recommendation": build_recommendation(d.dimension, d.reasoning),
        }
        for d in check.failed_dimensions
    ]
    if check.similarity is not None and not check.similarity.passed:
        reasoning = f"Too similar to a recent message ({check.similarity.score:.2f})"
        details.append(
            {
                "dimension": "similarity",
                "score": check.similarity.score,
                "threshold": check.similarity.threshold,
                "reasoning": reasoning,
                "recommendation": build_recommendation("similarity", reasoning),
            }
        )
    return details


def format_regeneration_feedback(
    candidate: str,
    check: QualityCheck,
    attempt_number: int,
    max_attempts: int,
) -> str:
    """JSON feedback handed to the agent when asking for a regenerated message.

    ``attempt_number`` counts regeneration requests (1-based); from the second
    request on the instruction escalates.
    """
    failed = failed_dimension_details(check)
    lines = "\n".join(
        f"  - {d['dimension']}: score {d['score']}/{d['threshold']}: {d['reasoning']}\n"
        f"    Recommendation: {d['recommendation']}"
        for d in failed
    )
    instruction = (
        f"Your message failed quality checks on {len(failed)} dimension(s):\n{lines}\n\n"
        f"Please rewrite your message to address these issues. "
        f"Attempt {attempt_number} of {max_attempts}."
    )
    if attempt_number > 1:
        instruction += f"\n\n{ESCALATION}"
    return json.dumps(
        {
            "type": "quality_check_failed",
            "tentativeAction": candidate,
            "failedDimensions": failed,
            "instruction": instruction,
        }
    )


def build_correction_prompt(
    candidate: str,
    check: QualityCheck,
    agent_name: str,
    persona: str | None = None,
    context_messages: list[str] | None = None,
) -> str:
    rules = "\n".join(
        f"- {d['dimension']} (score {d['score']}/{d['threshold']}): {d['reasoning']}\n"
        f"  Rule: {d['recommendation']}"
        for d in failed_dimension_details(check)
    )
    persona_section = f"\n\nThe agent's persona:\n{persona}" if persona else ""
    conversation_section = ""
    if context_messages:
        conversation_section = "\n\nRecent conversation:\n" + "\n".join(f"- {m}" for m in context_messages)

    return (
        f'You are a text correction assistant. An AI agent named "{agent_name}" generated a '
        "message that failed quality checks. Your job is to rewrite the message to fix the "
        "quality issues while preserving the agent's intended meaning and voice."
        f"{persona_section}{conversation_section}\n\n"
        f'The original message:\n"{candidate}"\n\n'
        f"Quality check failures and corrective rules:\n{rules}\n\n"
        "Rewrite the message to satisfy ALL corrective rules. Preserve the agent's voice and "
        "intended meaning as much as possible.\n\n"
        'Respond with JSON only: {"corrected_text": "..."}'
    )


async def direct_correct(
    candidate: str,
    check: QualityCheck,
    agent_name: str,
    persona: str | None = None,
    context_messages: list[str] | None = None,
    llm: Any | None = None,
) -> tuple[str, TokenUsage]:
    """Rewrite ``candidate`` with the corrector model. Returns (text, usage)."""
    cfg = get_agent_settings().roles.corrector
    prompt = build_correction_prompt(candidate, check, agent_name, persona, context_messages)
    try:
        llm = llm or create_llm("corrector", temperature=cfg.temperature, max_tokens=cfg.max_tokens)
        response = await asyncio.wait_for(
            llm.ainvoke([HumanMessage(content=prompt)]), timeout=cfg.timeout_seconds
        )
    except Exception as exc:
        logger.warning("direct_correction_failed", agent_name=agent_name, error=str(exc))
        return candidate, TokenUsage()

    usage = usage_of(response)
    content = (response.content or "").strip()
    try:
        parsed = parse_json_markdown(content)
        corrected = parsed.get("corrected_text") if isinstance(parsed, dict) else None
    except ValueError:
        corrected = None
    corrected = (corrected or content or candidate).strip() or candidate

    logger.info(
        "direct_correction_complete",
        agent_name=agent_name,
        original_length=len(candidate),
        corrected_length=len(corrected),
    )
    return corrected, usage
