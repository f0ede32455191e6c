"""LLM-as-a-Judge client.

The judge is a capability with two interchangeable implementations:

- ``LLMJudge``: live chat model (OpenRouter via ``create_llm("judge")``)
- ``MockJudge``: deterministic pre-recorded scores for CI

Scorers, the gate and the harness only ever talk to the ``Judge`` interface;
``get_judge()`` picks the variant from settings.

Score output contract (JSON from the model):
  {"score": 0-9, "reasoning": str, "confidence": 0-1, "evidence": str | null}
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import structlog
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.utils.json import parse_json_markdown

from src.config import Settings, get_agent_settings, get_settings
from src.evals.errors import JudgeError
from src.evals.mock_scores import MockScore, get_all_mock_scores
from src.models import create_llm
from src.schemas.evaluation import (
    CheckVerdict,
    Idea,
    IdeasVerdict,
    JudgeVerdict,
    TokenUsage,
    TrajectoryEntry,
)
from src.utils.rate_limiter import JudgeRateLimiter

logger = structlog.get_logger(__name__)


SCORING_RUBRIC = """\
You are an impartial evaluator of simulated characters in a workplace chat.
You judge whether a CLAIM is supported by a TRAJECTORY of messages.

Scoring rubric (integer 0-9):
- 0: the claim is completely false; the trajectory directly contradicts it.
- 1-2: the claim is mostly false; only marginal evidence supports it.
- 3: weak support; some evidence, but most of it points the other way.
- 4-5: mixed; evidence for and against is roughly balanced.
- 6: fair support; more evidence for than against.
- 7-8: well supported; clear evidence with only minor exceptions.
- 9: the claim is completely true; every relevant message supports it.

Principles:
- If the trajectory contains no data relevant to the claim, assume it is true (9).
- Be rigorous: when in doubt between two scores, choose the lower one.
- A clear contradiction outweighs any amount of positive evidence."""

DOUBLE_CHECK_PROMPT = (
    "Are you sure? Please revise your evaluation to make it as correct as possible. "
    "Respond with the same JSON format."
)

IDEAS_SYSTEM_PROMPT = """\
You analyze workplace chat conversations. List every distinct, concrete idea,
proposal or suggestion that participants put forward. Merge restatements of the
same idea. Ignore greetings, jokes and small talk that propose nothing.

Respond with JSON only:
{"count": <number of ideas>, "ideas": [{"id": 1, "description": "..."}, ...]}"""


def build_judge_system_prompt(persona: str | None = None) -> str:
    if not persona:
        return SCORING_RUBRIC
    return f"{SCORING_RUBRIC}\n\nYou are evaluating the following character:\n{persona}"


def render_trajectory(trajectory: list[TrajectoryEntry]) -> str:
    return "\n".join(entry.render() for entry in trajectory)


def build_score_prompt(claim: str, trajectory: list[TrajectoryEntry]) -> str:
    return (
        f"CLAIM: {claim}\n\n"
        f"TRAJECTORY:\n{render_trajectory(trajectory)}\n\n"
        "How well does the trajectory support the claim? Respond with JSON only:\n"
        '{"score": <integer 0-9>, "reasoning": "<one or two sentences>", '
        '"confidence": <0.0-1.0>, "evidence": "<short quote or null>"}'
    )


def build_check_prompt(claim: str, trajectory: list[TrajectoryEntry]) -> str:
    return (
        f"CLAIM: {claim}\n\n"
        f"TRAJECTORY:\n{render_trajectory(trajectory)}\n\n"
        "Is the claim true for this trajectory? Respond with JSON only:\n"
        '{"result": <true|false>, "reasoning": "<one or two sentences>", '
        '"confidence": <0.0-1.0>}'
    )


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def _as_dict(content: str) -> dict[str, Any]:
    try:
        data = parse_json_markdown(content) if content else None
    except ValueError as exc:
        raise JudgeError(f"Judge returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise JudgeError("Judge response is not a JSON object")
    return data


def _confidence(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.5


def parse_score_output(content: str) -> JudgeVerdict:
    """Parse a score response. Score is rounded and clamped to 0..9."""
    data = _as_dict(content)
    try:
        raw = float(data["score"])
    except (KeyError, TypeError, ValueError) as exc:
        raise JudgeError(f"Judge response has no numeric score: {content[:200]}") from exc
    evidence = data.get("evidence")
    return JudgeVerdict(
        score=max(0, min(9, round(raw))),
        reasoning=str(data.get("reasoning", "")),
        confidence=_confidence(data.get("confidence", 0.5)),
        evidence=str(evidence) if evidence else None,
    )


def parse_check_output(content: str) -> CheckVerdict:
    data = _as_dict(content)
    result = data.get("result")
    if isinstance(result, str):
        result = result.strip().lower() in ("true", "yes")
    if not isinstance(result, bool):
        raise JudgeError(f"Judge response has no boolean result: {content[:200]}")
    return CheckVerdict(
        result=result,
        reasoning=str(data.get("reasoning", "")),
        confidence=_confidence(data.get("confidence", 0.5)),
    )


def parse_ideas_output(content: str) -> IdeasVerdict:
    """Count is the length of the idea list when one is given, else the rounded count."""
    data = _as_dict(content)
    raw_ideas = data.get("ideas") or []
    ideas = [
        Idea(id=int(item.get("id", i + 1)), description=str(item.get("description", "")))
        for i, item in enumerate(raw_ideas)
        if isinstance(item, dict)
    ]
    if ideas:
        count = len(ideas)
    else:
        try:
            count = max(0, round(float(data.get("count", 0))))
        except (TypeError, ValueError):
            count = 0
    return IdeasVerdict(count=count, ideas=ideas)


def usage_of(response: Any) -> TokenUsage:
    usage = getattr(response, "usage_metadata", None) or {}
    return TokenUsage(
        input_tokens=int(usage.get("input_tokens", 0) or 0),
        output_tokens=int(usage.get("output_tokens", 0) or 0),
    )


# ---------------------------------------------------------------------------
# Judge interface
# ---------------------------------------------------------------------------


class Judge(ABC):
    """Black-box judge contract used by every scorer."""

    @abstractmethod
    async def score(
        self,
        claim: str,
        trajectory: list[TrajectoryEntry],
        persona: str | None = None,
        proposition_id: str | None = None,
    ) -> JudgeVerdict:
        """Raw 0..9 score (before inversion / hard mode) with reasoning and usage."""

    @abstractmethod
    async def check(
        self,
        claim: str,
        trajectory: list[TrajectoryEntry],
        persona: str | None = None,
    ) -> CheckVerdict:
        """Boolean verdict for a claim (intervention preconditions)."""

    @abstractmethod
    async def enumerate_ideas(self, trajectory: list[TrajectoryEntry]) -> IdeasVerdict:
        """List the distinct ideas proposed in a trajectory."""


class LLMJudge(Judge):
    """Judge backed by a chat model.

    Args:
        llm: Pre-built runnable; created from the ``judge`` role when omitted.
        rate_limiter: Shared token bucket; calls wait for a token keyed by model.
        timeout: Per-call timeout in seconds (hang == JudgeError).
        double_check: Ask the model to revise its first answer.
    """

    def __init__(
        self,
        llm: Any | None = None,
        ideas_llm: Any | None = None,
        rate_limiter: JudgeRateLimiter | None = None,
        timeout: float | None = None,
        double_check: bool | None = None,
    ) -> None:
        cfg = get_agent_settings().roles.judge
        self._llm = llm
        self._ideas_llm = ideas_llm
        self._rate_limiter = rate_limiter
        self._timeout = timeout if timeout is not None else cfg.timeout_seconds
        self._double_check = cfg.double_check if double_check is None else double_check
        self._model_key = get_agent_settings().get_model("judge")

    def _judge_llm(self) -> Any:
        if self._llm is None:
            cfg = get_agent_settings().roles.judge
            self._llm = create_llm("judge", temperature=cfg.temperature, max_tokens=cfg.max_tokens)
        return self._llm

    def _enumerator_llm(self) -> Any:
        if self._ideas_llm is None:
            cfg = get_agent_settings().roles.ideas
            self._ideas_llm = create_llm("ideas", temperature=cfg.temperature, max_tokens=cfg.max_tokens)
        return self._ideas_llm

    async def _invoke(self, llm: Any, messages: list, label: str) -> tuple[str, TokenUsage]:
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire(self._model_key)
        try:
            response = await asyncio.wait_for(llm.ainvoke(messages), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise JudgeError(f"Judge call timed out after {self._timeout}s", label) from exc
        except Exception as exc:  # provider / network failure
            raise JudgeError(f"Judge call failed: {exc}", label) from exc
        return (response.content or ""), usage_of(response)

    async def score(
        self,
        claim: str,
        trajectory: list[TrajectoryEntry],
        persona: str | None = None,
        proposition_id: str | None = None,
    ) -> JudgeVerdict:
        llm = self._judge_llm()
        messages = [
            SystemMessage(content=build_judge_system_prompt(persona)),
            HumanMessage(content=build_score_prompt(claim, trajectory)),
        ]
        content, usage = await self._invoke(llm, messages, proposition_id or "score")
        verdict = parse_score_output(content)

        if self._double_check:
            revised_messages = messages + [
                AIMessage(content=content),
                HumanMessage(content=DOUBLE_CHECK_PROMPT),
            ]
            revised_content, revised_usage = await self._invoke(
                llm, revised_messages, proposition_id or "score"
            )
            usage = usage + revised_usage
            try:
                verdict = parse_score_output(revised_content)
            except JudgeError:
                logger.warning("judge_double_check_unparseable", proposition_id=proposition_id)

        return verdict.model_copy(update={"token_usage": usage})

    async def check(
        self,
        claim: str,
        trajectory: list[TrajectoryEntry],
        persona: str | None = None,
    ) -> CheckVerdict:
        messages = [
            SystemMessage(content=build_judge_system_prompt(persona)),
            HumanMessage(content=build_check_prompt(claim, trajectory)),
        ]
        content, usage = await self._invoke(self._judge_llm(), messages, "check")
        return parse_check_output(content).model_copy(update={"token_usage": usage})

    async def enumerate_ideas(self, trajectory: list[TrajectoryEntry]) -> IdeasVerdict:
        messages = [
            SystemMessage(content=IDEAS_SYSTEM_PROMPT),
            HumanMessage(content=f"CONVERSATION:\n{render_trajectory(trajectory)}"),
        ]
        content, usage = await self._invoke(self._enumerator_llm(), messages, "enumerate_ideas")
        return parse_ideas_output(content).model_copy(update={"token_usage": usage})


class MockJudge(Judge):
    """Deterministic judge returning pre-recorded raw scores by proposition id.

    Unknown propositions score ``default_score``. Token usage is always zero,
    so mock runs never show up in cost summaries.
    """

    def __init__(
        self,
        scores: dict[str, MockScore] | None = None,
        default_score: int = 7,
        check_result: bool = False,
        ideas: list[str] | None = None,
    ) -> None:
        self._scores = get_all_mock_scores() if scores is None else scores
        self._default = default_score
        self._check_result = check_result
        self._ideas = ideas or []
        self.calls: list[str] = []

    async def score(
        self,
        claim: str,
        trajectory: list[TrajectoryEntry],
        persona: str | None = None,
        proposition_id: str | None = None,
    ) -> JudgeVerdict:
        self.calls.append(proposition_id or claim)
        entry = self._scores.get(proposition_id or "")
        if entry is None:
            return JudgeVerdict(
                score=self._default,
                reasoning=f"Mock score for {proposition_id or 'claim'}",
                confidence=0.95,
            )
        return JudgeVerdict(score=entry.score, reasoning=entry.reasoning, confidence=0.95)

    async def check(
        self,
        claim: str,
        trajectory: list[TrajectoryEntry],
        persona: str | None = None,
    ) -> CheckVerdict:
        self.calls.append(claim)
        return CheckVerdict(result=self._check_result, reasoning="Mock check", confidence=0.95)

    async def enumerate_ideas(self, trajectory: list[TrajectoryEntry]) -> IdeasVerdict:
        ideas = [Idea(id=i, description=d) for i, d in enumerate(self._ideas, 1)]
        return IdeasVerdict(count=len(ideas), ideas=ideas)


def get_judge(
    settings: Settings | None = None,
    rate_limiter: JudgeRateLimiter | None = None,
) -> Judge:
    """Build the judge selected by ``Settings.judge_mode`` ("live" or "mock")."""
    settings = settings or get_settings()
    if settings.judge_mode == "mock":
        logger.info("judge_selected", mode="mock")
        return MockJudge()
    if rate_limiter is None:
        rate_limiter = JudgeRateLimiter(get_agent_settings().roles.judge.requests_per_minute)
    logger.info("judge_selected", mode="live", model=get_agent_settings().get_model("judge"))
    return LLMJudge(rate_limiter=rate_limiter)
