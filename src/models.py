"""LLM factory for the judge, corrector and idea-enumeration roles.

Primary: OpenRouter (any OpenAI-compatible model id, Claude Haiku by default)
Fallback 1: Groq (cloud, fast inference)
Fallback 2: Ollama (local)

Models, temperatures and fallback providers are configured in agents.toml.

Each provider is piped with a response-length validator so that empty or
truncated responses cascade to the next provider via with_fallbacks().
"""

from __future__ import annotations

import structlog
from langchain_core.runnables import Runnable, RunnableLambda
from langchain_openai import ChatOpenAI

from src.config import AgentSettings, Settings, get_agent_settings, get_settings

logger = structlog.get_logger(__name__)


def _make_length_validator(min_chars: int) -> RunnableLambda:
    """Create a Runnable that raises if the LLM response is too short."""

    def _validate(response):  # noqa: ANN001
        content = response.content if response.content else ""
        if len(content.strip()) < min_chars:
            raise ValueError(
                f"Response too short ({len(content.strip())} chars, minimum {min_chars})."
            )
        return response

    return RunnableLambda(_validate)


def _fallback_providers(
    role: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
    agent_settings: AgentSettings,
    settings: Settings,
) -> list[Runnable]:
    fallbacks: list[Runnable] = []

    if agent_settings.providers.groq.enabled and settings.groq_api_key:
        from langchain_groq import ChatGroq

        groq_model = agent_settings.get_groq_model(role)
        groq_kwargs = dict(
            model=groq_model,
            temperature=temperature,
            api_key=settings.groq_api_key,
            timeout=timeout,
        )
        if max_tokens is not None:
            groq_kwargs["max_tokens"] = max_tokens
        fallbacks.append(ChatGroq(**groq_kwargs))
        logger.debug("groq_fallback_configured", role=role, model=groq_model)

    if agent_settings.providers.ollama.enabled:
        from langchain_ollama import ChatOllama

        ollama_model = agent_settings.get_ollama_model(role)
        ollama_kwargs = dict(
            model=ollama_model,
            temperature=temperature,
            base_url=agent_settings.providers.ollama.base_url or "http://localhost:11434",
        )
        if max_tokens is not None:
            ollama_kwargs["num_predict"] = max_tokens
        fallbacks.append(ChatOllama(**ollama_kwargs))
        logger.debug("ollama_fallback_configured", role=role, model=ollama_model)

    return fallbacks


def create_llm(
    role: str,
    temperature: float | None = None,
    max_tokens: int | None = None,
    settings: Settings | None = None,
) -> Runnable:
    """Create the chat model for an evaluation role.

    Args:
        role: Role identifier under ``[roles]`` in agents.toml
            ("judge", "corrector", "ideas").
        temperature: Sampling temperature. None = read from agents.toml.
        max_tokens: Maximum tokens in response.
        settings: Optional Settings instance; loads from env if not provided.

    Returns:
        A Runnable: the validated primary model, with fallbacks when enabled.
    """
    if settings is None:
        settings = get_settings()

    agent_settings = get_agent_settings()
    model = agent_settings.get_model(role)
    timeout = agent_settings.defaults.timeout
    validator = _make_length_validator(agent_settings.defaults.min_response_length)

    if temperature is None:
        temperature = agent_settings.get_temperature(role)

    kwargs = dict(
        model=model,
        temperature=temperature,
        openai_api_key=settings.openrouter_api_key,
        openai_api_base=settings.openrouter_base_url,
        timeout=timeout,
    )
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens

    primary: Runnable = ChatOpenAI(**kwargs) | validator
    fallbacks = [
        llm | validator
        for llm in _fallback_providers(
            role, temperature, max_tokens, timeout, agent_settings, settings
        )
    ]
    if fallbacks:
        return primary.with_fallbacks(fallbacks)
    return primary
