"""Application configuration using pydantic-settings.

Loads settings from environment variables and .env file.
Judge / scorer / harness behavior (models, timeouts, windows) is loaded from agents.toml.
Per-agent gate and intervention policy lives in the database (see src.evals.policy).

Priority: CLI args > Environment variables (.env) > agents.toml > hardcoded defaults
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).parent.parent


# ---------------------------------------------------------------------------
# Settings from agents.toml
# ---------------------------------------------------------------------------


class RoleConfig(BaseModel):
    """Base configuration for a single LLM role (judge, corrector, ...)."""

    model: str | None = None
    temperature: float | None = None
    groq_model: str = ""     # Role-specific Groq model override
    ollama_model: str = ""   # Role-specific Ollama model override


class JudgeConfig(RoleConfig):
    temperature: float = 0.0
    max_tokens: int = 1024
    timeout_seconds: float = 30.0
    double_check: bool = False
    requests_per_minute: int = 120


class CorrectorConfig(RoleConfig):
    temperature: float = 0.3
    max_tokens: int = 512
    timeout_seconds: float = 5.0


class IdeasConfig(RoleConfig):
    temperature: float = 0.0
    max_tokens: int = 2048


class RolesTable(BaseModel):
    """The [roles] table from agents.toml."""

    judge: JudgeConfig = Field(default_factory=JudgeConfig)
    corrector: CorrectorConfig = Field(default_factory=CorrectorConfig)
    ideas: IdeasConfig = Field(default_factory=IdeasConfig)


class DefaultsTable(BaseModel):
    """The [defaults] table from agents.toml."""

    model: str = "anthropic/claude-3-haiku"
    timeout: int = 60
    min_response_length: int = 2


class ScoringTable(BaseModel):
    """The [scoring] table: sampling sizes and default windows."""

    max_sample_size: int = Field(default=20, ge=1)
    max_pairs: int = Field(default=10, ge=1)
    first_n: int = 10
    last_n: int = 100
    recent_days: float = 7.0
    historical_days: float = 30.0


class HarnessTable(BaseModel):
    """The [harness] table."""

    threshold: float = Field(default=5.0, ge=0, le=9)
    regression_delta: float = Field(default=1.0, ge=0)
    max_concurrency: int = Field(default=4, ge=1)


class ProviderConfig(BaseModel):
    """Configuration for a single fallback provider."""

    enabled: bool = False
    default_model: str = ""
    base_url: str = ""


class ProvidersTable(BaseModel):
    """The [providers] table from agents.toml."""

    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    ollama: ProviderConfig = Field(default_factory=ProviderConfig)


class AgentSettings(BaseModel):
    """Configuration loaded from agents.toml."""

    defaults: DefaultsTable = Field(default_factory=DefaultsTable)
    roles: RolesTable = Field(default_factory=RolesTable)
    scoring: ScoringTable = Field(default_factory=ScoringTable)
    harness: HarnessTable = Field(default_factory=HarnessTable)
    providers: ProvidersTable = Field(default_factory=ProvidersTable)

    def get_role_config(self, role: str) -> RoleConfig:
        """Get the config for a specific LLM role."""
        return getattr(self.roles, role, RoleConfig())

    def get_model(self, role: str) -> str:
        """Get the resolved model for a role (role-specific > defaults)."""
        return self.get_role_config(role).model or self.defaults.model

    def get_temperature(self, role: str) -> float:
        role_cfg = self.get_role_config(role)
        if role_cfg.temperature is not None:
            return role_cfg.temperature
        return 0.0

    def get_groq_model(self, role: str) -> str:
        return self.get_role_config(role).groq_model or self.providers.groq.default_model

    def get_ollama_model(self, role: str) -> str:
        return self.get_role_config(role).ollama_model or self.providers.ollama.default_model


_AGENT_SETTINGS_CACHE: AgentSettings | None = None


def load_agent_settings(toml_path: Path) -> AgentSettings:
    """Parse an agents.toml file. Missing file yields defaults."""
    if not toml_path.exists():
        return AgentSettings()
    with open(toml_path, "rb") as f:
        data = tomllib.load(f)
    return AgentSettings.model_validate(data)


def get_agent_settings() -> AgentSettings:
    """Load and cache agent settings from agents.toml."""
    global _AGENT_SETTINGS_CACHE
    if _AGENT_SETTINGS_CACHE is None:
        _AGENT_SETTINGS_CACHE = load_agent_settings(PROJECT_ROOT / "agents.toml")
    return _AGENT_SETTINGS_CACHE


# ---------------------------------------------------------------------------
# Environment settings from .env (API keys, paths, env-var overrides)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API keys (empty is fine when running with the mock judge)
    openrouter_api_key: str = ""
    groq_api_key: str = ""

    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Storage
    database_url: str = "data/evaluation.db"

    # Declarative data
    propositions_dir: Path = PROJECT_ROOT / "propositions"
    baselines_dir: Path = PROJECT_ROOT / "baselines"
    nudges_path: Path = PROJECT_ROOT / "nudges.toml"

    # Judge selection: "live" (LLM) or "mock" (deterministic, for CI)
    judge_mode: str = "live"

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
