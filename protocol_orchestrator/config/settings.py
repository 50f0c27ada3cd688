"""Pydantic settings for Protocol Orchestrator configuration."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


class UnavailablePolicy(str, Enum):
    """How UNAVAILABLE reviewers count toward approval."""

    EXCLUDE = "exclude"  # Recorded, left out of the tally
    BLOCK = "block"  # Any UNAVAILABLE reviewer blocks approval


class TimeoutConfig(BaseModel):
    """Timeouts in seconds."""

    agent: float = 1800.0  # 30 min per BUILD attempt
    reviewer: float = 600.0  # 10 min per reviewer


class ConsultationSettings(BaseModel):
    """Consultation aggregation policy."""

    unavailable_policy: UnavailablePolicy = UnavailablePolicy.EXCLUDE
    min_responders: int = 1


class GateSettings(BaseModel):
    """Human gate behaviour."""

    interactive: bool = False  # Prompt on stdin instead of polling decision files
    poll_interval: float = 2.0


class SideEffectSettings(BaseModel):
    """Commit/push after a phase completes."""

    enabled: bool = True
    apply_on_unresolved: bool = False
    commit_message: str = "[{protocol}] {phase}: {project_id}"


class CommandConfig(BaseModel):
    """
    argv template for a subprocess collaborator.

    Placeholders: ``{prompt}``, ``{phase}``, ``{iteration}``, ``{model}``,
    ``{review_type}``, ``{artifact}``, ``{project_id}``.
    """

    command: list[str] = Field(default_factory=list)
    prompt_via_stdin: bool = False


class Settings(BaseSettings):
    """Main settings for Protocol Orchestrator."""

    model_config = SettingsConfigDict(
        env_prefix="PROTOCOL_ORCHESTRATOR_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # General
    debug: bool = False
    verbose: bool = False
    log_level: str = "INFO"

    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    consultation: ConsultationSettings = Field(default_factory=ConsultationSettings)
    gates: GateSettings = Field(default_factory=GateSettings)
    side_effects: SideEffectSettings = Field(default_factory=SideEffectSettings)

    # Collaborators
    agent: CommandConfig = Field(
        default_factory=lambda: CommandConfig(
            command=["claude", "-p", "{prompt}", "--dangerously-skip-permissions"]
        )
    )
    reviewer: CommandConfig = Field(
        default_factory=lambda: CommandConfig(
            command=["consult", "--model", "{model}", "--type", "{review_type}", "{artifact}"]
        )
    )

    # Paths
    state_dir: str = ".protocol_orchestrator"

    @property
    def side_effects_on_unresolved(self) -> bool:
        return self.side_effects.apply_on_unresolved


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_settings_from_yaml(yaml_path: Path) -> Settings:
    """Load settings from a YAML file."""
    with open(yaml_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    return Settings.model_validate(data or {})
