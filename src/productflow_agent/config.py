"""Application configuration using Pydantic settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OpenAIConfig(BaseModel):
    """Configuration for the OpenAI-compatible chat completions endpoint."""

    api_key: str = Field(default_factory=lambda: "")
    base_url: Optional[str] = None
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_output_tokens: int = 4096
    timeout: float = 120.0
    # Gateways without json_schema support skip straight to the JSON-only retry.
    supports_json_schema: bool = True


class AgentLoopConfig(BaseModel):
    """Knobs for the plan/draft/review convergence loop."""

    strategy: str = "loop-v2"
    refine_strategy: str = "refine-v1"
    max_iterations: int = Field(default=3, ge=1, le=5)
    pass_score: int = Field(default=85, ge=0, le=100)
    plan_max_tokens: int = 1200
    draft_max_tokens: int = 4096
    review_max_tokens: int = 1500
    final_max_tokens: int = 4096
    change_analysis_max_tokens: int = 1600


class ContextConfig(BaseModel):
    """Caps that keep assembled context bounded regardless of project history."""

    input_chars: int = 4000
    conversation_messages: int = 8
    conversation_chars: int = 4000
    prior_output_excerpt_chars: int = 1200
    prior_outputs_total_chars: int = 6000
    artifact_limit: int = 24
    artifact_excerpt_chars: int = 600
    artifacts_total_chars: int = 6000
    asset_limit: int = 8
    asset_text_excerpt_chars: int = 1500
    assets_total_chars: int = 4000
    phase_excerpt_chars: int = 1200

    def total_budget(self) -> int:
        """Upper bound on the assembled context text, in characters."""

        return (
            self.input_chars
            + self.conversation_chars
            + self.prior_outputs_total_chars
            + self.artifacts_total_chars
            + self.assets_total_chars
        )


class DatabaseConfig(BaseModel):
    """Configuration for the SQLite database that stores runs and artifacts."""

    url: str = Field(default="sqlite:///productflow.db")
    echo: bool = False


class StorageConfig(BaseModel):
    """Where uploaded assets live and how they are addressed remotely."""

    root: Path = Field(default=Path(".productflow") / "uploads")
    public_base_url: Optional[str] = None
    image_inline_max_bytes: int = 2 * 1024 * 1024
    text_inline_max_bytes: int = 512 * 1024


class Settings(BaseSettings):
    """Central application settings."""

    model_config = SettingsConfigDict(
        env_prefix="PRODUCTFLOW_",
        env_nested_delimiter="__",
        env_file=(Path(".env"),),
        extra="ignore",
    )

    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    agent: AgentLoopConfig = Field(default_factory=AgentLoopConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Return settings as a dictionary with the API key redacted."""

        openai = self.openai.model_dump()
        if openai.get("api_key"):
            openai["api_key"] = "***"
        return {
            "openai": openai,
            "agent": self.agent.model_dump(),
            "context": self.context.model_dump(),
            "database": self.database.model_dump(),
            "storage": self.storage.model_dump(mode="json"),
        }


def load_settings(path: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    Build settings from the environment, optionally merged with a JSON file.

    Keys in the file mirror the nested sections (``openai``, ``agent``,
    ``context``, ``database``, ``storage``); keyword overrides win over both.
    """

    payload: Dict[str, Any] = {}
    if path is not None:
        with Path(path).expanduser().open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    payload.update(overrides)
    return Settings(**payload)


__all__ = [
    "AgentLoopConfig",
    "ContextConfig",
    "DatabaseConfig",
    "OpenAIConfig",
    "Settings",
    "StorageConfig",
    "load_settings",
]
