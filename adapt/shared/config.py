"""
Configuration management for ADAPT.
Loads from config/adapt.yaml and environment variables.
"""

import os
from pathlib import Path
from typing import Optional, Dict, Any
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class LLMConfig(BaseSettings):
    """Text-generation provider configuration."""
    provider: str = Field(default="openai")  # openai, anthropic
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    # OpenAI-compatible gateways (e.g. a hosted assistant endpoint)
    base_url: Optional[str] = Field(default=None, alias="LLM_BASE_URL")
    default_model: str = Field(default="gpt-4o-mini")
    grading_model: str = Field(default="gpt-4o-mini")
    temperature: float = Field(default=0.3)
    max_tokens: int = Field(default=2000)
    timeout_seconds: float = Field(default=90.0, alias="LLM_TIMEOUT_SECONDS")
    max_retries: int = Field(default=1)

    model_config = SettingsConfigDict(env_prefix="LLM_", extra="ignore", populate_by_name=True)

    @field_validator("max_retries")
    @classmethod
    def cap_retries(cls, value: int) -> int:
        # Worst-case latency is bounded by (1 + retries) * timeout
        return max(0, min(value, 1))


class StorageConfig(BaseSettings):
    """SQLite storage locations."""
    db_path: Path = Field(default=Path("data/adapt.sqlite"), alias="STORAGE_DB_PATH")
    sessions_path: Path = Field(default=Path("data/roleplay_sessions.sqlite"))

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore", populate_by_name=True)


class GroundingConfig(BaseSettings):
    """Knowledge grounding budget."""
    max_fragments: int = Field(default=5)
    max_context_tokens: int = Field(default=2000)
    preview_chars: int = Field(default=100)

    model_config = SettingsConfigDict(env_prefix="GROUNDING_", extra="ignore")


class SessionConfig(BaseSettings):
    """Roleplay session configuration."""
    idle_timeout_minutes: int = Field(default=30, alias="SESSION_IDLE_TIMEOUT_MINUTES")

    model_config = SettingsConfigDict(env_prefix="SESSION_", extra="ignore", populate_by_name=True)


class MasteryConfig(BaseSettings):
    """Mastery analytics configuration."""
    problem_topic_min_attempts: int = Field(default=3)

    model_config = SettingsConfigDict(env_prefix="MASTERY_", extra="ignore")


class ApiConfig(BaseSettings):
    """API server configuration."""
    host: str = Field(default="0.0.0.0", alias="API_HOST")
    port: int = Field(default=8000, alias="API_PORT")
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    rate_limit_requests_per_minute: int = Field(default=60, alias="API_RATE_LIMIT_RPM")

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore", populate_by_name=True)


class AdaptSettings(BaseSettings):
    """Main ADAPT configuration."""
    env: str = Field(default="dev", alias="ADAPT_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[Path] = Field(default=Path("logs/adapt.log"), alias="LOG_FILE")

    # Sub-configurations
    api: ApiConfig = Field(default_factory=ApiConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    grounding: GroundingConfig = Field(default_factory=GroundingConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    mastery: MasteryConfig = Field(default_factory=MasteryConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        populate_by_name=True
    )

    @classmethod
    def load_from_yaml(cls, config_path: Optional[Path] = None) -> "AdaptSettings":
        """Load settings from YAML file and merge with environment variables."""
        if config_path is None:
            config_path = Path("config/adapt.yaml")

        config_dict: Dict[str, Any] = {}

        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}
                config_dict = yaml_data.get("adapt", {})

        # Flatten api.rate_limit.requests_per_minute if present
        if "api" in config_dict and isinstance(config_dict["api"], dict):
            api_cfg = dict(config_dict["api"])
            rate_limit = api_cfg.pop("rate_limit", None)
            if isinstance(rate_limit, dict) and "requests_per_minute" in rate_limit:
                api_cfg["rate_limit_requests_per_minute"] = rate_limit["requests_per_minute"]
            config_dict["api"] = api_cfg

        for name, section_cls in SECTIONS.items():
            section = dict(config_dict.get(name) or {})
            # Environment variables win over YAML values
            for field_name, field in section_cls.model_fields.items():
                env_name = field.alias or f"{section_cls.model_config['env_prefix']}{field_name}"
                if env_name.upper() in os.environ:
                    section.pop(field_name, None)
            config_dict[name] = section_cls(**section)

        return cls(**config_dict)


SECTIONS = {
    "api": ApiConfig,
    "llm": LLMConfig,
    "storage": StorageConfig,
    "grounding": GroundingConfig,
    "session": SessionConfig,
    "mastery": MasteryConfig,
}

# Global settings instance
_settings: Optional[AdaptSettings] = None


def get_settings() -> AdaptSettings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = AdaptSettings.load_from_yaml()
    return _settings


# Alias for convenience
settings = get_settings()
