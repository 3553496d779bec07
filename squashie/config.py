"""
Configuration for Squashie Conflict Service
===========================================

Environment variables:
- LLM_MODE: none|openrouter|openai (default: none)
- OPENROUTER_API_KEY: API key for OpenRouter
- OPENROUTER_MODEL: Model to use (default: openai/gpt-4o-mini)
- OPENAI_API_KEY: API key for OpenAI
- OPENAI_MODEL: Model to use (default: gpt-4o-mini)
- LLM_TIMEOUT: Seconds before a mediation call falls back (default: 20)
- CONFLICT_EXPIRY_HOURS: Idle hours before a conflict is abandoned (default: 168)
- QUICK_RESOLUTION_MINUTES: Bonus window for fast resolutions (default: 60)
- NOTIFICATION_QUEUE_SIZE: Max pending notifications per user (default: 50)
"""

from typing import Optional, List
from pydantic_settings import BaseSettings
from functools import lru_cache

from .schemas import LLMMode


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # LLM Configuration
    llm_mode: LLMMode = LLMMode.NONE

    # OpenRouter
    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "openai/gpt-4o-mini"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # OpenAI (or any OpenAI-compatible endpoint)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"

    # Timeouts (seconds) and sampling
    llm_timeout: int = 20
    llm_temperature: float = 0.7

    # Lifecycle
    conflict_expiry_hours: int = 168
    quick_resolution_minutes: int = 60

    # Notifications / rewards
    notification_queue_size: int = 50
    rewards_catalog_path: Optional[str] = None  # defaults to bundled data/rewards.yaml

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def validate_llm_config(self) -> List[str]:
        """Validate LLM configuration, return list of warnings"""
        warnings = []

        if self.llm_mode == LLMMode.OPENROUTER:
            if not self.openrouter_api_key:
                warnings.append("LLM_MODE=openrouter but OPENROUTER_API_KEY not set")

        elif self.llm_mode == LLMMode.OPENAI:
            if not self.openai_api_key:
                warnings.append("LLM_MODE=openai but OPENAI_API_KEY not set")

        if self.llm_mode == LLMMode.NONE:
            warnings.append("LLM_MODE=none, mediation will use offline fallback text")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Convenience function
def get_llm_mode() -> LLMMode:
    """Get current LLM mode"""
    return get_settings().llm_mode
