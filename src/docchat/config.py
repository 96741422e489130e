"""Configuration management."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Generation endpoint
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    generation_timeout_seconds: float = 120.0

    # Context window
    context_retrieval_limit: int = 20
    context_prompt_limit: int = 10
    title_max_length: int = 50

    # Attachments
    max_attachment_bytes: int = 10 * 1024 * 1024
    extraction_timeout_seconds: float = 10.0
    upload_dir: str = "uploads"
    public_base_url: str = "http://localhost:8000"

    # Identity
    jwt_secret: str = "dev-jwt-secret"
    jwt_algorithm: str = "HS256"
    webhook_secret: str = "dev-secret"

    # Request limits
    rate_limit: int = 50
    rate_limit_window_seconds: int = 60
    gate_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    """Returns the process-wide settings instance"""
    return Settings()
