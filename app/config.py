"""
Configuration module for GymDesk.

Uses Pydantic Settings to load environment variables from the .env file.
Flask session settings are still read straight from the environment in
:func:`app.create_app`.
"""

from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        supabase_url: Project URL of the hosted backend.
        supabase_anon_key: Public key used for member/staff sessions.
        supabase_service_role_key: Privileged key used for invites and batch jobs.
        supabase_jwt_secret: Secret used to verify bearer access tokens.
        gemini_model: Gemini model identifier for chat and tool calling.
        embedding_model: Gemini model identifier for knowledge base embeddings.
        resend_api_key: Transactional e-mail provider key.
        notification_override_recipient: Testing-mode recipient for every e-mail.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Hosted backend
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_anon_key: str = Field(default="", alias="SUPABASE_ANON_KEY")
    supabase_service_role_key: str = Field(default="", alias="SUPABASE_SERVICE_ROLE_KEY")
    supabase_jwt_secret: str = Field(default="", alias="SUPABASE_JWT_SECRET")

    # Accepts either GOOGLE_API_KEY or GEMINI_API_KEY
    google_api_key: str = Field(default="", alias="GOOGLE_API_KEY")
    gemini_api_key: str = Field(default="", alias="GEMINI_API_KEY")

    gemini_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")
    embedding_model: str = Field(default="gemini-embedding-001", alias="EMBEDDING_MODEL")
    embedding_dimensions: int = Field(
        default=1536,
        alias="EMBEDDING_DIMENSIONS",
        description="Must match the vector column of knowledge_base.embedding",
    )

    # Knowledge base search defaults
    kb_match_count: int = Field(default=3, alias="KB_MATCH_COUNT")
    kb_similarity_threshold: float = Field(default=0.5, alias="KB_SIMILARITY_THRESHOLD")

    # E-mail
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_api_url: str = Field(default="https://api.resend.com/emails", alias="RESEND_API_URL")
    notification_from: str = Field(default="onboarding@resend.dev", alias="NOTIFICATION_FROM")
    notification_override_recipient: Optional[str] = Field(
        default=None, alias="NOTIFICATION_OVERRIDE_RECIPIENT"
    )
    notification_timeout_seconds: float = Field(default=15.0, alias="NOTIFICATION_TIMEOUT_SECONDS")

    # Assistant loop
    max_retries: int = Field(default=3, alias="ASSISTANT_MAX_RETRIES")
    base_backoff_seconds: float = Field(default=1.0, alias="ASSISTANT_BACKOFF_SECONDS")
    max_tool_rounds: int = Field(default=6, alias="ASSISTANT_MAX_TOOL_ROUNDS")
    memory_token_threshold: int = Field(default=12_000, alias="ASSISTANT_MEMORY_TOKENS")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
    )

    @property
    def api_key(self) -> str:
        """Get the Gemini API key from either source."""
        return self.google_api_key or self.gemini_api_key

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and (self.supabase_anon_key or self.supabase_service_role_key))

    @field_validator("google_api_key", "gemini_api_key", "resend_api_key", mode="after")
    @classmethod
    def reject_placeholder(cls, v: str) -> str:
        """Ensure API keys are not template placeholders."""
        if v in {"your-api-key-here", "changeme"}:
            raise ValueError(
                "API key placeholder detected. Set the real key in the .env file."
            )
        return v

    @field_validator("notification_override_recipient", mode="before")
    @classmethod
    def blank_recipient_is_none(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str) and not v.strip():
            return None
        return v
