"""Runtime settings loaded from environment variables (and an optional .env)."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    home: Path = Field(default=Path(__file__).parent, validation_alias="PETITION_HOME")
    data_dir: Path | None = Field(default=None, validation_alias="PETITION_DATA_DIR")
    database_url: str = Field(default="", validation_alias="DATABASE_URL")

    llm_provider: str = Field(default="anthropic", validation_alias="LLM_PROVIDER")
    llm_model: str = Field(default="", validation_alias="LLM_MODEL")
    anthropic_api_key: str = Field(default="", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field(default="", validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="", validation_alias="OPENAI_BASE_URL")
    llm_max_tokens: int = Field(default=4096, validation_alias="LLM_MAX_TOKENS")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    max_import_rows: int = Field(default=50, gt=0, validation_alias="MAX_IMPORT_ROWS")
    max_verify_files: int = Field(default=10, gt=0, validation_alias="MAX_VERIFY_FILES")
    min_document_chars: int = Field(default=50, ge=0, validation_alias="MIN_DOCUMENT_CHARS")
    max_url_chars: int = Field(default=30000, gt=0, validation_alias="MAX_URL_CHARS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def db_path(self) -> Path:
        return (self.data_dir or self.home / "data") / "petition.db"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
