"""Runtime configuration for the assessment engine."""

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    database_url: str = Field("sqlite:///./exam_engine.db", alias="EXAM_ENGINE_DATABASE_URL")
    database_echo: bool = Field(False, alias="EXAM_ENGINE_DATABASE_ECHO")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field("INFO", alias="EXAM_ENGINE_LOG_LEVEL")
    # Used when an assessment is authored without an explicit duration
    default_duration_minutes: int = Field(90, alias="EXAM_ENGINE_DEFAULT_DURATION_MINUTES", ge=1, le=480)
    create_tables_on_startup: bool = Field(True, alias="EXAM_ENGINE_CREATE_TABLES")


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid exam engine configuration: {exc}") from exc
