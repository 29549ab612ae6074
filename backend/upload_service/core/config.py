from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    upload_dir: Path = Field(Path("uploads"), alias="UPLOAD_DIR")

    # Wipes every stored file before each upload. Concurrent uploads can lose
    # files that are still being written, so keep this off unless the
    # directory is meant to hold a single upload at a time.
    upload_clear_before_write: bool = Field(False, alias="UPLOAD_CLEAR_BEFORE_WRITE")

    cors_origins: str | None = Field(None, alias="CORS_ORIGINS")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _normalize_cors_origins(cls, v: object) -> object:
        if v is None:
            return None
        if isinstance(v, str):
            origins = v.strip()
            return origins or None
        return v

    @property
    def cors_origin_list(self) -> list[str]:
        if not self.cors_origins:
            return []
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
