from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SEED_PATH = Path(__file__).resolve().parent / "surveys" / "data" / "surveys.json"


class Settings(BaseSettings):
    """Application runtime settings loaded from environment/.env."""

    admin_host: str = Field(default="127.0.0.1", alias="ADMIN_HOST")
    admin_port: int = Field(default=8080, alias="ADMIN_PORT")
    admin_token: str = Field(default="", alias="ADMIN_TOKEN")
    public_base_url: str = Field(default="http://127.0.0.1:8080", alias="PUBLIC_BASE_URL")

    # Storage
    storage_backend: str = Field(default="", alias="STORAGE_BACKEND")
    blob_read_write_token: str = Field(default="", alias="BLOB_READ_WRITE_TOKEN")
    blob_api_url: str = Field(default="https://blob.vercel-storage.com", alias="BLOB_API_URL")
    local_storage_dir: Path = Field(default=Path("/tmp"), alias="LOCAL_STORAGE_DIR")
    surveys_key: str = Field(default="surveys.json", alias="SURVEYS_KEY")
    seed_path: Path = Field(default=DEFAULT_SEED_PATH, alias="SURVEYS_SEED_PATH")

    # Outbound mail; empty host means submissions are only logged
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_from: str = Field(default="", alias="SMTP_FROM")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        extra="ignore",
    )
