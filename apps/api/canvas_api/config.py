from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional
import os

from pydantic_settings import BaseSettings


ROOT_DIR = Path(__file__).resolve().parents[3]



def _default_data_dir() -> Path:
    if (
        os.getenv("VERCEL")
        or os.getenv("VERCEL_ENV")
        or os.getenv("VERCEL_URL")
        or os.getenv("AWS_LAMBDA_FUNCTION_NAME")
    ):
        return Path("/tmp/canvas/data")
    return ROOT_DIR / "data"


class Settings(BaseSettings):
    app_name: str = "Business Model Canvas API"
    environment: str = "development"
    log_level: str = "INFO"

    data_dir: Path = _default_data_dir()
    ledger_backend: Literal["file", "sql"] = "file"
    ledger_path: Optional[Path] = None
    db_path: Optional[Path] = None
    token_allowance: int = 50000
    ledger_history_limit: int = 20
    ledger_lock_timeout_seconds: float = 30.0

    llm_provider: str = "mock"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 60.0

    canvas_primary_max_output_tokens: int = 2500
    canvas_compact_max_output_tokens: int = 1500
    canvas_temperature: float = 0.4
    case_study_max_output_tokens: int = 5000
    case_study_temperature: float = 0.7

    class Config:
        env_file = (
            ".env",
            str(ROOT_DIR / ".env"),
            str(ROOT_DIR / "apps" / "api" / ".env"),
        )
        env_prefix = ""




def _clean_openai_key(value: str) -> str:
    cleaned = value.strip().strip("\"").strip("'")
    if cleaned.lower().startswith("bearer "):
        cleaned = cleaned.split(" ", 1)[1].strip()
    return cleaned


def is_production() -> bool:
    return settings.environment.lower().strip() in {"production", "prod"}


settings = Settings()
if settings.openai_api_key:
    settings.openai_api_key = _clean_openai_key(settings.openai_api_key)

if settings.token_allowance < 0:
    settings.token_allowance = 0

try:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
except OSError:
    settings.data_dir = Path("/tmp/canvas/data")
    settings.data_dir.mkdir(parents=True, exist_ok=True)

if settings.ledger_path is None:
    settings.ledger_path = settings.data_dir / "token-usage.json"
if settings.db_path is None:
    settings.db_path = settings.data_dir / "ledger.db"
