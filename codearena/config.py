from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List
import os

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SECRET_KEY = "your-secret-key-change-in-production"


def _env_flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "") or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    db_url: str = field(default_factory=lambda: os.getenv("CODEARENA_DB_URL") or f"sqlite:///{BASE_DIR / 'codearena.db'}")
    firebase_project_id: str = field(default_factory=lambda: os.getenv("FIREBASE_PROJECT_ID", ""))
    storage_backend: str = field(default_factory=lambda: os.getenv("CODEARENA_STORAGE_BACKEND", "local").lower())
    storage_bucket: str = field(default_factory=lambda: os.getenv("CODEARENA_STORAGE_BUCKET", "codearena-testcases"))
    data_dir: Path = field(default_factory=lambda: Path(os.getenv("CODEARENA_DATA_DIR") or BASE_DIR / "data"))
    s3_endpoint_url: str = field(default_factory=lambda: os.getenv("S3_ENDPOINT_URL", ""))
    secret_key: str = field(default_factory=lambda: os.getenv("SECRET_KEY", DEFAULT_SECRET_KEY))
    access_token_expire_minutes: int = field(default_factory=lambda: int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30")))
    admin_uids: List[str] = field(default_factory=lambda: _env_list("CODEARENA_ADMIN_UIDS"))
    seed_dev_users: bool = field(default_factory=lambda: _env_flag("CODEARENA_SEED_DEV_USERS"))
    log_level: str = field(default_factory=lambda: os.getenv("CODEARENA_LOG_LEVEL", "INFO").upper())


@lru_cache
def get_settings() -> Settings:
    return Settings()
