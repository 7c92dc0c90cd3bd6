from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env")
load_dotenv(ROOT_DIR / "ax2_studio" / ".env")


def _split_origins(raw: str) -> tuple[str, ...]:
    return tuple(origin.strip() for origin in raw.split(",") if origin.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str = "AX2 Studio API"
    app_version: str = "0.1.0"
    allowed_origins: tuple[str, ...] = _split_origins(
        os.getenv(
            "AX2_ALLOWED_ORIGIN",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:8080",
        )
    )
    hmac_secret: str = os.getenv("AX2_HMAC_SECRET", "ax2-dev-secret")
    data_dir: Path = Path(os.getenv("AX2_DATA_DIR", str(ROOT_DIR / "storage")))
    ledger_backend: str = os.getenv("AX2_LEDGER_BACKEND", "file")
    log_level: str = os.getenv("AX2_LOG_LEVEL", "INFO")

    welcome_credits: int = int(os.getenv("AX2_WELCOME_CREDITS", "100"))
    free_trial_credits: int = int(os.getenv("AX2_FREE_TRIAL_CREDITS", "100"))
    free_trial_max_duration: int = int(os.getenv("AX2_FREE_TRIAL_MAX_DURATION", "600"))
    free_trial_max_languages: int = int(os.getenv("AX2_FREE_TRIAL_MAX_LANGUAGES", "1"))
    # per_language | per_minute
    partial_refund_policy: str = os.getenv("AX2_PARTIAL_REFUND_POLICY", "per_language")

    retention_days: int = int(os.getenv("AX2_RETENTION_DAYS", "7"))
    sweep_interval_seconds: int = int(os.getenv("AX2_SWEEP_INTERVAL", "3600"))

    step_timeout_seconds: float = float(os.getenv("AX2_STEP_TIMEOUT", "300"))
    save_retry_backoff_seconds: float = float(os.getenv("AX2_SAVE_RETRY_BACKOFF", "0.5"))
    blob_retry_backoff_seconds: float = float(os.getenv("AX2_BLOB_RETRY_BACKOFF", "0.5"))
    worker_threads: int = int(os.getenv("AX2_WORKER_THREADS", "4"))

    max_jobs_per_minute: int = int(os.getenv("AX2_RATE_LIMIT", "6"))


settings = Settings()
