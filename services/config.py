"""
Runtime configuration.

Values come from the environment (a local .env file is loaded first).
Settings are read once at process start and passed around explicitly,
so the worker and the API agree on the same values.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from services.errors import InvalidEnvironmentError


VALID_ENVS = ("development", "production", "test")
VALID_PROVIDERS = ("openai", "google")
VALID_PERFORMANCE = ("low", "medium", "high")


def _get_bool_env(key: str, default: str = "false") -> bool:
    return os.getenv(key, default).strip().lower() in ("1", "true", "yes", "y")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379/0"
    openai_api_key: str | None = None
    google_api_key: str | None = None
    app_env: str = "development"
    log_level: str | None = None

    # Worker / pipeline
    worker_concurrency: int = 20
    analysis_batch_size: int = 5
    analysis_provider: str = "openai"
    analysis_performance: str = "low"
    run_worker: bool = True
    seed_on_startup: bool = True

    cors_origin: str = "*"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    def validate(self) -> "Settings":
        problems = []
        if not self.database_url:
            problems.append("DATABASE_URL is required")
        if self.app_env not in VALID_ENVS:
            problems.append(f"APP_ENV must be one of {VALID_ENVS}")
        if self.analysis_provider not in VALID_PROVIDERS:
            problems.append(f"ANALYSIS_PROVIDER must be one of {VALID_PROVIDERS}")
        if self.analysis_performance not in VALID_PERFORMANCE:
            problems.append(f"ANALYSIS_PERFORMANCE must be one of {VALID_PERFORMANCE}")
        if self.worker_concurrency < 1:
            problems.append("WORKER_CONCURRENCY must be >= 1")
        if self.analysis_batch_size < 1:
            problems.append("ANALYSIS_BATCH_SIZE must be >= 1")
        if self.run_worker and self.analysis_provider == "openai" and not self.openai_api_key:
            problems.append("OPENAI_API_KEY is required when the worker uses openai")
        if self.run_worker and self.analysis_provider == "google" and not self.google_api_key:
            problems.append("GOOGLE_API_KEY is required when the worker uses google")

        if problems:
            raise InvalidEnvironmentError(
                {"problems": problems, "message": "Invalid environment: " + "; ".join(problems)}
            )
        return self


def load_settings() -> Settings:
    load_dotenv()

    return Settings(
        database_url=os.getenv("DATABASE_URL", ""),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        google_api_key=os.getenv("GOOGLE_API_KEY"),
        app_env=os.getenv("APP_ENV", "development").strip().lower(),
        log_level=os.getenv("LOG_LEVEL"),
        worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "20")),
        analysis_batch_size=int(os.getenv("ANALYSIS_BATCH_SIZE", "5")),
        analysis_provider=os.getenv("ANALYSIS_PROVIDER", "openai").strip().lower(),
        analysis_performance=os.getenv("ANALYSIS_PERFORMANCE", "low").strip().lower(),
        run_worker=_get_bool_env("RUN_WORKER", "true"),
        seed_on_startup=_get_bool_env("SEED_ON_STARTUP", "true"),
        cors_origin=os.getenv("CORS_ORIGIN", "*"),
    )
