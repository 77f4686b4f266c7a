import os
from dataclasses import dataclass

DEFAULT_DATABASE_URL = "postgresql://postgres@localhost/campaign_engine"


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip() not in {"0", "false", "False", "no", "NO", "off"}


@dataclass(frozen=True)
class Settings:
    database_url: str
    log_level: str
    env: str

    worker_enabled: bool
    poll_seconds: float
    batch_size: int
    per_org_limit: int
    worker_threads: int

    stuck_threshold_minutes: int
    stuck_check_seconds: float

    trigger_batch_size: int
    trigger_max_retries: int

    delivery_backend: str


def get_settings() -> Settings:
    """Read settings from the environment.

    Not cached: tests and alembic flip DATABASE_URL between calls.
    """
    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        env=os.getenv("ENV", "dev").lower(),
        # Disabled by default under pytest to keep tests deterministic.
        worker_enabled=(
            False
            if os.getenv("PYTEST_CURRENT_TEST")
            else _env_bool("CAMPAIGN_WORKER_ENABLED", True)
        ),
        poll_seconds=_env_float("CAMPAIGN_POLL_SECONDS", 60.0),
        batch_size=_env_int("CAMPAIGN_BATCH_SIZE", 200),
        per_org_limit=_env_int("CAMPAIGN_PER_ORG_LIMIT", 50),
        worker_threads=max(1, _env_int("CAMPAIGN_WORKER_THREADS", 4)),
        stuck_threshold_minutes=_env_int("CAMPAIGN_STUCK_THRESHOLD_MINUTES", 15),
        stuck_check_seconds=_env_float("CAMPAIGN_STUCK_CHECK_SECONDS", 300.0),
        trigger_batch_size=_env_int("CAMPAIGN_TRIGGER_BATCH_SIZE", 50),
        trigger_max_retries=_env_int("CAMPAIGN_TRIGGER_MAX_RETRIES", 10),
        delivery_backend=os.getenv("CAMPAIGN_DELIVERY_BACKEND", "log").strip().lower(),
    )
