"""
Centralized configuration using pydantic-settings.

How it works:
- Reads environment variables automatically (e.g., POSTGRES_HOST env var → Settings.POSTGRES_HOST)
- Falls back to defaults defined here if env vars are not set
- Can also read from a .env file in the project root

Every module imports `settings` from here instead of hardcoding values.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── PostgreSQL (job record store) ───────────────────────────
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "bookings"
    POSTGRES_PASSWORD: str = "bookings"
    POSTGRES_DB: str = "bookings"

    # ── Redis (broker) ──────────────────────────────────────────
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_SOCKET_TIMEOUT: float = 1.0   # command timeout, keeps outages from hanging requests
    REDIS_CONNECT_TIMEOUT: float = 1.0
    QUEUE_NAME: str = "bookingjobs"     # prefix for every broker key

    # ── Job defaults ────────────────────────────────────────────
    DEFAULT_MAX_ATTEMPTS: int = 5
    DEFAULT_PRIORITY: int = 0                 # higher = promoted first
    DEFAULT_PROMOTION_WINDOW_MINUTES: int = 60

    # ── Dispatcher ──────────────────────────────────────────────
    IMMEDIATE_HORIZON_SECONDS: float = 3600.0  # fast path only for jobs due within this

    # ── Promoter ────────────────────────────────────────────────
    PROMOTER_INTERVAL_SECONDS: float = 60.0
    PROMOTER_STARTUP_DELAY_SECONDS: float = 5.0
    PROMOTION_BATCH_SIZE: int = 100
    PROMOTED_STALE_MINUTES: int = 60   # claimed this long ago and gone from the broker → lost by a worker

    # ── Retention ───────────────────────────────────────────────
    COMPLETED_RETENTION_DAYS: int = 7
    FAILED_RETENTION_DAYS: int = 90
    RETENTION_SWEEP_INTERVAL_SECONDS: float = 3600.0

    # ── Worker ──────────────────────────────────────────────────
    WORKER_POOL_SIZE: int = 5          # number of threads in the worker pool
    WORKER_POLL_INTERVAL: float = 1.0  # seconds the blocking pop waits per tick
    RETRY_BACKOFF_BASE: float = 2.0    # exponential backoff base (seconds)

    # ── App ─────────────────────────────────────────────────────
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    API_RUN_PROMOTER: bool = True      # also promote from the API process (safe alongside the worker)

    @property
    def database_url(self) -> str:
        """Connection string for the job record store (psycopg2 driver)."""
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton — import this everywhere
settings = Settings()
