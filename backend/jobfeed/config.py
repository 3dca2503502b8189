from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/jobs.db"
    app_password: str = "changeme"
    admin_password: str = "changeme-admin"
    secret_key: str = "dev-secret-key-change-in-production"

    # Shared secret for the cron trigger (X-Scrape-Token or Bearer)
    scrape_secret: str = ""

    # In-process scheduler tick; the schedule itself decides skip vs run
    scrape_tick_minutes: int = 15

    # Schedule defaults (overridable through app_settings rows)
    scrape_enabled: bool = True
    scrape_interval_hours: int = 6
    scrape_start_time: str = "06:00"
    scrape_timezone: str = "Asia/Kolkata"
    scrape_lock_minutes: int = 20
    scrape_lookback_days: int = 10
    scrape_history_max_items: int = 100

    # Scraper settings
    scrape_timeout_seconds: float = 15.0
    scrape_max_items_per_source: int = 200
    scrape_duplicate_mode: str = "skip"  # "skip" or "update"

    # Bulk writer
    jobs_save_batch_size: int = 100
    jobs_save_retry_attempts: int = 3
    jobs_save_retry_delay_seconds: float = 0.3

    # PDF mirror
    pdf_cache_enabled: bool = True
    pdf_download_timeout_seconds: float = 25.0
    pdf_max_bytes: int = 20 * 1024 * 1024
    pdf_storage_bucket: str = "jobs-pdfs"
    pdf_storage_prefix: str = "jobs"

    # Supabase object storage
    supabase_url: str = ""
    supabase_service_key: str = ""
    storage_timeout_seconds: float = 30.0

    # Celery configuration
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
