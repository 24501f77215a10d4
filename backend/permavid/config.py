"""Configuration management"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Web Configuration
    api_port: int = 8000
    log_level: str = "INFO"

    # Run the queue scheduler inside the API process (needed for direct
    # cancellation of running downloads). Set false when running
    # `python -m permavid.queue_worker` as a separate service.
    run_worker_in_api: bool = True

    # Database
    database_url: str = "sqlite:///./data/permavid.db"

    # Data Directories
    # Used when the user has not configured a download directory in AppSettings.
    default_download_dir: Optional[str] = None

    # yt-dlp executable. Empty means "python -m yt_dlp" from the installed package.
    ytdlp_path: str = ""

    # Scheduler pacing
    busy_interval_seconds: float = 5.0
    idle_interval_seconds: float = 15.0
    cancel_check_interval_seconds: float = 2.0
    # Max readiness checks in flight during one poll pass
    poll_concurrency: int = 8

    # Providers
    filemoon_api_base: str = "https://api.filemoon.sx/api"
    files_vc_api_base: str = "https://api.files.vc"
    http_timeout_seconds: float = 30.0
    upload_timeout_seconds: float = 3600.0

    class Config:
        env_file = ".env"
        env_prefix = "PERMAVID_"
        case_sensitive = False


settings = Settings()
