from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from astrometry_bot.models import PollingConfig, RetryBudget


class Settings(BaseSettings):
    """Bot settings, read from the environment or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    token: str
    astrometry_key: str
    api_url: str = "http://nova.astrometry.net/api"
    port: int = 8080

    results_url: str = "http://nova.astrometry.net"
    telegram_api_url: str = "https://api.telegram.org"
    download_dir: Path = Path("/tmp")

    rate_limit_seconds: float = 60.0
    max_file_size: int = 10 * 1024 * 1024

    submission_max_attempts: int = 30
    submission_delay: float = 5.0
    job_max_attempts: int = 30
    job_delay: float = 15.0
    request_timeout: float = 30.0

    log_level: str = "INFO"

    def polling_config(self) -> PollingConfig:
        return PollingConfig(
            submission=RetryBudget(
                max_attempts=self.submission_max_attempts, delay=self.submission_delay
            ),
            job=RetryBudget(max_attempts=self.job_max_attempts, delay=self.job_delay),
            request_timeout=self.request_timeout,
        )
