from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

env_file = Path.cwd() / ".env"

if env_file.exists():
    load_dotenv(dotenv_path=env_file)


class TesterSettings(BaseSettings):
    """Runtime settings, read from ``CRUDBENCH_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_file=env_file, env_prefix="CRUDBENCH_", extra="ignore"
    )

    backend_url: str = Field(default="http://127.0.0.1:8040")
    socket_path: Path | None = Field(default=None)
    request_timeout: float = Field(default=30.0)

    # lifecycle monitor
    status_interval: float = Field(default=5.0)
    metrics_interval: float = Field(default=3.0)
    status_timeout: float = Field(default=5.0)
    start_timeout: float = Field(default=30.0)
    control_timeout: float = Field(default=30.0)
    metrics_throttle: float = Field(default=0.1)
    log_limit: int = Field(default=50)

    # tester session
    config_timeout: float = Field(default=10.0)
    default_api_url: str = Field(default="http://localhost:8000/api")


conf = TesterSettings()
