"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Cyclelink"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Transports ---
    radio_enabled: bool = True
    ble_enabled: bool = True

    # --- Telemetry policy ---
    telemetry_config_path: str | None = None  # defaults to the bundled telemetry_config.yaml
    default_session_id: str | None = None

    model_config = {"env_prefix": "CYCLELINK_", "env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
