"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Upload backend ---
    upload_backend: str = "api"  # api | r2
    api_base_url: str = "http://localhost:12345"
    api_token: str = ""  # bearer token for PUT {api_base_url}/raw/{path}
    upload_timeout_seconds: float = 30.0

    # --- Cloudflare R2 ---
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "healthsync-raw"

    # --- Local state ---
    state_file: str = "healthsync_state.json"
    apple_health_export_path: str = "apple_health_export/export.xml"
    collector_config_path: str = ""  # empty = bundled collector_config.yaml
    local_timezone: str = ""  # IANA name; empty = host zone

    # --- Device descriptor (defaults describe the host) ---
    device_name: str = ""
    device_model: str = ""
    device_system_version: str = ""

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
