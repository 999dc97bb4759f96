from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "CRM Store"
    app_env: str = "local"
    app_debug: bool = True
    api_base_url: str = "http://localhost:5000/api"
    api_token: str | None = None
    api_timeout_seconds: float = 15.0
    api_max_retries: int = 2
    api_retry_backoff_seconds: float = 0.5
    local_store_url: str = "sqlite:///./crm_local.db"
    leads_storage_key: str = "leads"
    competitors_staging_key: str = "crm-competitors"
    contacts_fetch_limit: int = 100
    bootstrap_on_startup: bool = False
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
