from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Slugs are single DNS labels; keep the pattern shared by registration and routing.
SLUG_PATTERN = r"^[a-z0-9-]{3,30}$"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "gympass"
    # "production" disables dev-mode checkout and credential logging.
    app_env: str = "development"
    log_level: str = "INFO"

    # Central registry of gyms, registration sessions and platform admins.
    registry_database_url: str = "sqlite+aiosqlite:///./data/registry.db"
    # Tenant storage backend: "sqlite" (file per gym) or "postgres" (schema per gym).
    tenant_storage_backend: str = "sqlite"
    tenant_data_dir: str = "./data/gyms"
    tenant_database_url: str | None = None
    # Seconds SQLite waits on a locked tenant file before failing.
    tenant_sqlite_busy_timeout_s: float = 30.0

    # Requests without header or tenant subdomain fall back to this gym.
    default_tenant_slug: str = "default"
    tenant_base_domain: str = "gympass.local"
    tenant_header: str = "X-Gym-Slug"
    tenant_protocol: str = "http"
    tenant_port: str = "4000"
    public_base_url: str = "http://localhost:4000"

    # Slug reservations expire lazily after this many minutes.
    reservation_ttl_minutes: int = 60
    reservation_sweep_interval_s: int = 300

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_id: str = ""

    # Transparent retries apply to infrastructure storage failures only.
    storage_retry_max_attempts: int = 3
    storage_retry_backoff_ms: int = 50

    admin_temp_password_length: int = 12
    usage_history_default_limit: int = 50

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_price_id)

    def tenant_url(self, slug: str) -> str:
        # Omit the port for https or standard ports.
        if self.tenant_protocol == "https" or self.tenant_port in ("", "443", "80"):
            port = ""
        else:
            port = f":{self.tenant_port}"
        return f"{self.tenant_protocol}://{slug}.{self.tenant_base_domain}{port}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
