from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATPROXY_", case_sensitive=False)

    env: str = "dev"
    log_level: str = "INFO"

    # Upstream gateway defaults; the override store takes precedence when set.
    gateway_url: str = "http://127.0.0.1:19001"
    gateway_token: str = ""
    chat_path: str = "/v1/chat/completions"
    health_path: str = "/health"
    chat_mode: str = "enabled"
    default_model: str = "gateway:main"
    upstream_timeout_s: float = 30.0
    probe_timeout_s: float = 5.0

    # Session identity
    session_secret: str = ""
    session_cookie_name: str = "chatproxy_session"
    session_max_age_s: int = 7 * 24 * 3600
    admin_email: str = ""
    admin_password: str = ""

    # Rate limiting (fixed window)
    chat_rate_limit: int = Field(default=20, ge=1)
    chat_rate_window_s: float = Field(default=60.0, gt=0)
    login_rate_limit: int = Field(default=10, ge=1)
    login_rate_window_s: float = Field(default=300.0, gt=0)
    rate_limit_sweep_interval_s: float = Field(default=300.0, gt=0)

    logs_dir: Path = Path("logs")
    contracts_dir: Path = Path(__file__).resolve().parents[2] / "docs" / "contracts" / "v1"

    @property
    def is_production(self) -> bool:
        return self.env.strip().lower() in {"prod", "production"}


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
