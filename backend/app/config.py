from pydantic_settings import BaseSettings


def _split_csv(value: str) -> frozenset[str]:
    return frozenset(part.strip() for part in value.split(",") if part.strip())


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database / connection pool
    database_url: str = "sqlite+aiosqlite:///./molo_email.db"
    db_max_connections: int = 20
    db_idle_timeout_seconds: float = 30.0
    db_connection_timeout_seconds: float = 5.0
    db_statement_timeout_seconds: float = 30.0
    db_monitor_interval_seconds: float = 60.0

    # Email API rate limits (quotas are request counts, windows are milliseconds)
    email_rate_limit_general: int = 10
    email_rate_limit_auth: int = 5
    email_rate_limit_password_reset: int = 3
    email_rate_limit_window_ms: int = 60_000
    email_rate_limit_password_reset_window_ms: int = 900_000
    email_rate_limit_whitelist_ips: str = ""
    email_rate_limit_whitelist_api_keys: str = ""

    # SMTP transport
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_from_name: str = "MOLOCHAIN"
    smtp_reply_to: str = ""
    smtp_use_tls: bool = True

    # Admin console token (X-Admin-Token header). Empty disables admin routes.
    admin_token: str = ""

    # Frontend (CORS origin)
    frontend_url: str = "http://localhost:3000"

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def whitelist_ips(self) -> frozenset[str]:
        return _split_csv(self.email_rate_limit_whitelist_ips)

    @property
    def whitelist_api_keys(self) -> frozenset[str]:
        return _split_csv(self.email_rate_limit_whitelist_api_keys)


settings = Settings()
