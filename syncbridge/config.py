"""Application configuration"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Database (durable key-value store lives here)
    database_url: str = "sqlite:///./syncbridge.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When enabled, the admin API is protected by HTTP Basic auth.
    # /health and the inbound webhook (which carries its own secret) stay open.
    auth_enabled: bool = False
    auth_username: str | None = None
    auth_password: str | None = None

    # Local instance (the tracker whose events drive the engine)
    local_base_url: str = ""
    local_email: str = ""
    local_api_token: str = ""
    # Shown in comment provenance headers. Derived from local_base_url when empty.
    local_site_name: str | None = None

    # Outbound HTTP
    http_timeout_seconds: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_seconds: float = 30.0
    rate_limit_retry_delay_seconds: float = 60.0
    # 429 waits don't count against retry_max_attempts; this bounds them separately.
    max_rate_limit_retries: int = 5

    # Loop prevention
    sync_flag_ttl_seconds: int = 30
    recent_creation_window_seconds: float = 3.0

    # Attachments
    max_attachment_size_bytes: int = 10 * 1024 * 1024
    attachment_lease_ttl_seconds: int = 120
    attachment_lease_poll_attempts: int = 10
    attachment_lease_poll_interval_seconds: float = 1.0

    # Bounded storage / recursion
    max_audit_log_entries: int = 50
    max_error_entries: int = 50
    max_pending_link_attempts: int = 10
    max_parent_depth: int = 5

    # Sweeps
    scheduled_sync_enabled: bool = True
    scheduled_sync_interval_minutes: int = 60
    scheduled_sync_time_budget_seconds: float = 240.0
    bulk_sync_time_budget_seconds: float = 840.0
    scheduled_sync_delay_seconds: float = 0.5
    pending_link_delay_seconds: float = 0.1
    search_page_size: int = 50

    # Remote-existence checks: "fail_open" or "fail_closed" (overridable per organization)
    existence_check_policy: str = "fail_open"

    # Cached lookups (service identity, site name)
    identity_cache_ttl_seconds: int = 3600

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
