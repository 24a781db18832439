from __future__ import annotations
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GCAST_", env_file=".env", extra="ignore")

    # Core
    instance_id: str = Field(default="gcast-1", description="Instance name used in logs.")
    data_dir: str = Field(default="./data")
    sqlite_path: str = Field(default="./data/groupcast.sqlite")

    # Network
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8788)
    health_path: str = Field(default="/healthz")
    metrics_path: str = Field(default="/metrics")
    actions_path: str = Field(default="/actions")
    webhook_path: str = Field(default="/webhooks/whapi")
    public_base_url: str = Field(default="", description="Externally reachable base URL. Empty disables webhook registration.")

    # Security defaults
    # Deny-by-default: if no keys are configured, every action request is rejected.
    require_client_auth: bool = Field(default=True)
    client_api_keys: list[str] = Field(default_factory=list, description="Static API keys for action clients.")
    webhook_token: str = Field(default="", description="Shared secret expected as ?token= on webhook deliveries.")

    # Gateway
    whapi_partner_token: str = Field(default="", description="Partner credential for the management surface.")
    whapi_project_id: str = Field(default="", description="Static project id. Empty means resolve on every create.")
    whapi_manager_url: str = Field(default="https://manager.whapi.cloud")
    whapi_gate_url: str = Field(default="https://gate.whapi.cloud")
    http_timeout_s: float = Field(default=15.0)
    retry_attempts: int = Field(default=2, description="Retries after the first attempt for transient failures.")
    retry_base_delay_s: float = Field(default=2.0)
    channel_min_age_s: float = Field(default=60.0, description="Channel age before the gateway reliably serves a pairing code.")
    pairing_max_wait_s: float = Field(default=60.0)
    channel_name_prefix: str = Field(default="groupcast_")
    webhook_events: list[str] = Field(default_factory=lambda: ["channel", "users"])

    # Accounts
    trial_days: int = Field(default=3)

    # Dispatch
    dispatch_enabled: bool = Field(default=True)
    dispatch_interval_s: float = Field(default=60.0)
    dispatch_batch_size: int = Field(default=10)
    dispatch_concurrency: int = Field(default=1, description="Parallel recipient sends per broadcast.")
    poll_interval_s: float = Field(default=0.0, description="Periodic status polling interval. 0 disables.")

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    @property
    def webhook_url(self) -> str | None:
        if not self.public_base_url:
            return None
        return self.public_base_url.rstrip("/") + self.webhook_path

def load_settings() -> Settings:
    return Settings()
