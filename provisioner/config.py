from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field(default="sqlite:///./provisioner.db")
    log_level: str = Field(default="INFO")

    azure_subscription_id: str | None = Field(default=None)
    azure_tenant_id: str | None = Field(default=None)
    azure_client_id: str | None = Field(default=None)
    azure_client_secret: str | None = Field(default=None)
    azure_cloud: str = Field(default="public", pattern="^(public|china)$")

    templates_file: str | None = Field(default=None)

    controller_url: str = Field(default="http://localhost:8080")
    controller_user: str | None = Field(default=None)
    controller_api_token: str | None = Field(default=None)
    agent_payload_path: str = Field(default="/jnlpJars/agent.jar")

    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: int = Field(default=10, ge=0)

    start_retry_attempts: int = Field(default=5, ge=1)
    start_retry_sleep_sec: int = Field(default=30, ge=0)
    connect_retry_attempts: int = Field(default=6, ge=1)
    connect_retry_sleep_sec: int = Field(default=60, ge=0)
    ssh_connect_timeout_sec: int = Field(default=60, ge=1)
    ssh_keepalive_sec: int = Field(default=60, ge=0)
    validation_timeout_sec: int = Field(default=60, ge=1)

    status_poll_interval_sec: int = Field(default=30, ge=0)
    provision_timeout_sec: int = Field(default=1800, ge=1)

    reaper_interval_sec: int = Field(default=60, ge=1)
    cleanup_workers: int = Field(default=4, ge=1)
    provisioning_workers: int = Field(default=4, ge=1)

    disable_background_loops: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
