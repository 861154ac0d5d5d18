from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://quorum:quorum@db:5432/quorum_routing"
  redis_url: str | None = "redis://redis:6379/0"
  api_token: str = "dev-token-change-me"
  api_docs_enabled: bool = True
  app_version: str = "v2026-10-18"
  build_sha: str = "dev"
  log_level: str = "INFO"

  default_timezone: str = "UTC"
  device_active_days: int = 30
  rule_cache_ttl_seconds: int = 10
  seed_default_rules: bool = True

  channel_send_timeout_seconds: float = 5.0
  webhook_timeout_seconds: float = 5.0
  dispatch_poll_seconds: int = 15
  dispatch_batch_size: int = 100

  escalation_poll_seconds: int = 30
  escalation_lookahead_seconds: int = 120
  escalation_max_retries: int = 5
  escalation_retry_base_seconds: int = 30
  escalation_manager_roles: str = "owner,admin"

  def escalation_role_list(self) -> list[str]:
    return [r.strip() for r in self.escalation_manager_roles.split(",") if r.strip()]


settings = Settings()
