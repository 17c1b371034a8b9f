from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://boardhook:boardhook@db:5432/boardhook"
  db_auto_create: bool = False
  app_version: str = "v2026-10-17"
  build_sha: str = "dev"
  log_level: str = "INFO"

  trello_base_url: str = "https://api.trello.com/1"
  trello_api_key: str | None = None
  trello_api_token: str | None = None
  trello_api_secret: str | None = None  # shared secret used to sign webhook payloads
  trello_timeout_seconds: float = 10.0

  # Environment default mapping (last fallback after per-community defaults)
  trello_board_id: str | None = None
  trello_list_id: str | None = None

  public_base_url: str | None = None
  webhook_path: str = "/webhook/trello"
  webhook_require_signature: bool = True
  reconcile_on_startup: bool = True

  mapping_cache_ttl_seconds: int = 300  # 0 disables the cache
  mapping_cache_max_keys: int = 1000
  board_validation_ttl_seconds: int = 3600

  dedup_window_seconds: int = 600
  dedup_max_entries: int = 10000

  delivery_max_attempts: int = 3
  delivery_base_delay_seconds: float = 0.5
  delivery_timeout_seconds: float = 5.0

  registry_max_attempts: int = 4
  registry_base_delay_seconds: float = 1.0
  config_command_timeout_seconds: float = 3.0

  notification_provider: str = "local"  # local | discord
  discord_bot_token: str | None = None
  discord_api_base_url: str = "https://discord.com/api/v10"

  admin_token: str | None = None
  redis_url: str | None = None

  def callback_url(self) -> str | None:
    base = (self.public_base_url or "").strip().rstrip("/")
    if not base:
      return None
    return f"{base}{self.webhook_path}"

  def environment_default(self) -> tuple[str, str] | None:
    board_id = (self.trello_board_id or "").strip()
    list_id = (self.trello_list_id or "").strip()
    if board_id and list_id:
      return board_id, list_id
    return None


settings = Settings()
