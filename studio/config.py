"""
Environment-driven settings for the portrait studio backend.

Values are read once when the Flask app is created. A ``.env`` file next to
the project root is honoured for local development.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_MODEL_OWNER = "arthurbnhm"


def _safe_int(value: Optional[str], default: int) -> int:
  try:
    return int(value) if value is not None else default
  except (TypeError, ValueError):
    return default


def _safe_bool(value: Optional[str], default: bool) -> bool:
  if value is None:
    return default
  cleaned = value.strip().lower()
  if cleaned in {"1", "true", "yes", "on"}:
    return True
  if cleaned in {"0", "false", "no", "off"}:
    return False
  return default


def _first(env: Mapping[str, str], *names: str) -> str:
  for name in names:
    value = env.get(name)
    if value:
      return value.strip()
  return ""


@dataclass
class Settings:
  storage_backend: str = "sqlite"
  sqlite_db_path: Path = field(default_factory=lambda: BASE_DIR / "studio.db")
  uploads_dir: Path = field(default_factory=lambda: BASE_DIR / "uploads")
  aws_bucket_name: str = ""
  aws_region: str = ""
  aws_table_prefix: str = "studio_"
  jwt_secret_key: str = "change-me"
  jwt_expiration_minutes: int = 60
  replicate_api_token: str = ""
  replicate_model_owner: str = DEFAULT_MODEL_OWNER
  replicate_webhook_secret: str = ""
  replicate_timeout: int = 30
  app_url: str = ""
  openai_api_key: str = ""
  openai_caption_model: str = "gpt-4o-mini"
  captions_enabled: bool = False
  signed_url_ttl: int = 60 * 60
  webhook_tolerance_seconds: int = 5 * 60
  reconcile_after_seconds: int = 10 * 60
  log_level: str = "INFO"

  @property
  def use_aws(self) -> bool:
    return self.storage_backend == "aws"

  @property
  def webhook_url(self) -> Optional[str]:
    """Return the public webhook endpoint, or ``None`` when no app URL is set."""
    if not self.app_url:
      return None
    return f"{self.app_url.rstrip('/')}/webhook"

  @property
  def captions_available(self) -> bool:
    return self.captions_enabled and bool(self.openai_api_key)

  def validate(self) -> None:
    """Raise ``RuntimeError`` when the selected backend is missing settings."""
    if self.storage_backend not in {"sqlite", "aws"}:
      raise RuntimeError(f"Unsupported STORAGE_BACKEND: {self.storage_backend!r}.")
    if self.use_aws and not self.aws_bucket_name:
      raise RuntimeError("AWS_BUCKET_NAME must be set when STORAGE_BACKEND=aws.")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
  """Build :class:`Settings` from ``env`` (defaults to ``os.environ``)."""
  if env is None:
    load_dotenv(BASE_DIR / ".env")
    env = os.environ

  return Settings(
    storage_backend=(env.get("STORAGE_BACKEND") or "sqlite").strip().lower(),
    sqlite_db_path=Path(env.get("SQLITE_DB_PATH") or BASE_DIR / "studio.db").resolve(),
    uploads_dir=Path(env.get("UPLOADS_DIR") or BASE_DIR / "uploads").resolve(),
    aws_bucket_name=_first(env, "AWS_BUCKET_NAME"),
    aws_region=_first(env, "AWS_REGION", "AWS_DEFAULT_REGION"),
    aws_table_prefix=env.get("AWS_DYNAMODB_TABLE_PREFIX", "studio_").strip(),
    jwt_secret_key=env.get("JWT_SECRET_KEY", "change-me"),
    jwt_expiration_minutes=_safe_int(env.get("JWT_EXPIRATION_MINUTES"), 60),
    replicate_api_token=_first(env, "REPLICATE_API_TOKEN"),
    replicate_model_owner=_first(env, "REPLICATE_MODEL_OWNER") or DEFAULT_MODEL_OWNER,
    replicate_webhook_secret=_first(env, "REPLICATE_WEBHOOK_SECRET"),
    replicate_timeout=_safe_int(env.get("REPLICATE_TIMEOUT"), 30),
    app_url=_first(env, "APP_URL", "NEXT_PUBLIC_APP_URL"),
    openai_api_key=_first(env, "OPENAI_API_KEY"),
    openai_caption_model=_first(env, "OPENAI_CAPTION_MODEL") or "gpt-4o-mini",
    captions_enabled=_safe_bool(env.get("CAPTIONS_ENABLED"), False),
    signed_url_ttl=_safe_int(env.get("SIGNED_URL_TTL"), 60 * 60),
    webhook_tolerance_seconds=_safe_int(env.get("WEBHOOK_TOLERANCE_SECONDS"), 5 * 60),
    reconcile_after_seconds=_safe_int(env.get("RECONCILE_AFTER_SECONDS"), 10 * 60),
    log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
  )


__all__ = ["Settings", "load_settings"]
