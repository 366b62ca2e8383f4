from pathlib import Path

import pytest

from studio.config import DEFAULT_MODEL_OWNER, Settings, load_settings


def test_defaults_without_environment():
  settings = load_settings({})

  assert settings.storage_backend == "sqlite"
  assert settings.replicate_model_owner == DEFAULT_MODEL_OWNER
  assert settings.signed_url_ttl == 3600
  assert settings.reconcile_after_seconds == 600
  assert settings.webhook_url is None
  assert settings.captions_available is False


def test_environment_values_are_parsed(tmp_path):
  settings = load_settings(
    {
      "STORAGE_BACKEND": " AWS ",
      "AWS_BUCKET_NAME": "studio-bucket",
      "AWS_DEFAULT_REGION": "eu-west-1",
      "SQLITE_DB_PATH": str(tmp_path / "db.sqlite"),
      "JWT_EXPIRATION_MINUTES": "15",
      "NEXT_PUBLIC_APP_URL": "https://studio.example/",
      "OPENAI_API_KEY": "sk-test",
      "CAPTIONS_ENABLED": "yes",
      "LOG_LEVEL": "debug",
    }
  )

  assert settings.use_aws is True
  assert settings.aws_region == "eu-west-1"
  assert settings.sqlite_db_path == Path(tmp_path / "db.sqlite").resolve()
  assert settings.jwt_expiration_minutes == 15
  assert settings.webhook_url == "https://studio.example/webhook"
  assert settings.captions_available is True
  assert settings.log_level == "DEBUG"


def test_malformed_numbers_fall_back_to_defaults():
  settings = load_settings({"SIGNED_URL_TTL": "soon", "REPLICATE_TIMEOUT": "", "CAPTIONS_ENABLED": "maybe"})

  assert settings.signed_url_ttl == 3600
  assert settings.replicate_timeout == 30
  assert settings.captions_enabled is False


@pytest.mark.parametrize(
  "settings,message",
  [
    (Settings(storage_backend="postgres"), "Unsupported STORAGE_BACKEND"),
    (Settings(storage_backend="aws"), "AWS_BUCKET_NAME"),
  ],
)
def test_validate_rejects_incomplete_backends(settings, message):
  with pytest.raises(RuntimeError, match=message):
    settings.validate()
