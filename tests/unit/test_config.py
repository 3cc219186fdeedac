from __future__ import annotations

import os

import pytest
from pushflow.config import get_settings
from pushflow.utils.env import ENV_FILE_VARIABLE, load_settings_env


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
  for name in ("PUSHFLOW_PG_DSN", "DATABASE_URL", "PUSHFLOW_ALLOWED_ORIGINS", "PUSHFLOW_MAX_RETRY_ATTEMPTS", "PUSHFLOW_PUSH_ENABLED", "PUSHFLOW_FIREBASE_PROJECT_ID"):
    monkeypatch.delenv(name, raising=False)
  get_settings.cache_clear()
  yield
  get_settings.cache_clear()


def test_defaults() -> None:
  settings = get_settings()
  assert settings.allowed_origins == ("http://localhost",)
  assert settings.max_retry_attempts == 3
  assert (settings.single_concurrency, settings.batch_concurrency, settings.retry_concurrency) == (5, 2, 3)
  assert (settings.retry_delay_ms, settings.batch_retry_delay_ms, settings.retry_queue_delay_ms) == (5000, 10000, 30000)
  assert settings.push_enabled is True
  assert settings.pg_dsn is None


def test_env_overrides(monkeypatch) -> None:
  monkeypatch.setenv("PUSHFLOW_ALLOWED_ORIGINS", "https://a.example, https://b.example")
  monkeypatch.setenv("PUSHFLOW_MAX_RETRY_ATTEMPTS", "5")
  monkeypatch.setenv("PUSHFLOW_PUSH_ENABLED", "off")
  monkeypatch.setenv("PUSHFLOW_FIREBASE_PROJECT_ID", "  ")
  monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/push")

  settings = get_settings()

  assert settings.allowed_origins == ("https://a.example", "https://b.example")
  assert settings.max_retry_attempts == 5
  assert settings.push_enabled is False
  assert settings.firebase_project_id is None
  assert settings.pg_dsn == "postgresql://u:p@db/push"


def test_wildcard_origin_rejected(monkeypatch) -> None:
  monkeypatch.setenv("PUSHFLOW_ALLOWED_ORIGINS", "*")
  with pytest.raises(ValueError):
    get_settings()


def test_non_positive_attempts_rejected(monkeypatch) -> None:
  monkeypatch.setenv("PUSHFLOW_MAX_RETRY_ATTEMPTS", "0")
  with pytest.raises(ValueError):
    get_settings()


def test_env_file_exports_only_service_keys(tmp_path, monkeypatch) -> None:
  env_file = tmp_path / "service.env"
  env_file.write_text(
    '# local overrides\nexport PUSHFLOW_MAX_RETRY_ATTEMPTS=4\nDATABASE_URL="postgresql://u@db/push"\nSTRIPE_SECRET=sk_live\nPUSHFLOW_DEBUG=true\nnot an assignment\n',
    encoding="utf-8",
  )
  environ = {"PUSHFLOW_DEBUG": "false", ENV_FILE_VARIABLE: str(env_file)}
  monkeypatch.setattr(os, "environ", environ)

  applied = load_settings_env()

  assert applied == {"PUSHFLOW_MAX_RETRY_ATTEMPTS": "4", "DATABASE_URL": "postgresql://u@db/push"}
  assert "STRIPE_SECRET" not in environ
  assert environ["PUSHFLOW_DEBUG"] == "false"


def test_missing_env_file_is_ignored(tmp_path) -> None:
  assert load_settings_env(tmp_path / "absent.env") == {}
