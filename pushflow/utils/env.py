"""Load pushflow settings from a dotenv file into the process environment."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

ENV_FILE_VARIABLE = "PUSHFLOW_ENV_FILE"
SETTINGS_PREFIX = "PUSHFLOW_"
# Unprefixed names the service also reads.
SHARED_KEYS = frozenset({"DATABASE_URL", "GOOGLE_APPLICATION_CREDENTIALS"})


def env_file_path() -> Path:
  """`PUSHFLOW_ENV_FILE` when set, otherwise `.env` in the project root."""
  configured = os.getenv(ENV_FILE_VARIABLE)
  if configured:
    return Path(configured).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def _assignments(text: str) -> Iterator[tuple[str, str]]:
  for raw_line in text.splitlines():
    line = raw_line.strip().removeprefix("export ").strip()
    key, sep, value = line.partition("=")
    key = key.strip()
    if line.startswith("#") or not sep or not key:
      continue
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
      value = value[1:-1]
    yield key, value


def load_settings_env(path: Path | None = None, *, override: bool = False) -> dict[str, str]:
  """Export the file's pushflow keys and return what was applied.

  Keys outside `PUSHFLOW_*` and the shared names are ignored, so a dotenv shared
  with other services cannot leak into this process. Real environment variables
  win unless `override` is set.
  """
  path = path or env_file_path()
  if not path.is_file():
    return {}

  applied: dict[str, str] = {}
  for key, value in _assignments(path.read_text(encoding="utf-8")):
    if not (key.startswith(SETTINGS_PREFIX) or key in SHARED_KEYS):
      continue
    if not override and key in os.environ:
      continue
    os.environ[key] = value
    applied[key] = value
  return applied
