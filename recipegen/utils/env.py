"""Local .env support for the recipe engine settings."""

from __future__ import annotations

import os
from pathlib import Path

ENV_FILE_VARIABLE = "RECIPEGEN_ENV_FILE"
_QUOTES = ('"', "'")


def default_env_path() -> Path:
  """Return the .env path, honoring RECIPEGEN_ENV_FILE before the repo root file."""
  explicit = os.getenv(ENV_FILE_VARIABLE)
  if explicit:
    return Path(explicit).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def parse_env_file(path: Path) -> dict[str, str]:
  """Parse KEY=value lines; comments, blank lines and malformed lines are skipped."""
  if not path.is_file():
    return {}

  values: dict[str, str] = {}
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    line = raw_line.strip()
    if line.startswith("export "):
      line = line.removeprefix("export ").lstrip()
    key, separator, value = line.partition("=")
    key = key.strip()
    if not separator or not key or key.startswith("#"):
      continue
    values[key] = _unquote(value.strip())
  return values


def load_env_file(path: Path, *, override: bool = False) -> dict[str, str]:
  """Export parsed values into os.environ and return the ones applied."""
  applied: dict[str, str] = {}
  for key, value in parse_env_file(path).items():
    if not override and key in os.environ:
      continue
    os.environ[key] = value
    applied[key] = value
  return applied


def _unquote(value: str) -> str:
  if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
    return value[1:-1]
  # Unquoted values may carry a trailing " # comment".
  return value.split(" #", 1)[0].rstrip()
