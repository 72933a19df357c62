"""Classification of database failures into retryable and permanent."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

# SQLSTATE codes that indicate a transaction conflict worth replaying.
_RETRYABLE_SQLSTATES = {"40001": ("serialization_conflict", "Serialization failure - transaction conflict"), "40P01": ("deadlock", "Deadlock detected")}

# SQLSTATE classes that never succeed on replay.
_PERMANENT_SQLSTATE_CLASSES = {"23": ("integrity_error", "Integrity violation"), "42": ("schema_error", "Schema/SQL error"), "28": ("permission_error", "Authentication/permission error")}

_CONNECTIVITY_MARKERS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy exception."""
  if not isinstance(exc, DBAPIError):
    return None
  orig = getattr(exc, "orig", None)
  # asyncpg exposes sqlstate while psycopg exposes pgcode.
  for attr in ("sqlstate", "pgcode"):
    value = getattr(orig, attr, None)
    if value:
      return str(value)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """
  Classify a database failure as retryable or permanent.

  SQLSTATE is the primary signal. Exception type and message are used when the
  driver does not expose one. Lock and statement timeouts (55P03, 57014) are
  treated as permanent because replaying them tends to pile up contention.
  """
  sqlstate = _extract_sqlstate(exc)

  if sqlstate in _RETRYABLE_SQLSTATES:
    category, reason = _RETRYABLE_SQLSTATES[sqlstate]
    return DBFailureClassification(retryable=True, reason=reason, sqlstate=sqlstate, category=category)

  if sqlstate in {"55P03", "57014"}:
    return DBFailureClassification(retryable=False, reason="Lock or statement timeout", sqlstate=sqlstate, category="lock_timeout")

  if sqlstate and sqlstate[:2] in _PERMANENT_SQLSTATE_CLASSES:
    category, reason = _PERMANENT_SQLSTATE_CLASSES[sqlstate[:2]]
    return DBFailureClassification(retryable=False, reason=reason, sqlstate=sqlstate, category=category)

  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation", sqlstate=sqlstate, category="integrity_error")

  if isinstance(exc, OperationalError):
    message = str(exc).lower()
    if any(marker in message for marker in _CONNECTIVITY_MARKERS):
      return DBFailureClassification(retryable=True, reason="Transient connection/network error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")

  if isinstance(exc, (ConnectionError, OSError)):
    return DBFailureClassification(retryable=True, reason=f"Connection error: {type(exc).__name__}", sqlstate=sqlstate, category="connectivity_error")

  return DBFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")
