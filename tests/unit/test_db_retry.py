from __future__ import annotations

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from recipegen.ai.retry import is_retryable
from recipegen.utils.db_retry import classify_db_failure


class _DriverError(Exception):
  def __init__(self, sqlstate: str | None = None) -> None:
    super().__init__("driver error")
    self.sqlstate = sqlstate


def _db_error(sqlstate: str | None, cls: type[DBAPIError] = DBAPIError, message: str = "statement failed") -> DBAPIError:
  return cls(message, params=None, orig=_DriverError(sqlstate))


@pytest.mark.parametrize(("sqlstate", "retryable", "category"), [("40001", True, "serialization_conflict"), ("40P01", True, "deadlock"), ("57014", False, "lock_timeout"), ("23505", False, "integrity_error"), ("42P01", False, "schema_error")])
def test_sqlstate_drives_classification(sqlstate: str, retryable: bool, category: str) -> None:
  classification = classify_db_failure(_db_error(sqlstate))
  assert classification.retryable is retryable
  assert classification.category == category
  assert classification.sqlstate == sqlstate


def test_operational_connectivity_errors_are_retryable() -> None:
  assert classify_db_failure(_db_error(None, OperationalError, "connection reset by peer")).retryable
  assert not classify_db_failure(_db_error(None, OperationalError, "disk full")).retryable


def test_integrity_error_without_sqlstate_is_permanent() -> None:
  assert not classify_db_failure(_db_error(None, IntegrityError)).retryable


def test_retry_predicate_uses_db_classification() -> None:
  assert is_retryable(_db_error("40001"))
  assert not is_retryable(_db_error("23505"))
