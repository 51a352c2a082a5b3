"""Unit tests for store failure classification and the retry wrapper."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from autorun.utils.db_retry import classify_db_failure, execute_with_retry


class _Orig(Exception):
  def __init__(self, sqlstate: str) -> None:
    super().__init__(sqlstate)
    self.sqlstate = sqlstate


def _dbapi_error(sqlstate: str) -> DBAPIError:
  return DBAPIError("UPDATE pipeline_items ...", {}, _Orig(sqlstate))


@pytest.mark.parametrize("sqlstate", ["40001", "40P01"])
def test_serialization_and_deadlock_are_retryable(sqlstate: str) -> None:
  classification = classify_db_failure(_dbapi_error(sqlstate))
  assert classification.retryable
  assert classification.sqlstate == sqlstate


@pytest.mark.parametrize(("sqlstate", "category"), [("23505", "integrity_error"), ("42P01", "schema_error"), ("28P01", "permission_error")])
def test_permanent_sqlstate_classes(sqlstate: str, category: str) -> None:
  classification = classify_db_failure(_dbapi_error(sqlstate))
  assert not classification.retryable
  assert classification.category == category


def test_integrity_error_without_sqlstate_is_permanent() -> None:
  assert not classify_db_failure(IntegrityError("INSERT", {}, Exception("duplicate"))).retryable


def test_connection_failures_are_retryable() -> None:
  assert classify_db_failure(ConnectionResetError("peer reset")).retryable
  assert classify_db_failure(OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))).retryable


def test_programming_errors_are_permanent() -> None:
  assert classify_db_failure(KeyError("status")).category == "programming_error"


@pytest.mark.anyio
async def test_execute_with_retry_replays_transient_failures() -> None:
  delays: list[float] = []
  attempts = {"count": 0}

  async def fake_sleep(seconds: float) -> None:
    delays.append(seconds)

  async def flaky() -> str:
    attempts["count"] += 1
    if attempts["count"] < 3:
      raise ConnectionResetError("connection reset")
    return "ok"

  result = await execute_with_retry(operation_name="claim_item", func=flaky, jitter=False, sleep=fake_sleep)
  assert result == "ok"
  assert attempts["count"] == 3
  # Exponential backoff: 100ms then 200ms.
  assert delays == [0.1, 0.2]


@pytest.mark.anyio
async def test_execute_with_retry_gives_up_after_max_attempts() -> None:
  delays: list[float] = []

  async def fake_sleep(seconds: float) -> None:
    delays.append(seconds)

  async def always_down() -> None:
    raise ConnectionRefusedError("connection refused")

  with pytest.raises(ConnectionRefusedError):
    await execute_with_retry(operation_name="get_job", func=always_down, max_attempts=2, jitter=False, sleep=fake_sleep)
  assert len(delays) == 1


@pytest.mark.anyio
async def test_execute_with_retry_does_not_replay_permanent_failures() -> None:
  calls = {"count": 0}

  async def broken() -> None:
    calls["count"] += 1
    raise IntegrityError("INSERT", {}, Exception("duplicate key"))

  with pytest.raises(IntegrityError):
    await execute_with_retry(operation_name="create_job", func=broken)
  assert calls["count"] == 1
