from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from autorun.jobs.claims import LeasePolicy, is_claimable, is_lease_exhausted, lease_live
from autorun.jobs.models import CLAIMABLE_CHUNK_STATUSES

NOW = datetime(2026, 1, 5, 12, 0, 0, tzinfo=UTC)


def test_lease_policy_rejects_non_positive_values() -> None:
  with pytest.raises(ValueError):
    LeasePolicy(ttl_seconds=0)
  with pytest.raises(ValueError):
    LeasePolicy(max_attempts=0)


def test_lease_expiry_is_now_plus_ttl() -> None:
  assert LeasePolicy(ttl_seconds=30).expires_at(NOW) == NOW + timedelta(seconds=30)


def test_lease_is_live_until_expiry() -> None:
  expires = NOW + timedelta(seconds=30)
  assert lease_live(expires, NOW)
  assert not lease_live(expires, expires)
  assert not lease_live(None, NOW)


@pytest.mark.parametrize("status", ["queued", "needs_regen"])
def test_pending_units_are_claimable(status: str) -> None:
  assert is_claimable(status, None, 0, now=NOW, max_attempts=3)


def test_chunks_in_needs_regen_are_not_claimable() -> None:
  assert is_claimable("queued", None, 0, now=NOW, max_attempts=3, statuses=CLAIMABLE_CHUNK_STATUSES)
  assert not is_claimable("needs_regen", None, 0, now=NOW, max_attempts=3, statuses=CLAIMABLE_CHUNK_STATUSES)


@pytest.mark.parametrize("status", ["done", "failed", "failed_validation", "skipped"])
def test_settled_units_are_not_claimable(status: str) -> None:
  assert not is_claimable(status, None, 1, now=NOW, max_attempts=3)


def test_running_unit_becomes_claimable_after_ttl_while_attempts_remain() -> None:
  expires = NOW + timedelta(seconds=30)
  assert not is_claimable("running", expires, 1, now=NOW, max_attempts=3)
  assert is_claimable("running", expires, 1, now=NOW + timedelta(seconds=31), max_attempts=3)


def test_running_unit_with_no_attempts_left_is_exhausted_not_claimable() -> None:
  later = NOW + timedelta(seconds=31)
  expires = NOW + timedelta(seconds=30)
  assert not is_claimable("running", expires, 3, now=later, max_attempts=3)
  assert is_lease_exhausted("running", expires, 3, now=later, max_attempts=3)
  assert not is_lease_exhausted("running", expires, 3, now=NOW, max_attempts=3)
