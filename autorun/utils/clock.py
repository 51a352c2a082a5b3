"""Clock helpers; orchestration code takes ``now`` explicitly so tests can drive time."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeAlias

Clock: TypeAlias = Callable[[], datetime]


def utc_now() -> datetime:
  return datetime.now(UTC)

