"""Stage ladder registry: format slug -> ordered, duplicate-free stage keys.

The ladders are data (``stage_ladders.json``) so that a new format is a table
entry rather than code. Every lookup is a pure function of its arguments.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path

import msgspec

logger = logging.getLogger(__name__)

LADDERS_PATH = Path(__file__).with_name("stage_ladders.json")


class LadderTable(msgspec.Struct, frozen=True):
  """Typed view of the ladder data file."""

  default_format: str
  format_ladders: dict[str, list[str]]
  doc_type_aliases: dict[str, str] = {}
  legacy_stage_keys: list[str] = []


@lru_cache(maxsize=1)
def load_ladder_table(path: Path = LADDERS_PATH) -> LadderTable:
  """Decode the ladder data file once per process."""
  table = msgspec.json.decode(path.read_bytes(), type=LadderTable)
  if table.default_format not in table.format_ladders:
    raise ValueError(f"Default ladder format '{table.default_format}' is not registered.")
  return table


def registered_formats() -> tuple[str, ...]:
  """Return every format slug with a registered ladder."""
  return tuple(load_ladder_table().format_ladders)


def normalize_format_key(format_name: str | None) -> str:
  """Normalize a format string to its registry key (``TV_Series`` -> ``tv-series``)."""
  table = load_ladder_table()
  raw = (format_name or "").strip().lower()
  if not raw:
    return table.default_format
  return "-".join(part for part in raw.replace("_", " ").split() if part)


def resolve_format_key(format_name: str | None) -> str:
  """Return the registered format whose ladder serves ``format_name``; unknown formats get the default."""
  table = load_ladder_table()
  key = normalize_format_key(format_name)
  if key in table.format_ladders:
    return key
  logger.debug("Unknown format %r; using default ladder %s", format_name, table.default_format)
  return table.default_format


@lru_cache(maxsize=128)
def ladder_for(format_name: str | None) -> tuple[str, ...]:
  """Return the ordered stage keys for a format, falling back to the default ladder."""
  return tuple(load_ladder_table().format_ladders[resolve_format_key(format_name)])


def stage_index(stage: str, format_name: str | None) -> int:
  """Return the 0-based position of a stage on the ladder, or -1."""
  ladder = ladder_for(format_name)
  try:
    return ladder.index(stage)
  except ValueError:
    return -1


def is_stage_applicable(stage: str, format_name: str | None) -> bool:
  return stage_index(stage, format_name) >= 0


def next_stage(current: str, format_name: str | None) -> str | None:
  """Return the stage after current, or None when current is last or off-ladder."""
  ladder = ladder_for(format_name)
  idx = stage_index(current, format_name)
  if idx < 0 or idx >= len(ladder) - 1:
    return None
  return ladder[idx + 1]


def prev_stage(current: str, format_name: str | None) -> str | None:
  """Return the stage before current, or None when current is first or off-ladder."""
  ladder = ladder_for(format_name)
  idx = stage_index(current, format_name)
  if idx <= 0:
    return None
  return ladder[idx - 1]


def nearest_existing_stage(current: str, format_name: str | None, existing: Iterable[str]) -> str | None:
  """Walk backwards from current (or the ladder end) to the closest stage that already exists."""
  ladder = ladder_for(format_name)
  present = set(existing)
  idx = stage_index(current, format_name)
  start = idx if idx >= 0 else len(ladder) - 1
  for position in range(start, -1, -1):
    if ladder[position] in present:
      return ladder[position]
  return None


def map_doc_type_to_stage(doc_type: str | None) -> str:
  """Map a raw document type or legacy label onto a canonical stage key."""
  table = load_ladder_table()
  key = "_".join((doc_type or "").strip().lower().replace("-", " ").split())
  if key in table.doc_type_aliases:
    return table.doc_type_aliases[key]
  known = {stage for ladder in table.format_ladders.values() for stage in ladder}
  if key in known:
    return key
  return "idea"


def ladder_slice(format_name: str | None, *, start_stage: str | None = None, target_stage: str | None = None) -> tuple[str, ...]:
  """Return the contiguous part of a ladder between start and target stages (inclusive)."""
  ladder = ladder_for(format_name)
  start = 0
  end = len(ladder)
  if start_stage:
    mapped = map_doc_type_to_stage(start_stage)
    position = stage_index(mapped, format_name)
    if position < 0:
      raise ValueError(f"Stage '{start_stage}' is not on the ladder for format '{normalize_format_key(format_name)}'.")
    start = position
  if target_stage:
    mapped = map_doc_type_to_stage(target_stage)
    position = stage_index(mapped, format_name)
    if position < 0:
      raise ValueError(f"Stage '{target_stage}' is not on the ladder for format '{normalize_format_key(format_name)}'.")
    end = position + 1
  if end <= start:
    raise ValueError("Target stage must come after the start stage.")
  return ladder[start:end]


def run_self_test() -> tuple[bool, list[str]]:
  """Verify registry invariants; returns (passed, failures)."""
  table = load_ladder_table()
  failures: list[str] = []
  legacy = set(table.legacy_stage_keys)
  known: set[str] = set()

  for fmt, ladder in table.format_ladders.items():
    known.update(ladder)
    if not ladder:
      failures.append(f"Format '{fmt}': ladder is empty")
      continue
    if ladder[0] != "idea":
      failures.append(f"Format '{fmt}': ladder does not start with 'idea' (got '{ladder[0]}')")
    if len(set(ladder)) != len(ladder):
      failures.append(f"Format '{fmt}': ladder contains duplicate stages")
    for stage in ladder:
      if stage in legacy:
        failures.append(f"Format '{fmt}': ladder contains legacy stage '{stage}'")
    # next_stage must agree with list order for every registered format.
    for position, stage in enumerate(ladder[:-1]):
      got = next_stage(stage, fmt)
      if got != ladder[position + 1]:
        failures.append(f"next_stage('{stage}', '{fmt}'): expected '{ladder[position + 1]}', got '{got}'")
    if next_stage(ladder[-1], fmt) is not None:
      failures.append(f"next_stage('{ladder[-1]}', '{fmt}') should be None")

  for alias, target in table.doc_type_aliases.items():
    if target not in known:
      failures.append(f"Alias '{alias}' points at unknown stage '{target}'")

  if failures:
    logger.error("Stage registry self-test failed: %s", failures)
  return not failures, failures
