from __future__ import annotations

import pytest

from autorun.jobs.ladders import (
  ladder_for,
  ladder_slice,
  map_doc_type_to_stage,
  nearest_existing_stage,
  next_stage,
  normalize_format_key,
  prev_stage,
  registered_formats,
  resolve_format_key,
  run_self_test,
)


def test_registry_self_test_passes() -> None:
  """Every registered ladder starts at idea, has no duplicates and agrees with next_stage."""
  passed, failures = run_self_test()
  assert passed, failures


def test_every_format_has_a_non_empty_duplicate_free_ladder() -> None:
  for fmt in registered_formats():
    ladder = ladder_for(fmt)
    assert ladder
    assert len(set(ladder)) == len(ladder)


def test_unknown_format_falls_back_to_default_ladder() -> None:
  assert ladder_for("interactive-opera") == ladder_for("film")
  assert ladder_for(None) == ladder_for("film")


def test_resolve_format_key_reports_the_ladder_actually_used() -> None:
  assert resolve_format_key("TV_Series") == "tv-series"
  assert resolve_format_key("interactive opera") == "film"
  assert resolve_format_key(None) == "film"


def test_normalize_format_key_handles_case_and_separators() -> None:
  assert normalize_format_key("TV_Series") == "tv-series"
  assert normalize_format_key("  vertical drama ") == "vertical-drama"
  assert normalize_format_key("") == "film"


def test_next_and_prev_stage_follow_list_order() -> None:
  assert next_stage("idea", "short") == "concept_brief"
  assert next_stage("script", "short") is None
  assert prev_stage("concept_brief", "short") == "idea"
  assert prev_stage("idea", "short") is None
  # Stages off the ladder have no neighbours.
  assert next_stage("deck", "short") is None


def test_nearest_existing_stage_walks_backwards() -> None:
  assert nearest_existing_stage("script", "film", {"idea", "blueprint"}) == "blueprint"
  assert nearest_existing_stage("idea", "film", {"deck"}) is None


def test_map_doc_type_to_stage_resolves_legacy_aliases() -> None:
  assert map_doc_type_to_stage("draft") == "script"
  assert map_doc_type_to_stage("Coverage") == "production_draft"
  assert map_doc_type_to_stage("treatment") == "blueprint"
  assert map_doc_type_to_stage("beat_sheet") == "beat_sheet"
  assert map_doc_type_to_stage("something-else") == "idea"


def test_ladder_slice_between_start_and_target() -> None:
  assert ladder_slice("film", start_stage="treatment", target_stage="character_bible") == ("blueprint", "architecture", "character_bible")


def test_ladder_slice_rejects_reversed_range() -> None:
  with pytest.raises(ValueError):
    ladder_slice("film", start_stage="script", target_stage="idea")
