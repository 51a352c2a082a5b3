from __future__ import annotations

import pytest

from autorun.jobs.materialize import EPISODE_STAGE_KEY, MAX_ITEMS_PER_JOB, materialize_items


def test_document_job_gets_one_item_per_ladder_stage() -> None:
  specs = materialize_items("document_autorun", {"format": "documentary"})
  assert [spec.stage_key for spec in specs] == ["idea", "concept_brief", "market_sheet", "documentary_outline", "deck"]
  assert specs[1].title == "Concept Brief"


def test_document_job_honours_start_and_target_stages() -> None:
  specs = materialize_items("document_autorun", {"format": "short", "start_stage": "concept_brief", "target_stage": "draft"})
  assert [spec.stage_key for spec in specs] == ["concept_brief", "script"]


def test_series_job_from_count() -> None:
  specs = materialize_items("series_scripts", {"episode_count": 3})
  assert [spec.title for spec in specs] == ["Episode 1", "Episode 2", "Episode 3"]
  assert {spec.stage_key for spec in specs} == {EPISODE_STAGE_KEY}
  assert specs[2].payload == {"episodeNumber": 3}


def test_series_job_from_titles() -> None:
  specs = materialize_items("series_scripts", {"episodes": [" Pilot ", "Fallout"]})
  assert [spec.title for spec in specs] == ["Pilot", "Fallout"]


def test_trailer_job_uses_unit_payloads() -> None:
  specs = materialize_items("trailer_clips", {"shots": [{"title": "Opening", "prompt": "dawn"}, "raw"]})
  assert specs[0].title == "Opening"
  assert specs[0].payload["prompt"] == "dawn"
  assert specs[1].payload == {"value": "raw"}
  assert specs[1].title == "Clip 2"


@pytest.mark.parametrize(
  ("kind", "options"),
  [
    ("series_scripts", {}),
    ("series_scripts", {"episode_count": -1}),
    ("series_scripts", {"episodes": ["ok", ""]}),
    ("trailer_audio", {}),
    ("trailer_render", {"units": "not-a-list"}),
    ("unknown_kind", {}),
  ],
)
def test_bad_options_raise_value_error(kind: str, options: dict[str, object]) -> None:
  with pytest.raises(ValueError):
    materialize_items(kind, options)


def test_item_count_is_capped() -> None:
  with pytest.raises(ValueError):
    materialize_items("series_scripts", {"episode_count": MAX_ITEMS_PER_JOB + 1})


@pytest.mark.parametrize(
  ("kind", "options"),
  [
    ("series_scripts", {"episode_count": 10**10}),
    ("series_scripts", {"episodes": ["Episode"] * (MAX_ITEMS_PER_JOB + 1)}),
    ("trailer_clips", {"units": [{}] * (MAX_ITEMS_PER_JOB + 1)}),
  ],
)
def test_oversized_requests_fail_before_building_items(kind: str, options: dict[str, object], monkeypatch: pytest.MonkeyPatch) -> None:
  built: list[object] = []
  monkeypatch.setattr("autorun.jobs.materialize.ItemSpec", lambda *args, **kwargs: built.append(kwargs))

  with pytest.raises(ValueError, match="at most"):
    materialize_items(kind, options)
  assert built == []
