"""Turn a start request into the ordered item blueprints for a job kind."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from autorun.jobs.ladders import ladder_slice, normalize_format_key
from autorun.jobs.models import ItemSpec

EPISODE_STAGE_KEY = "episode_script"
# Upper bound on items per job; larger batches should be split into several jobs.
MAX_ITEMS_PER_JOB = 500

_TRAILER_STAGE_KEYS = {"trailer_clips": "clip", "trailer_audio": "audio", "trailer_render": "render"}


def _check_item_count(count: int) -> None:
  if count > MAX_ITEMS_PER_JOB:
    raise ValueError(f"A job may hold at most {MAX_ITEMS_PER_JOB} items.")


def _document_items(options: Mapping[str, Any]) -> list[ItemSpec]:
  fmt = normalize_format_key(options.get("format"))
  stages = ladder_slice(fmt, start_stage=options.get("start_stage"), target_stage=options.get("target_stage"))
  return [ItemSpec(stage_key=stage, title=stage.replace("_", " ").title()) for stage in stages]


def _episode_items(options: Mapping[str, Any]) -> list[ItemSpec]:
  episodes = options.get("episodes")
  if episodes:
    if not isinstance(episodes, list):
      raise ValueError("episodes must be a list of non-empty titles.")
    _check_item_count(len(episodes))
    if not all(isinstance(title, str) and title.strip() for title in episodes):
      raise ValueError("episodes must be a list of non-empty titles.")
    titles = [title.strip() for title in episodes]
  else:
    count = options.get("episode_count")
    if count is None:
      raise ValueError("series_scripts requires episode_count or episodes.")
    count = int(count)
    if count < 0:
      raise ValueError("episode_count must not be negative.")
    _check_item_count(count)
    titles = [f"Episode {number}" for number in range(1, count + 1)]
  return [ItemSpec(stage_key=EPISODE_STAGE_KEY, title=title, payload={"episodeNumber": number}) for number, title in enumerate(titles, start=1)]


def _trailer_items(kind: str) -> Callable[[Mapping[str, Any]], list[ItemSpec]]:
  stage_key = _TRAILER_STAGE_KEYS[kind]

  def build(options: Mapping[str, Any]) -> list[ItemSpec]:
    units = options.get("units")
    if units is None:
      units = options.get("shots")
    if units is None:
      raise ValueError(f"{kind} requires a units (or shots) list.")
    if not isinstance(units, list):
      raise ValueError("units must be a list.")
    _check_item_count(len(units))
    specs: list[ItemSpec] = []
    for position, unit in enumerate(units):
      payload = dict(unit) if isinstance(unit, Mapping) else {"value": unit}
      title = payload.get("title") or payload.get("label") or f"{stage_key.title()} {position + 1}"
      specs.append(ItemSpec(stage_key=stage_key, title=str(title), payload=payload))
    return specs

  return build


_BUILDERS: dict[str, Callable[[Mapping[str, Any]], list[ItemSpec]]] = {
  "document_autorun": _document_items,
  "series_scripts": _episode_items,
  "trailer_clips": _trailer_items("trailer_clips"),
  "trailer_audio": _trailer_items("trailer_audio"),
  "trailer_render": _trailer_items("trailer_render"),
}


def materialize_items(kind: str, options: Mapping[str, Any]) -> list[ItemSpec]:
  """Return the item blueprints for a job kind; raises ValueError on bad options."""
  builder = _BUILDERS.get(kind)
  if builder is None:
    raise ValueError(f"Unsupported job kind: {kind}")
  specs = builder(options)
  _check_item_count(len(specs))
  return specs
