"""HTTP surface: camelCase payloads, status codes and error bodies."""

from __future__ import annotations

import pytest
from httpx import AsyncClient


async def _start(client: AsyncClient, **overrides: object) -> dict:
  payload: dict[str, object] = {"kind": "document_autorun", "projectRef": "proj-1", "options": {"format": "documentary"}}
  payload.update(overrides)
  response = await client.post("/v1/jobs", json=payload)
  assert response.status_code == 200, response.text
  return response.json()


@pytest.mark.anyio
async def test_health_endpoint(async_client: AsyncClient) -> None:
  response = await async_client.get("/health")
  assert response.status_code == 200
  assert response.json()["status"] == "ok"
  assert "x-request-id" in response.headers


@pytest.mark.anyio
async def test_start_tick_and_status_round_trip(async_client: AsyncClient) -> None:
  started = await _start(async_client, policy={"maxItemsPerTick": 2, "requireApprovalFor": []})
  job_id = started["jobId"]
  assert started["created"] is True
  assert started["totalCount"] == 5
  assert started["items"][0]["stageKey"] == "idea"
  assert started["job"]["policy"]["maxItemsPerTick"] == 2

  tick = await async_client.post(f"/v1/jobs/{job_id}/tick")
  assert tick.status_code == 200
  body = tick.json()
  assert body["done"] is False
  assert body["blocked"] is False
  assert body["processedCount"] == 2
  assert body["job"]["status"] == "running"
  assert body["job"]["completedCount"] == 2

  status = (await async_client.get(f"/v1/jobs/{job_id}")).json()
  assert [entry["status"] for entry in status["stageHistory"]] == ["done", "done", "queued", "queued", "queued"]
  assert status["events"][0] == "Job started with 5 item(s)."

  progress = (await async_client.get(f"/v1/jobs/{job_id}/progress")).json()
  assert progress["completed"] == 2
  assert progress["remaining"] == 3
  assert progress["percent"] == 40.0


@pytest.mark.anyio
async def test_tick_accepts_a_per_call_limit(async_client: AsyncClient) -> None:
  started = await _start(async_client)
  response = await async_client.post(f"/v1/jobs/{started['jobId']}/tick", json={"maxItemsPerTick": 5})
  assert response.json()["processedCount"] == 5
  assert response.json()["done"] is True


@pytest.mark.anyio
async def test_repeated_start_with_same_key_returns_original(async_client: AsyncClient) -> None:
  first = await _start(async_client, idempotencyKey="run-42")
  second = await _start(async_client, idempotencyKey="run-42")
  assert second["created"] is False
  assert second["jobId"] == first["jobId"]


@pytest.mark.anyio
async def test_unknown_job_returns_404_with_code(async_client: AsyncClient) -> None:
  response = await async_client.post("/v1/jobs/does-not-exist/tick")
  assert response.status_code == 404
  body = response.json()
  assert body["code"] == "job_not_found"
  assert "requestId" in body


@pytest.mark.anyio
async def test_invalid_transition_returns_409(async_client: AsyncClient) -> None:
  started = await _start(async_client)
  response = await async_client.post(f"/v1/jobs/{started['jobId']}/retry")
  assert response.status_code == 409
  assert response.json()["code"] == "invalid_transition"


@pytest.mark.anyio
async def test_pause_resume_stop_endpoints(async_client: AsyncClient) -> None:
  job_id = (await _start(async_client))["jobId"]

  paused = await async_client.post(f"/v1/jobs/{job_id}/pause")
  assert paused.json()["status"] == "paused"
  assert paused.json()["stopReason"] == "paused_by_user"
  resumed = await async_client.post(f"/v1/jobs/{job_id}/resume")
  assert resumed.json()["status"] == "running"
  stopped = await async_client.post(f"/v1/jobs/{job_id}/stop")
  assert stopped.json()["status"] == "stopped"
  assert (await async_client.post(f"/v1/jobs/{job_id}/resume")).status_code == 409


@pytest.mark.anyio
async def test_approval_flow_over_http(async_client: AsyncClient) -> None:
  job_id = (await _start(async_client, policy={"requireApprovalFor": ["concept_brief"]}))["jobId"]
  await async_client.post(f"/v1/jobs/{job_id}/tick")
  gated = (await async_client.post(f"/v1/jobs/{job_id}/tick")).json()
  assert gated["blocked"] is True
  assert gated["job"]["awaitingApproval"] is True
  assert gated["job"]["approvalRequiredFor"] == "concept_brief"

  stale = await async_client.post(f"/v1/jobs/{job_id}/decide", json={"stageKey": "deck", "approved": True})
  assert stale.status_code == 409
  assert stale.json()["code"] == "stale_decision"

  decided = await async_client.post(f"/v1/jobs/{job_id}/decide", json={"stageKey": "concept_brief", "approved": True, "note": "ship it"})
  assert decided.status_code == 200
  assert "concept_brief" in decided.json()["pinnedInputs"]

  approvals = (await async_client.get(f"/v1/jobs/{job_id}/approvals")).json()
  assert [checkpoint["state"] for checkpoint in approvals["checkpoints"]] == ["approved"]
  assert approvals["checkpoints"][0]["note"] == "ship it"


@pytest.mark.anyio
async def test_regen_items_endpoint(async_client: AsyncClient) -> None:
  job_id = (await _start(async_client))["jobId"]
  response = await async_client.post(f"/v1/jobs/{job_id}/regen-items", json={"statuses": ["failed"]})
  assert response.status_code == 200
  assert response.json()["requeuedIndexes"] == []

  invalid = await async_client.post(f"/v1/jobs/{job_id}/regen-items", json={"statuses": ["done"]})
  assert invalid.status_code == 422


@pytest.mark.anyio
async def test_validation_errors_do_not_echo_input(async_client: AsyncClient) -> None:
  response = await async_client.post("/v1/jobs", json={"kind": "document_autorun", "projectRef": "proj-1", "secretToken": "hunter2"})
  assert response.status_code == 422
  errors = response.json()["detail"]
  assert errors
  assert all("input" not in error for error in errors)
  assert "hunter2" not in response.text


@pytest.mark.anyio
async def test_bad_materialization_options_return_422(async_client: AsyncClient) -> None:
  response = await async_client.post("/v1/jobs", json={"kind": "series_scripts", "projectRef": "proj-1", "options": {}})
  assert response.status_code == 422
  assert "episode_count" in response.json()["detail"]


@pytest.mark.anyio
async def test_ladder_endpoints(async_client: AsyncClient) -> None:
  formats = (await async_client.get("/v1/ladders")).json()
  assert "documentary" in formats

  ladder = (await async_client.get("/v1/ladders/Short")).json()
  assert ladder == {"format": "short", "stages": ["idea", "concept_brief", "script"]}

  fallback = (await async_client.get("/v1/ladders/Interactive_Opera")).json()
  assert fallback["format"] == "film"
  assert fallback["stages"] == (await async_client.get("/v1/ladders/film")).json()["stages"]


@pytest.mark.anyio
async def test_chunk_endpoints(async_client: AsyncClient) -> None:
  small = await async_client.post("/v1/chunks", json={"documentId": "doc-1", "versionId": "v1", "content": "short"})
  assert small.json() == {"chunked": False, "group": None}

  content = "\n\n".join(letter * 80 for letter in "xyz")
  opened = (await async_client.post("/v1/chunks", json={"documentId": "doc-1", "versionId": "v2", "content": content})).json()
  assert opened["chunked"] is True
  assert len(opened["group"]["chunks"]) == 3

  incomplete = await async_client.get("/v1/chunks/doc-1/v2/assemble")
  assert incomplete.status_code == 409

  ticked = (await async_client.post("/v1/chunks/doc-1/v2/tick", json={"maxChunks": 3})).json()
  assert ticked["done"] is True
  assert ticked["group"]["complete"] is True

  assembled = (await async_client.get("/v1/chunks/doc-1/v2/assemble")).json()
  assert len(assembled["outputRefs"]) == 3

  regen = (await async_client.post("/v1/chunks/regen", json={"documentId": "doc-1", "versionId": "v2"})).json()
  assert regen["requeuedIndexes"] == []
  assert regen["processedCount"] == 0

  missing = await async_client.get("/v1/chunks/doc-9/v1")
  assert missing.status_code == 404
  assert missing.json()["code"] == "chunk_group_not_found"
