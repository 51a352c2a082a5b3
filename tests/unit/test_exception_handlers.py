"""Unit tests for API exception sanitization behavior."""

from __future__ import annotations

from autorun.core.exceptions import InvalidTransitionError, JobNotFoundError, StaleDecisionError, _error_payload, _sanitize_validation_errors


def test_sanitize_validation_errors_removes_input_and_serializes_exception_ctx() -> None:
  """Ensure validation errors stay JSON-serializable and redact raw request payloads."""
  errors = [{"type": "value_error", "loc": ("body", "statuses"), "msg": "Value error, Only failed items can be regenerated.", "input": {"statuses": ["done"]}, "ctx": {"error": ValueError("Only failed items can be regenerated."), "input": {"statuses": ["done"]}}}]
  sanitized = _sanitize_validation_errors(errors)
  assert "input" not in sanitized[0]
  assert sanitized[0]["ctx"]["error"] == "ValueError: Only failed items can be regenerated."
  assert "input" not in sanitized[0]["ctx"]
  assert sanitized[0]["loc"] == ["body", "statuses"]


def test_error_payload_carries_code_and_request_id() -> None:
  payload = _error_payload("Job x not found.", request_id="req-1", code="job_not_found")
  assert payload == {"detail": "Job x not found.", "code": "job_not_found", "requestId": "req-1"}


def test_orchestrator_errors_map_to_http_statuses() -> None:
  assert JobNotFoundError.status_code == 404
  assert InvalidTransitionError.status_code == 409
  assert StaleDecisionError.status_code == 409
