"""Identifier utilities."""

from __future__ import annotations

import secrets
import string
import uuid


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def generate_item_id() -> str:
  """Return a new item identifier."""
  return str(uuid.uuid4())


def generate_caller_id(size: int = 12) -> str:
  """Return a short random id naming one tick caller for claim keys."""
  alphabet = string.ascii_lowercase + string.digits
  return "".join(secrets.choice(alphabet) for _ in range(size))


def claim_key(unit_id: str, attempt: int, caller_id: str) -> str:
  """Build the idempotency key a caller uses to lease one attempt at a unit."""
  return f"{unit_id}:{attempt}:{caller_id}"


def generation_key(unit_id: str, generation: int) -> str:
  """Build the provider idempotency key; stable across re-claims of one generation."""
  return f"{unit_id}:gen{generation}"


def chunk_key(document_id: str, version_id: str, index: int) -> str:
  return f"{document_id}:{version_id}:{index}"
