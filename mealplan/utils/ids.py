from __future__ import annotations

import uuid


def generate_job_id() -> str:
  """Return a new identifier for an async job row."""
  return str(uuid.uuid4())


def generate_request_id() -> str:
  return uuid.uuid4().hex
