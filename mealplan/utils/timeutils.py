from __future__ import annotations

import time
from datetime import UTC, datetime


def now_iso() -> str:
  """Return the current UTC time as an ISO-8601 string with a Z suffix."""
  return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
  """Parse an ISO-8601 timestamp, tolerating the Z suffix."""
  if not value:
    return None
  try:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
  except ValueError:
    return None
  # Treat naive timestamps as UTC so comparisons stay consistent.
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=UTC)
  return parsed


def monotonic_ms() -> float:
  """Return a monotonic clock reading in milliseconds."""
  return time.monotonic() * 1000
