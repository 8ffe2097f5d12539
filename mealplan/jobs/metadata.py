"""Versioned job metadata sub-structures stored in the async job ``meta`` column.

The metadata is a fixed set of named parts rather than an open map:

* ``events`` and ``faults`` are ring buffers that keep the last N entries.
* ``checkpoint`` carries everything a fresh invocation needs to resume a
  chunked run (the serialized planner state and the remaining item indexes).
* ``payload_signature`` supports deduplication of identical requests.

Unknown keys in stored rows are ignored on decode and dropped on encode.
"""

from __future__ import annotations

from typing import Any

import msgspec

METADATA_VERSION = 1


class JobEvent(msgspec.Struct, forbid_unknown_fields=False):
  at: str
  kind: str
  message: str
  data: dict[str, Any] | None = None


class JobFault(msgspec.Struct, forbid_unknown_fields=False):
  at: str
  source: str
  message: str
  attempt: int | None = None
  details: dict[str, Any] | None = None


class ResumptionCheckpoint(msgspec.Struct, forbid_unknown_fields=False):
  """State handed from one invocation to the next when a run is chunked."""

  state: dict[str, Any]
  remaining_indexes: list[int]
  invocation: int
  saved_at: str
  resumption_message: str | None = None
  # "chunked" continues generation; "awaiting-callbacks" waits for async recipe completions.
  reason: str = "chunked"


class DraftAttempt(msgspec.Struct, forbid_unknown_fields=False):
  attempt: int
  at: str
  error: str | None = None
  draft_id: str | None = None


class JobMetadata(msgspec.Struct, forbid_unknown_fields=False, omit_defaults=True):
  version: int = METADATA_VERSION
  payload_signature: str | None = None
  retry_count: int = 0
  last_attempt_at: str | None = None
  last_error: str | None = None
  draft_id: str | None = None
  events: list[JobEvent] = msgspec.field(default_factory=list)
  faults: list[JobFault] = msgspec.field(default_factory=list)
  draft_attempts: list[DraftAttempt] = msgspec.field(default_factory=list)
  checkpoint: ResumptionCheckpoint | None = None
  recipe_assignment: dict[str, Any] | None = None
  last_state: dict[str, Any] | None = None


def decode_metadata(raw: dict[str, Any] | None) -> JobMetadata:
  """Parse a stored metadata map into the typed structure."""
  if not raw:
    return JobMetadata()
  try:
    return msgspec.convert(raw, JobMetadata, strict=False)
  except msgspec.ValidationError as exc:
    raise ValueError(f"Job metadata failed validation: {exc}") from exc


def encode_metadata(meta: JobMetadata) -> dict[str, Any]:
  """Serialize metadata into JSON-compatible builtins for storage."""
  return msgspec.to_builtins(meta)


def merge_metadata(current: dict[str, Any] | None, patch: dict[str, Any]) -> dict[str, Any]:
  """Shallow-merge a patch into stored metadata, validating the result."""
  merged = {**(current or {}), **patch}
  return encode_metadata(decode_metadata(merged))


def _bounded[T](entries: list[T], entry: T, limit: int) -> list[T]:
  """Append to a ring buffer that keeps only the last ``limit`` entries."""
  combined = [*entries, entry]
  if limit <= 0:
    return []
  return combined[-limit:]


def with_event(meta: JobMetadata, event: JobEvent, *, limit: int) -> JobMetadata:
  return msgspec.structs.replace(meta, events=_bounded(meta.events, event, limit))


def with_fault(meta: JobMetadata, fault: JobFault, *, limit: int) -> JobMetadata:
  return msgspec.structs.replace(meta, faults=_bounded(meta.faults, fault, limit))


def with_draft_attempt(meta: JobMetadata, attempt: DraftAttempt, *, limit: int) -> JobMetadata:
  return msgspec.structs.replace(meta, draft_attempts=_bounded(meta.draft_attempts, attempt, limit))
