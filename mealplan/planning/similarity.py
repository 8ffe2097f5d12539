"""Trigram title similarity matching the Postgres ``pg_trgm`` behaviour closely enough for ranking."""

from __future__ import annotations


def trigrams(value: str, *, size: int = 3) -> set[str]:
  """Return the set of overlapping windows of a lowercased, space-padded string."""
  normalized = value.lower().strip()
  if not normalized:
    return set()
  padding = " " * (size - 1)
  padded = f"{padding}{normalized}{padding}"
  return {padded[index : index + size] for index in range(len(padded) - size + 1)}


def trigram_similarity(left: str, right: str, *, size: int = 3) -> float:
  """Score two strings as |intersection| / |union| of their trigram sets."""
  left_grams = trigrams(left, size=size)
  right_grams = trigrams(right, size=size)
  union = left_grams | right_grams
  if not union:
    return 0.0
  return len(left_grams & right_grams) / len(union)
