"""
Reconciliation of client-tracked pending generations.

The browser keeps a list of generations it has started but not yet seen
finish. Webhooks update the database in the background, so on each sync the
client sends that list and we answer with what has completed, what was
cancelled, what is still running, and what is too old to keep waiting for.
Completed items never appear twice in the returned history.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

HISTORY_LIMIT = 10
STALLED_AFTER = timedelta(minutes=3)
STALE_AFTER = timedelta(minutes=10)


def _parse_time(value: Any) -> Optional[datetime]:
  if not value or not isinstance(value, str):
    return None
  try:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
  except ValueError:
    return None
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=timezone.utc)
  return parsed


@dataclass(frozen=True)
class ImageGeneration:
  id: str
  prompt: str
  timestamp: str
  images: List[str] = field(default_factory=list)
  aspect_ratio: str = "1:1"

  @classmethod
  def from_prediction(cls, record: Dict[str, Any]) -> "ImageGeneration":
    images = record.get("storage_urls") or record.get("output") or []
    return cls(
      id=str(record["id"]),
      prompt=record.get("prompt") or "",
      timestamp=record.get("created_at") or "",
      images=list(images) if isinstance(images, list) else [],
      aspect_ratio=record.get("aspect_ratio") or "1:1",
    )

  @classmethod
  def from_dict(cls, raw: Dict[str, Any]) -> "ImageGeneration":
    images = raw.get("images")
    return cls(
      id=str(raw["id"]),
      prompt=raw.get("prompt") or "",
      timestamp=raw.get("timestamp") or datetime.now(timezone.utc).isoformat(),
      images=[str(url) for url in images if url] if isinstance(images, list) else [],
      aspect_ratio=raw.get("aspect_ratio") or raw.get("aspectRatio") or "1:1",
    )

  def to_dict(self) -> Dict[str, Any]:
    return asdict(self)


@dataclass(frozen=True)
class PendingGeneration:
  id: str
  prompt: str = ""
  aspect_ratio: str = "1:1"
  replicate_id: Optional[str] = None
  start_time: Optional[str] = None
  potentially_stalled: bool = False

  @classmethod
  def from_dict(cls, raw: Dict[str, Any]) -> "PendingGeneration":
    return cls(
      id=str(raw["id"]),
      prompt=raw.get("prompt") or "",
      aspect_ratio=raw.get("aspect_ratio") or raw.get("aspectRatio") or "1:1",
      replicate_id=raw.get("replicate_id") or None,
      start_time=raw.get("start_time") or raw.get("startTime") or None,
      potentially_stalled=bool(raw.get("potentially_stalled")),
    )

  def age(self, now: datetime) -> Optional[timedelta]:
    started = _parse_time(self.start_time)
    return None if started is None else now - started

  def to_dict(self) -> Dict[str, Any]:
    return asdict(self)


@dataclass
class SyncResult:
  pending: List[PendingGeneration] = field(default_factory=list)
  completed: List[ImageGeneration] = field(default_factory=list)
  cancelled: List[str] = field(default_factory=list)
  failed: List[str] = field(default_factory=list)
  stale: List[str] = field(default_factory=list)
  history: List[ImageGeneration] = field(default_factory=list)

  def to_dict(self) -> Dict[str, Any]:
    return {
      "pending": [item.to_dict() for item in self.pending],
      "completed": [item.to_dict() for item in self.completed],
      "cancelled": list(self.cancelled),
      "failed": list(self.failed),
      "stale": list(self.stale),
      "history": [item.to_dict() for item in self.history],
    }


def push_history(history: List[ImageGeneration], generation: ImageGeneration, limit: int = HISTORY_LIMIT) -> List[ImageGeneration]:
  """Return ``history`` with ``generation`` first, skipping known ids."""
  if any(item.id == generation.id for item in history):
    return list(history)
  return [generation, *history][:limit]


def mark_stalled(pending: Iterable[PendingGeneration], now: datetime) -> List[PendingGeneration]:
  marked = []
  for item in pending:
    age = item.age(now)
    stalled = age is not None and age > STALLED_AFTER
    marked.append(replace(item, potentially_stalled=stalled))
  return marked


def drop_stale(
  pending: Iterable[PendingGeneration],
  history: Iterable[ImageGeneration],
  now: datetime,
) -> tuple[List[PendingGeneration], List[str]]:
  """
  Split ``pending`` into items worth keeping and ids of dropped ones.

  Items without a start time, older than the stale threshold, or already in
  ``history`` are dropped.
  """
  known = {item.id for item in history}
  kept: List[PendingGeneration] = []
  dropped: List[str] = []
  for item in pending:
    age = item.age(now)
    if age is None or age >= STALE_AFTER or item.id in known:
      dropped.append(item.id)
    else:
      kept.append(item)
  return kept, dropped


def reconcile(
  pending: Iterable[PendingGeneration],
  history: Iterable[ImageGeneration],
  lookup: Callable[[str], Optional[Dict[str, Any]]],
  now: Optional[datetime] = None,
) -> SyncResult:
  """
  Match pending generations against stored predictions.

  ``lookup`` receives a ``replicate_id`` and returns the stored prediction
  row (or ``None``). Items without a ``replicate_id`` yet are left pending.
  """
  now = now or datetime.now(timezone.utc)
  result = SyncResult(history=list(history))
  still_pending: List[PendingGeneration] = []

  for item in pending:
    if not item.replicate_id:
      still_pending.append(item)
      continue

    record = lookup(item.replicate_id)
    if record is None:
      still_pending.append(item)
      continue

    if record.get("is_cancelled") or record.get("status") == "canceled":
      result.cancelled.append(item.id)
      continue

    if record.get("status") == "succeeded" and (record.get("storage_urls") or record.get("output")):
      generation = ImageGeneration.from_prediction(record)
      if not any(existing.id == generation.id for existing in result.history):
        result.completed.append(generation)
      result.history = push_history(result.history, generation)
      continue

    if record.get("status") == "failed":
      result.failed.append(item.id)
      continue

    still_pending.append(item)

  kept, stale = drop_stale(still_pending, result.history, now)
  result.pending = mark_stalled(kept, now)
  result.stale = stale
  return result


class GenerationHistory:
  """Process-local recent generations, newest first, per user."""

  def __init__(self, limit: int = HISTORY_LIMIT) -> None:
    self.limit = limit
    self._items: Dict[str, List[ImageGeneration]] = {}
    self._lock = threading.Lock()

  def list(self, user_id: str) -> List[ImageGeneration]:
    with self._lock:
      return list(self._items.get(user_id, []))

  def add(self, user_id: str, generation: ImageGeneration) -> ImageGeneration:
    with self._lock:
      self._items[user_id] = push_history(self._items.get(user_id, []), generation, self.limit)
    return generation

  def delete(self, user_id: str, generation_id: str) -> bool:
    with self._lock:
      items = self._items.get(user_id, [])
      remaining = [item for item in items if item.id != generation_id]
      self._items[user_id] = remaining
      return len(remaining) != len(items)


__all__ = [
  "GenerationHistory",
  "ImageGeneration",
  "PendingGeneration",
  "SyncResult",
  "drop_stale",
  "mark_stalled",
  "push_history",
  "reconcile",
]
