"""Status bookkeeping shared by predictions and trainings."""

from __future__ import annotations

from typing import Optional

PENDING_STATUSES = frozenset({"starting", "queued", "processing"})
TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})
KNOWN_STATUSES = PENDING_STATUSES | TERMINAL_STATUSES


def is_terminal(status: Optional[str]) -> bool:
  return status in TERMINAL_STATUSES


def can_transition(current: Optional[str], new: Optional[str]) -> bool:
  """
  Return True when a record in ``current`` may move to ``new``.

  Terminal states are final, so a late ``processing`` webhook delivered
  after ``succeeded`` is ignored. Unknown target statuses are rejected.
  """
  if new not in KNOWN_STATUSES:
    return False
  if current is None:
    return True
  if current == new:
    return False
  return current not in TERMINAL_STATUSES


def model_status_for_training(status: str) -> Optional[str]:
  """Map a terminal training status onto the owning model's status."""
  if status == "succeeded":
    return "trained"
  if status in {"failed", "canceled"}:
    return "training_failed"
  return None


__all__ = [
  "KNOWN_STATUSES",
  "PENDING_STATUSES",
  "TERMINAL_STATUSES",
  "can_transition",
  "is_terminal",
  "model_status_for_training",
]
