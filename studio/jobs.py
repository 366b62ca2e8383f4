"""
Applies Replicate status updates to stored trainings and predictions.

Updates arrive either from a webhook delivery or from the reconciler, which
polls Replicate for records that have been pending for too long (a dropped
webhook would otherwise leave them pending forever). Both paths go through
the same lifecycle guard, so terminal statuses are never overwritten.
"""

from __future__ import annotations

import logging
import mimetypes
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from studio.captioning import CaptionError
from studio.lifecycle import PENDING_STATUSES, can_transition, is_terminal, model_status_for_training
from studio.replicate_client import ReplicateError
from studio.storage import GENERATED_BUCKET, StorageError
from studio.store import utcnow
from studio.webhooks import WebhookEvent

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 60


def _output_urls(output: Any) -> List[str]:
  if isinstance(output, str):
    return [output]
  if isinstance(output, list):
    return [item for item in output if isinstance(item, str) and item]
  return []


def _extension_for(url: str, fallback: Optional[str]) -> str:
  suffix = PurePosixPath(urlparse(url).path).suffix.lstrip(".").lower()
  return suffix or (fallback or "webp").lower()


def _is_older_than(created_at: Optional[str], threshold: timedelta, now: datetime) -> bool:
  if not created_at:
    return False
  try:
    created = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
  except ValueError:
    return False
  if created.tzinfo is None:
    created = created.replace(tzinfo=timezone.utc)
  return now - created >= threshold


class JobService:
  """Keeps stored jobs in step with Replicate."""

  def __init__(
    self,
    store,
    storage,
    replicate,
    captioner=None,
    *,
    signed_url_ttl: int = 3600,
    session: Optional[requests.Session] = None,
  ) -> None:
    self.store = store
    self.storage = storage
    self.replicate = replicate
    self.captioner = captioner
    self.signed_url_ttl = signed_url_ttl
    self.session = session or requests.Session()

  # Webhooks -------------------------------------------------------------

  def handle_event(self, event: WebhookEvent) -> Dict[str, Any]:
    """Route a parsed delivery to the training or prediction handler."""
    replicate_id = event.replicate_id
    if not replicate_id:
      return {"kind": event.kind, "applied": False, "reason": "missing id"}

    training = self.store.get_training_by_replicate_id(replicate_id)
    if event.kind == "training" or training is not None:
      if training is None:
        logger.warning("Webhook for unknown training %s", replicate_id)
        return {"kind": "training", "applied": False, "reason": "unknown training"}
      applied = self.apply_training_update(training, event.data)
      return {"kind": "training", "applied": applied}

    prediction = self.store.get_prediction_by_replicate_id(replicate_id)
    if prediction is None:
      logger.warning("Webhook for unknown prediction %s", replicate_id)
      return {"kind": "prediction", "applied": False, "reason": "unknown prediction"}
    applied = self.apply_prediction_update(prediction, event.data)
    return {"kind": "prediction", "applied": applied}

  # Trainings ------------------------------------------------------------

  def apply_training_update(self, training: Dict[str, Any], data: Dict[str, Any]) -> bool:
    status = data.get("status")
    if not can_transition(training.get("status"), status):
      logger.info(
        "Ignoring training %s update %s -> %s",
        training.get("training_id"), training.get("status"), status,
      )
      return False

    fields: Dict[str, Any] = {"status": status}
    if data.get("output") is not None:
      fields["output"] = data["output"]
    if data.get("error"):
      fields["error"] = str(data["error"])
    if data.get("started_at"):
      fields["started_at"] = data["started_at"]
    metrics = data.get("metrics") if isinstance(data.get("metrics"), dict) else {}
    if metrics.get("predict_time") is not None:
      try:
        fields["predict_time"] = float(metrics["predict_time"])
      except (TypeError, ValueError):
        logger.warning("Ignoring malformed predict_time %r", metrics["predict_time"])
    if is_terminal(status):
      fields["completed_at"] = data.get("completed_at") or utcnow()
    self.store.update_training(training["id"], **fields)

    model_status = model_status_for_training(status)
    if model_status:
      self.store.update_model(training["model_id"], status=model_status)
    logger.info("Training %s is now %s", training.get("training_id"), status)
    return True

  # Predictions ----------------------------------------------------------

  def apply_prediction_update(self, prediction: Dict[str, Any], data: Dict[str, Any]) -> bool:
    status = data.get("status")
    if prediction.get("is_cancelled") and status != "canceled":
      return False
    if not can_transition(prediction.get("status"), status):
      logger.info(
        "Ignoring prediction %s update %s -> %s",
        prediction.get("replicate_id"), prediction.get("status"), status,
      )
      return False

    fields: Dict[str, Any] = {"status": status}
    if data.get("error"):
      fields["error"] = str(data["error"])
    if is_terminal(status):
      fields["completed_at"] = data.get("completed_at") or utcnow()

    outputs = _output_urls(data.get("output"))
    if outputs:
      fields["output"] = outputs
    if status == "succeeded" and outputs:
      storage_urls = self.rehost_outputs(prediction, outputs)
      if storage_urls:
        fields["storage_urls"] = storage_urls
      fields.update(self._caption(outputs[0], prediction.get("prompt")))
    if status == "canceled":
      fields["is_cancelled"] = True

    self.store.update_prediction(prediction["id"], **fields)
    logger.info("Prediction %s is now %s", prediction.get("replicate_id"), status)
    return True

  def rehost_outputs(self, prediction: Dict[str, Any], outputs: List[str]) -> List[str]:
    """Copy vendor output files into ``generated-images`` and return signed links."""
    stored: List[str] = []
    for index, url in enumerate(outputs):
      extension = _extension_for(url, prediction.get("format"))
      path = f"{prediction['user_id']}/{prediction['id']}_{index}.{extension}"
      try:
        response = self.session.get(url, timeout=DOWNLOAD_TIMEOUT)
        response.raise_for_status()
        content_type = (
          response.headers.get("Content-Type")
          or mimetypes.guess_type(path)[0]
          or "application/octet-stream"
        )
        self.storage.upload(GENERATED_BUCKET, path, response.content, content_type)
        stored.append(self.storage.signed_url(GENERATED_BUCKET, path, self.signed_url_ttl))
      except (requests.RequestException, StorageError) as exc:
        logger.warning("Could not re-host output %d of %s: %s", index, prediction["id"], exc)
    return stored

  def _caption(self, image_url: str, prompt: Optional[str]) -> Dict[str, Any]:
    if self.captioner is None:
      return {}
    try:
      return {"caption": self.captioner.caption_image(image_url, prompt), "caption_error": None}
    except CaptionError as exc:
      logger.warning("Captioning failed for %s: %s", image_url, exc)
      return {"caption_error": str(exc)}

  # Reconciler -----------------------------------------------------------

  def reconcile_stale(
    self,
    older_than_seconds: int,
    *,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
  ) -> Dict[str, Any]:
    """
    Poll Replicate for jobs still pending after ``older_than_seconds``.

    Returns counters of checked/updated records and the ids that could not
    be fetched.
    """
    now = now or datetime.now(timezone.utc)
    threshold = timedelta(seconds=older_than_seconds)
    summary: Dict[str, Any] = {"checked": 0, "updated": 0, "errors": []}

    predictions = self.store.list_predictions(
      user_id, status=sorted(PENDING_STATUSES), is_cancelled=False
    )
    for prediction in predictions:
      if not prediction.get("replicate_id") or not _is_older_than(prediction.get("created_at"), threshold, now):
        continue
      summary["checked"] += 1
      try:
        remote = self.replicate.get_prediction(prediction["replicate_id"])
      except ReplicateError as exc:
        logger.warning("Reconcile could not fetch prediction %s: %s", prediction["replicate_id"], exc)
        summary["errors"].append(prediction["replicate_id"])
        continue
      if self.apply_prediction_update(prediction, remote):
        summary["updated"] += 1

    for training in self.store.list_pending_trainings():
      if user_id and training.get("user_id") != user_id:
        continue
      if not _is_older_than(training.get("created_at"), threshold, now):
        continue
      summary["checked"] += 1
      try:
        remote = self.replicate.get_training(training["training_id"])
      except ReplicateError as exc:
        logger.warning("Reconcile could not fetch training %s: %s", training["training_id"], exc)
        summary["errors"].append(training["training_id"])
        continue
      if self.apply_training_update(training, remote):
        summary["updated"] += 1

    logger.info("Reconciled %d stale jobs, %d updated", summary["checked"], summary["updated"])
    return summary


__all__ = ["JobService"]
