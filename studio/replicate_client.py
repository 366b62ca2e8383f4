"""
Client helpers for the Replicate HTTP API.

Covers the small surface the studio needs: creating destination models,
looking up their latest version, starting/cancelling LoRA trainings and
starting/cancelling predictions. Every transport or API failure is raised as
:class:`ReplicateError` so route handlers can map it to a JSON response.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.replicate.com/v1"

MODEL_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]*[a-z0-9]$|^[a-z0-9]$")

TRAINER_OWNER = "ostris"
TRAINER_NAME = "flux-dev-lora-trainer"
TRAINER_VERSION = "b6af14222e6bd9be257cbc1ea4afda3cd0503e1133083b9d1de0364d8568e6ef"

EDIT_MODEL = "black-forest-labs/flux-kontext-max"

TRAINING_PARAMS: Dict[str, Any] = {
  "steps": 3,
  "lora_rank": 16,
  "optimizer": "adamw8bit",
  "batch_size": 1,
  "resolution": "512,768,1024",
  "autocaption": True,
  "trigger_word": "TOK",
  "learning_rate": 0.0004,
  "wandb_project": "flux_train_replicate",
  "wandb_save_interval": 100,
  "caption_dropout_rate": 0.05,
  "cache_latents_to_disk": False,
  "wandb_sample_interval": 100,
  "gradient_checkpointing": False,
}

TRAINING_WEBHOOK_EVENTS = ["start", "output", "logs", "completed"]
GENERATION_WEBHOOK_EVENTS = ["completed"]
EDIT_WEBHOOK_EVENTS = ["start", "completed"]


class ReplicateError(RuntimeError):
  """Raised when Replicate rejects a request or cannot be reached."""

  def __init__(self, message: str, status_code: Optional[int] = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class ReplicateRateLimitError(ReplicateError):
  """Raised when Replicate answers with HTTP 429."""


def is_valid_model_name(name: str) -> bool:
  return bool(name) and MODEL_NAME_PATTERN.match(name) is not None


def generation_input(prompt: str, aspect_ratio: Optional[str], output_format: Optional[str]) -> Dict[str, Any]:
  """Return the input payload used for LoRA text-to-image predictions."""
  return {
    "prompt": prompt,
    "model": "dev",
    "go_fast": False,
    "lora_scale": 1,
    "megapixels": "1",
    "num_outputs": 4,
    "aspect_ratio": aspect_ratio or "1:1",
    "output_format": output_format or "webp",
    "guidance_scale": 3,
    "output_quality": 100,
    "prompt_strength": 0.8,
    "extra_lora_scale": 1,
    "num_inference_steps": 28,
    "disable_safety_checker": True,
  }


def edit_input(prompt: str, image_url: str) -> Dict[str, Any]:
  return {
    "prompt": prompt.strip(),
    "input_image": image_url,
    "aspect_ratio": "match_input_image",
  }


class ReplicateClient:
  """Thin wrapper around ``requests`` bound to one API token."""

  def __init__(
    self,
    api_token: str,
    *,
    base_url: str = API_BASE_URL,
    timeout: int = 30,
    session: Optional[requests.Session] = None,
  ) -> None:
    self.api_token = api_token
    self.base_url = base_url.rstrip("/")
    self.timeout = timeout
    self.session = session or requests.Session()

  @property
  def configured(self) -> bool:
    return bool(self.api_token)

  def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not self.api_token:
      raise ReplicateError("Replicate API token is not configured.", status_code=401)

    headers = {
      "Authorization": f"Bearer {self.api_token}",
      "Content-Type": "application/json",
    }
    url = f"{self.base_url}{path}"
    try:
      response = self.session.request(method, url, headers=headers, json=payload, timeout=self.timeout)
    except requests.RequestException as exc:
      raise ReplicateError(f"Replicate request failed: {exc}") from exc

    if response.status_code == 429:
      raise ReplicateRateLimitError(
        f"Replicate responded with 429: {response.text[:200]}", status_code=429
      )
    if not response.ok:
      detail = response.text[:200] if response.text else response.reason
      message = f"Replicate responded with {response.status_code}: {detail}"
      if "rate limit" in message.lower():
        raise ReplicateRateLimitError(message, status_code=response.status_code)
      raise ReplicateError(message, status_code=response.status_code)

    if not response.content:
      return {}
    try:
      return response.json()
    except ValueError as exc:
      raise ReplicateError("Replicate did not return JSON.") from exc

  # Models ---------------------------------------------------------------

  def create_model(
    self,
    owner: str,
    name: str,
    *,
    visibility: str = "private",
    hardware: str = "gpu-t4",
  ) -> Dict[str, Any]:
    return self._request(
      "POST",
      "/models",
      {"owner": owner, "name": name, "visibility": visibility, "hardware": hardware},
    )

  def list_versions(self, owner: str, name: str) -> List[Dict[str, Any]]:
    payload = self._request("GET", f"/models/{owner}/{name}/versions")
    results = payload.get("results") if isinstance(payload, dict) else None
    return results if isinstance(results, list) else []

  def latest_version(self, owner: str, name: str) -> Optional[str]:
    """Return the newest version id for ``owner/name``, or ``None``."""
    try:
      versions = self.list_versions(owner, name)
    except ReplicateError as exc:
      logger.warning("Could not list versions for %s/%s: %s", owner, name, exc)
      return None
    if not versions:
      return None
    return versions[0].get("id")

  # Trainings ------------------------------------------------------------

  def create_training(
    self,
    destination: str,
    input_images_url: str,
    *,
    webhook: Optional[str] = None,
  ) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
      "destination": destination,
      "input": {**TRAINING_PARAMS, "input_images": input_images_url},
    }
    if webhook:
      payload["webhook"] = webhook
      payload["webhook_events_filter"] = TRAINING_WEBHOOK_EVENTS
    path = f"/models/{TRAINER_OWNER}/{TRAINER_NAME}/versions/{TRAINER_VERSION}/trainings"
    return self._request("POST", path, payload)

  def get_training(self, training_id: str) -> Dict[str, Any]:
    return self._request("GET", f"/trainings/{training_id}")

  def cancel_training(self, training_id: str) -> Dict[str, Any]:
    return self._request("POST", f"/trainings/{training_id}/cancel")

  # Predictions ----------------------------------------------------------

  def create_prediction(
    self,
    input_params: Dict[str, Any],
    *,
    version: Optional[str] = None,
    model: Optional[str] = None,
    webhook: Optional[str] = None,
    events: Optional[List[str]] = None,
  ) -> Dict[str, Any]:
    """Start a prediction against a version hash or an official model name."""
    if not version and not model:
      raise ValueError("Either version or model is required.")

    payload: Dict[str, Any] = {"input": input_params}
    if webhook:
      payload["webhook"] = webhook
      payload["webhook_events_filter"] = events or GENERATION_WEBHOOK_EVENTS

    if version:
      payload["version"] = version
      return self._request("POST", "/predictions", payload)
    return self._request("POST", f"/models/{model}/predictions", payload)

  def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
    return self._request("GET", f"/predictions/{prediction_id}")

  def cancel_prediction(self, prediction_id: str) -> Dict[str, Any]:
    return self._request("POST", f"/predictions/{prediction_id}/cancel")


__all__ = [
  "EDIT_MODEL",
  "EDIT_WEBHOOK_EVENTS",
  "GENERATION_WEBHOOK_EVENTS",
  "ReplicateClient",
  "ReplicateError",
  "ReplicateRateLimitError",
  "TRAINING_PARAMS",
  "edit_input",
  "generation_input",
  "is_valid_model_name",
]
