"""
Flask backend for the AI portrait studio.

Users upload reference photos, which are zipped and handed to a LoRA trainer
on Replicate. Once a personal model is trained, prompts are turned into
photos by Replicate predictions. Replicate reports progress through signed
webhooks; finished images are re-hosted in local storage (development) or
Amazon S3 (production) and optionally captioned with OpenAI. Records live in
SQLite or DynamoDB. A reconciler polls Replicate for jobs whose webhooks
never arrived.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import click
import jwt
from flask import Flask, jsonify, request, send_from_directory, abort
from flask_cors import CORS
from jwt import ExpiredSignatureError, InvalidTokenError
from werkzeug.security import check_password_hash, generate_password_hash

from studio.captioning import Captioner
from studio.config import Settings, load_settings
from studio.generations import GenerationHistory, ImageGeneration, PendingGeneration, reconcile
from studio.jobs import JobService
from studio.lifecycle import PENDING_STATUSES, is_terminal
from studio.logging_config import configure_logging
from studio.prompt_builder import (
  PromptSelection,
  UnknownOptionError,
  apply_preset,
  catalog_payload,
  reset,
  select,
)
from studio.reference_images import (
  ReferenceImage,
  ReferenceImageError,
  build_training_archive,
  validate_reference_images,
)
from studio.replicate_client import (
  EDIT_MODEL,
  EDIT_WEBHOOK_EVENTS,
  GENERATION_WEBHOOK_EVENTS,
  TRAINING_PARAMS,
  ReplicateClient,
  ReplicateError,
  ReplicateRateLimitError,
  edit_input,
  generation_input,
  is_valid_model_name,
)
from studio.storage import TRAINING_BUCKET, LocalStorage, S3Storage, StorageError
from studio.store import DynamoStore, SqliteStore, StoreError, utcnow
from studio.webhooks import WebhookVerificationError, parse_event, verify_signature

JWT_ALGORITHM = "HS256"

MISSING_TOKEN_ERROR = {
  "error": "Missing Replicate API token. Please add your token to the .env file or environment variables.",
  "details": "You need a Replicate API token to use this feature. Get one at https://replicate.com/account/api-tokens",
}

MODEL_NAME_ERROR = (
  "Model name can only contain lowercase letters, numbers, dashes, underscores, or periods, "
  "and cannot start or end with a dash, underscore, or period"
)


def _generate_jwt(user_id: str, email: str, secret: str, expiration_minutes: int) -> str:
  """Return a signed JWT for the provided principal."""
  issued_at = datetime.now(timezone.utc)
  payload = {
    "sub": user_id,
    "email": email,
    "exp": issued_at + timedelta(minutes=expiration_minutes),
    "iat": issued_at,
  }
  return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def _decode_jwt(token: str, secret: str) -> Dict[str, Any]:
  """Decode a JWT and return its payload."""
  return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])


def _parse_bool(value: Optional[str]) -> Optional[bool]:
  if value is None:
    return None
  return value.strip().lower() == "true"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
  if not value:
    return None
  try:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
  except ValueError:
    return None
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=timezone.utc)
  return parsed


def _public_user(record: Dict[str, Any]) -> Dict[str, Any]:
  return {"id": record["id"], "email": record["email"], "created_at": record["created_at"]}


def _build_store(settings: Settings):
  if settings.use_aws:
    return DynamoStore(settings.aws_table_prefix, region=settings.aws_region or None)
  return SqliteStore(settings.sqlite_db_path)


def _build_storage(settings: Settings):
  if settings.use_aws:
    return S3Storage(settings.aws_bucket_name, region=settings.aws_region or None)
  base_url = settings.app_url or "http://localhost:5000"
  return LocalStorage(settings.uploads_dir, settings.jwt_secret_key, base_url)


def create_app(
  settings: Optional[Settings] = None,
  *,
  store=None,
  storage=None,
  replicate=None,
  captioner=None,
) -> Flask:
  """Instantiate the Flask application and register routes."""
  settings = settings or load_settings()
  settings.validate()
  configure_logging(settings.log_level)

  app = Flask(__name__)
  CORS(app, resources={r"/*": {"origins": "*"}})

  store = store or _build_store(settings)
  storage = storage or _build_storage(settings)
  replicate = replicate or ReplicateClient(settings.replicate_api_token, timeout=settings.replicate_timeout)
  if captioner is None and settings.captions_available:
    captioner = Captioner(settings.openai_api_key, settings.openai_caption_model)
  jobs = JobService(store, storage, replicate, captioner, signed_url_ttl=settings.signed_url_ttl)
  history = GenerationHistory()

  app.config["SETTINGS"] = settings
  app.extensions["studio"] = {
    "store": store,
    "storage": storage,
    "replicate": replicate,
    "jobs": jobs,
    "history": history,
  }

  @app.errorhandler(StoreError)
  def persistence_failed(exc: StoreError):
    app.logger.exception("Persistence failed: %s", exc)
    status = 502 if settings.use_aws else 500
    return {"error": "Persistence failed", "details": str(exc)}, status

  def _unauthorized(message: str) -> None:
    response = jsonify({"error": message})
    response.status_code = 401
    abort(response)

  def _get_request_user() -> Dict[str, Any]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
      _unauthorized("Authorization header missing or invalid.")

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
      _unauthorized("Authorization header missing or invalid.")

    try:
      claims = _decode_jwt(token, settings.jwt_secret_key)
    except ExpiredSignatureError:
      _unauthorized("Token has expired.")
    except InvalidTokenError:
      _unauthorized("Token is invalid.")

    if not claims.get("sub") or not claims.get("email"):
      _unauthorized("Token payload is malformed.")
    return claims

  def _current_user_id() -> str:
    return _get_request_user()["sub"]

  def _vendor_failure(exc: ReplicateError, failure_code: str) -> Tuple[Dict[str, Any], int]:
    if isinstance(exc, ReplicateRateLimitError):
      return {
        "error": str(exc),
        "message": "You've reached the rate limit for image generation. Please try again later.",
        "details": "RATE_LIMIT_EXCEEDED",
      }, 429
    return {
      "error": str(exc),
      "message": "There was an error generating your image. Please try again.",
      "details": failure_code,
    }, 500

  def _owned_prediction(prediction_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    """Resolve a database id or a Replicate id to the caller's prediction."""
    if "-" in prediction_id:
      return store.get_prediction(prediction_id, user_id)
    return store.get_prediction_by_replicate_id(prediction_id, user_id)

  def _with_model_names(predictions: List[Dict[str, Any]], user_id: str) -> List[Dict[str, Any]]:
    names = {model["id"]: model.get("display_name") for model in store.list_models(user_id)}
    for prediction in predictions:
      prediction["model_display_name"] = names.get(prediction.get("model_id"))
    return predictions

  # Auth ------------------------------------------------------------------

  @app.route("/auth/signup", methods=["POST"])
  def signup() -> Tuple[Dict[str, Any], int]:
    """Register a new account and issue a JWT."""
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    if not email or not password:
      return {"error": "Email and password are required."}, 400

    if store.get_user_by_email(email):
      return {"error": "Email is already registered."}, 409

    user = store.create_user(email, generate_password_hash(password))
    if user is None:
      # Lost a race with a concurrent signup for the same email
      return {"error": "Email is already registered."}, 409

    token = _generate_jwt(user["id"], user["email"], settings.jwt_secret_key, settings.jwt_expiration_minutes)
    return {"token": token, "user": _public_user(user)}, 201

  @app.route("/auth/login", methods=["POST"])
  def login() -> Tuple[Dict[str, Any], int]:
    """Authenticate an existing user and return a JWT."""
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    if not email or not password:
      return {"error": "Email and password are required."}, 400

    user_record = store.get_user_by_email(email)
    if not user_record or not check_password_hash(user_record["password_hash"], password):
      return {"error": "Invalid credentials."}, 401

    token = _generate_jwt(
      user_record["id"], user_record["email"], settings.jwt_secret_key, settings.jwt_expiration_minutes
    )
    return {"token": token, "user": _public_user(user_record)}, 200

  @app.route("/auth/me", methods=["GET"])
  def session() -> Tuple[Dict[str, Any], int]:
    """Return user information for the supplied JWT."""
    claims = _get_request_user()
    user_record = store.get_user_by_email(claims["email"])
    if not user_record or user_record["id"] != claims["sub"]:
      return {"error": "User not found."}, 404
    return {"user": _public_user(user_record)}, 200

  # Credits ---------------------------------------------------------------

  @app.route("/credits", methods=["GET"])
  def credits() -> Tuple[Dict[str, Any], int]:
    """Report the caller's remaining credits; expired subscriptions are deactivated."""
    user_id = _current_user_id()
    subscription = store.get_active_subscription(user_id)
    if subscription is None:
      return {
        "has_credits": False,
        "credits_remaining": 0,
        "models_remaining": 0,
        "plan": "none",
        "subscription_active": False,
      }, 200

    end_date = _parse_datetime(subscription.get("subscription_end_date"))
    if end_date is not None and datetime.now(timezone.utc) > end_date:
      store.deactivate_subscription(user_id)
      app.logger.info("Deactivated expired subscription for %s", user_id)
      return {
        "has_credits": False,
        "credits_remaining": 0,
        "models_remaining": 0,
        "plan": subscription.get("plan"),
        "subscription_active": False,
        "expired": True,
      }, 200

    credits_remaining = int(subscription.get("credits_remaining") or 0)
    return {
      "has_credits": credits_remaining > 0,
      "credits_remaining": credits_remaining,
      "models_remaining": int(subscription.get("models_remaining") or 0),
      "plan": subscription.get("plan"),
      "subscription_active": True,
      "expired": False,
    }, 200

  # Models ----------------------------------------------------------------

  @app.route("/models", methods=["POST"])
  def create_model() -> Tuple[Dict[str, Any], int]:
    """Create a destination model on Replicate and record it."""
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    model_name = (payload.get("modelName") or "").strip()
    display_name = (payload.get("displayName") or "").strip()
    owner = (payload.get("owner") or settings.replicate_model_owner).strip()

    if not model_name or not display_name:
      return {"error": "Missing required parameters: modelName and displayName are required", "success": False}, 400
    if not is_valid_model_name(model_name):
      return {"error": MODEL_NAME_ERROR, "success": False}, 400
    if not replicate.configured:
      return MISSING_TOKEN_ERROR, 401
    if store.find_model(owner, model_name, user_id):
      return {"error": f"Model {owner}/{model_name} already exists", "success": False}, 409

    if store.consume(user_id, "models_remaining") is None:
      return {"error": "No model slots remaining: an active subscription is required", "success": False}, 403

    try:
      remote = replicate.create_model(owner, model_name)
    except ReplicateError as exc:
      store.refund(user_id, "models_remaining")
      app.logger.warning("Replicate model creation failed for %s/%s: %s", owner, model_name, exc)
      status = 429 if isinstance(exc, ReplicateRateLimitError) else 502
      return {"error": str(exc), "success": False}, status

    model = store.create_model(
      user_id,
      model_id=remote.get("name") or model_name,
      model_owner=remote.get("owner") or owner,
      display_name=display_name,
      visibility=remote.get("visibility") or "private",
      hardware=remote.get("hardware") or "gpu-t4",
    )
    return {
      "success": True,
      "model": {
        "id": model["id"],
        "name": model["model_id"],
        "owner": model["model_owner"],
        "url": f"https://replicate.com/{model['model_owner']}/{model['model_id']}",
      },
    }, 201

  @app.route("/models", methods=["GET"])
  def list_models() -> Tuple[Dict[str, Any], int]:
    """List the caller's models annotated with their latest training."""
    user_id = _current_user_id()
    status = request.args.get("status")
    is_cancelled = _parse_bool(request.args.get("is_cancelled"))
    is_deleted = bool(_parse_bool(request.args.get("is_deleted")))
    paginate = "page" in request.args or "limit" in request.args
    limit = max(1, request.args.get("limit", 10, type=int) or 10)
    page = max(1, request.args.get("page", 1, type=int) or 1)

    models: List[Dict[str, Any]] = []
    for model in store.list_models(user_id, is_deleted=is_deleted):
      trainings = store.list_trainings(model["id"], include_cancelled=True)
      latest = trainings[0] if trainings else None
      model["training_id"] = latest.get("training_id") if latest else None
      model["training_status"] = latest.get("status") if latest else None
      model["is_cancelled"] = bool(latest.get("is_cancelled")) if latest else False
      model["trainings"] = [training for training in trainings if not training.get("is_cancelled")]
      models.append(model)

    if status:
      models = [model for model in models if model["training_status"] == status]
    wanted_cancelled = bool(is_cancelled)
    models = [model for model in models if model["is_cancelled"] == wanted_cancelled]

    total = len(models)
    if paginate:
      offset = (page - 1) * limit
      models = models[offset:offset + limit]
    return {
      "success": True,
      "models": models,
      "pagination": {
        "total": total,
        "page": page if paginate else 1,
        "limit": limit if paginate else total,
        "pages": math.ceil(total / limit) if paginate else 1,
      },
    }, 200

  @app.route("/models/<model_id>", methods=["GET"])
  def get_model(model_id: str) -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    model = store.get_model(model_id, user_id)
    if model is None or model.get("is_deleted"):
      return {"error": "Model not found", "success": False}, 404

    trainings = store.list_trainings(model_id)
    model["training_id"] = trainings[0].get("training_id") if trainings else None
    model["training_status"] = trainings[0].get("status") if trainings else None
    return {"success": True, "model": model, "trainings": trainings}, 200

  @app.route("/models/<model_id>", methods=["DELETE"])
  def delete_model(model_id: str) -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    model = store.get_model(model_id, user_id)
    if model is None:
      return {"error": "Model not found", "success": False}, 404
    store.update_model(model_id, is_deleted=True)
    return {"success": True, "message": "Model marked as deleted"}, 200

  @app.route("/models/<model_id>/images", methods=["POST"])
  def upload_reference_images(model_id: str) -> Tuple[Dict[str, Any], int]:
    """Validate reference photos, zip them and store the archive for training."""
    user_id = _current_user_id()
    model = store.get_model(model_id, user_id)
    if model is None or model.get("is_deleted"):
      return {"error": "Model not found", "success": False}, 404

    uploads = request.files.getlist("files")
    images = [ReferenceImage(filename=upload.filename or "", content=upload.read()) for upload in uploads]
    try:
      descriptions = validate_reference_images(images)
    except ReferenceImageError as exc:
      return {"error": str(exc), "success": False}, 400

    archive = build_training_archive(images)
    path = f"{user_id}/{model['model_id']}_{int(time.time())}.zip"
    try:
      storage.upload(TRAINING_BUCKET, path, archive, "application/zip")
      zip_url = storage.signed_url(TRAINING_BUCKET, path, settings.signed_url_ttl)
    except StorageError as exc:
      app.logger.exception("Failed to store training archive: %s", exc)
      return {"error": "Upload failed", "details": str(exc), "success": False}, 502

    store.update_model(model_id, zip_url=zip_url, status="files_uploaded")
    return {
      "success": True,
      "zipUrl": zip_url,
      "fileCount": len(images),
      "files": descriptions,
    }, 200

  @app.route("/models/<model_id>/train", methods=["POST"])
  def train_model(model_id: str) -> Tuple[Dict[str, Any], int]:
    """Start a LoRA training run for one of the caller's models."""
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    model = store.get_model(model_id, user_id)
    if model is None or model.get("is_deleted"):
      return {"error": "Model not found", "success": False}, 404

    zip_url = payload.get("zipUrl") or model.get("zip_url")
    if not zip_url:
      return {"error": "Upload reference images before training", "success": False}, 400
    if model.get("status") == "training":
      return {"error": "Model is already training", "success": False}, 409
    if not replicate.configured:
      return MISSING_TOKEN_ERROR, 401

    destination = f"{model['model_owner']}/{model['model_id']}"
    try:
      training = replicate.create_training(destination, zip_url, webhook=settings.webhook_url)
    except ReplicateError as exc:
      app.logger.warning("Replicate training failed to start for %s: %s", destination, exc)
      status = 429 if isinstance(exc, ReplicateRateLimitError) else 502
      return {"error": str(exc), "success": False}, status

    record = store.create_training(
      model_id,
      user_id,
      training["id"],
      status=training.get("status") or "starting",
      zip_url=zip_url,
      input_params={**TRAINING_PARAMS, "input_images": zip_url},
    )
    store.update_model(model_id, status="training")
    return {
      "success": True,
      "training": {
        "id": record["id"],
        "training_id": record["training_id"],
        "status": record["status"],
        "url": f"https://replicate.com/p/{record['training_id']}",
      },
    }, 200

  @app.route("/model-version", methods=["GET"])
  def model_version() -> Tuple[Dict[str, Any], int]:
    _current_user_id()
    owner = (request.args.get("owner") or "").strip()
    name = (request.args.get("name") or "").strip()
    if not owner or not name:
      return {"error": "Both owner and name are required"}, 400
    if not replicate.configured:
      return MISSING_TOKEN_ERROR, 401

    version = replicate.latest_version(owner, name)
    if not version:
      return {"error": f"No versions found for model {owner}/{name}"}, 404
    return {"success": True, "version": version}, 200

  # Trainings -------------------------------------------------------------

  @app.route("/trainings/<training_id>", methods=["GET"])
  def training_status(training_id: str) -> Tuple[Dict[str, Any], int]:
    """Return a training's status, refreshing it from Replicate while pending."""
    user_id = _current_user_id()
    training = store.get_training_by_replicate_id(training_id, user_id)
    if training is None:
      return {"error": "Training not found"}, 404

    if not is_terminal(training.get("status")) and not training.get("is_cancelled") and replicate.configured:
      try:
        remote = replicate.get_training(training_id)
      except ReplicateError as exc:
        app.logger.warning("Could not refresh training %s: %s", training_id, exc)
      else:
        if jobs.apply_training_update(training, remote):
          training = store.get_training_by_replicate_id(training_id, user_id) or training

    return {
      "id": training["training_id"],
      "status": training.get("status"),
      "error": training.get("error"),
      "started_at": training.get("started_at"),
      "completed_at": training.get("completed_at"),
      "predict_time": training.get("predict_time"),
      "is_cancelled": bool(training.get("is_cancelled")),
    }, 200

  @app.route("/trainings/<training_id>/cancel", methods=["POST"])
  def cancel_training(training_id: str) -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    training = store.get_training_by_replicate_id(training_id, user_id)
    if training is None:
      return {"error": "Training not found", "success": False}, 404
    if is_terminal(training.get("status")):
      return {"error": f"Training already {training.get('status')}", "success": False}, 409

    vendor_cancelled = True
    try:
      replicate.cancel_training(training_id)
    except ReplicateError as exc:
      vendor_cancelled = False
      app.logger.warning("Replicate cancel failed for training %s: %s", training_id, exc)

    store.update_training(training["id"], status="canceled", is_cancelled=True, completed_at=utcnow())
    store.update_model(training["model_id"], status="training_failed")
    return {"success": True, "vendorCancelled": vendor_cancelled}, 200

  # Generation ------------------------------------------------------------

  @app.route("/generate", methods=["POST"])
  def generate() -> Tuple[Dict[str, Any], int]:
    """Start a text-to-image prediction on one of the caller's trained models."""
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    prompt = (payload.get("prompt") or "").strip()
    aspect_ratio = payload.get("aspectRatio") or "1:1"
    output_format = payload.get("outputFormat") or "webp"

    if not prompt:
      return {"error": "Prompt is required"}, 400
    if store.get_active_subscription(user_id) is None:
      return {"error": "Unauthorized: You need an active subscription to use this API"}, 403
    if not replicate.configured:
      return MISSING_TOKEN_ERROR, 401

    model_record = None
    owner = settings.replicate_model_owner
    model_name = payload.get("modelName")
    if not model_name and payload.get("modelId"):
      model_record = store.get_model(payload["modelId"], user_id)
      if model_record is None or model_record.get("status") not in {"ready", "trained"}:
        return {"error": "Selected model not found or not available"}, 404
      model_name = model_record["model_id"]
      owner = model_record.get("model_owner") or owner
    if not model_name:
      return {"error": "No valid model selected"}, 400

    version = payload.get("modelVersion") or replicate.latest_version(owner, model_name)
    if not version:
      return {"error": f"No versions found for model {owner}/{model_name}"}, 404

    credits_remaining = store.consume(user_id, "credits_remaining")
    if credits_remaining is None:
      return {"error": "Insufficient credits: You have used all your available credits"}, 403

    input_params = generation_input(prompt, aspect_ratio, output_format)
    try:
      prediction = replicate.create_prediction(
        input_params,
        version=version,
        webhook=settings.webhook_url,
        events=GENERATION_WEBHOOK_EVENTS,
      )
    except ReplicateError as exc:
      store.refund(user_id, "credits_remaining")
      app.logger.warning("Replicate prediction failed for %s/%s: %s", owner, model_name, exc)
      return _vendor_failure(exc, "GENERATION_FAILED")

    record = store.create_prediction(
      user_id,
      prediction["id"],
      model_id=model_record["id"] if model_record else None,
      prompt=prompt,
      aspect_ratio=aspect_ratio,
      format=output_format,
      status=prediction.get("status") or "starting",
      input=input_params,
    )
    return {
      "id": record["id"],
      "replicate_id": record["replicate_id"],
      "status": record["status"],
      "message": "Prediction started successfully. You will be notified when it completes.",
      "urls": prediction.get("urls"),
      "credits_remaining": credits_remaining,
    }, 200

  @app.route("/edit", methods=["POST"])
  def edit() -> Tuple[Dict[str, Any], int]:
    """Start an image edit of one of the caller's generated photos."""
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    prompt = (payload.get("prompt") or "").strip()
    image_url = (payload.get("imageUrl") or "").strip()
    source_id = payload.get("originalPredictionId")

    if not prompt or not image_url:
      return {"error": "Prompt and imageUrl are required"}, 400
    if source_id and store.get_prediction(source_id, user_id) is None:
      return {"error": "Original prediction not found"}, 404
    if store.get_active_subscription(user_id) is None:
      return {"error": "Unauthorized: You need an active subscription to use this API"}, 403
    if not replicate.configured:
      return MISSING_TOKEN_ERROR, 401

    credits_remaining = store.consume(user_id, "credits_remaining")
    if credits_remaining is None:
      return {"error": "Insufficient credits: You have used all your available credits"}, 403

    input_params = edit_input(prompt, image_url)
    try:
      prediction = replicate.create_prediction(
        input_params,
        model=EDIT_MODEL,
        webhook=settings.webhook_url,
        events=EDIT_WEBHOOK_EVENTS,
      )
    except ReplicateError as exc:
      store.refund(user_id, "credits_remaining")
      app.logger.warning("Replicate edit failed: %s", exc)
      return _vendor_failure(exc, "EDIT_FAILED")

    record = store.create_prediction(
      user_id,
      prediction["id"],
      prompt=prompt,
      aspect_ratio="match_input_image",
      status=prediction.get("status") or "starting",
      input=input_params,
      is_edit=True,
      source_prediction_id=source_id,
      source_image_url=image_url,
    )
    return {
      "id": record["id"],
      "replicate_id": record["replicate_id"],
      "status": record["status"],
      "message": "Edit started successfully. You will be notified when it completes.",
      "credits_remaining": credits_remaining,
    }, 200

  # Predictions -----------------------------------------------------------

  @app.route("/predictions", methods=["GET"])
  def list_predictions() -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    limit = max(1, request.args.get("limit", 50, type=int) or 50)
    filters: Dict[str, Any] = {"is_deleted": bool(_parse_bool(request.args.get("is_deleted")))}
    if request.args.get("status"):
      filters["status"] = request.args["status"]
    is_cancelled = _parse_bool(request.args.get("is_cancelled"))
    if is_cancelled is not None:
      filters["is_cancelled"] = is_cancelled

    predictions = store.list_predictions(user_id, **filters)
    if _parse_bool(request.args.get("has_liked_images")):
      predictions = [item for item in predictions if item.get("liked_images")]
    predictions = _with_model_names(predictions[:limit], user_id)
    return {
      "success": True,
      "predictions": predictions,
      "pagination": {"limit": limit, "total": len(predictions)},
    }, 200

  @app.route("/predictions/pending", methods=["GET"])
  def pending_predictions() -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    predictions = store.list_predictions(
      user_id, status=sorted(PENDING_STATUSES), is_deleted=False, is_cancelled=False
    )
    return {"success": True, "predictions": _with_model_names(predictions, user_id)}, 200

  @app.route("/predictions/status", methods=["GET"])
  def prediction_status() -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    replicate_id = (request.args.get("replicate_id") or "").strip()
    if not replicate_id:
      return {"error": "replicate_id is required"}, 400

    prediction = store.get_prediction_by_replicate_id(replicate_id, user_id)
    if prediction is None:
      return {"error": "Prediction not found"}, 404
    return {
      "id": prediction["id"],
      "replicate_id": prediction["replicate_id"],
      "status": prediction.get("status"),
      "output": prediction.get("output"),
      "storage_urls": prediction.get("storage_urls"),
      "error": prediction.get("error"),
      "caption": prediction.get("caption"),
      "is_cancelled": bool(prediction.get("is_cancelled")),
      "completed_at": prediction.get("completed_at"),
    }, 200

  @app.route("/predictions/<prediction_id>/cancel", methods=["POST"])
  def cancel_prediction(prediction_id: str) -> Tuple[Dict[str, Any], int]:
    """Cancel by database id or Replicate id; the local record is cancelled even if Replicate fails."""
    user_id = _current_user_id()
    prediction = _owned_prediction(prediction_id, user_id)
    if prediction is None or not prediction.get("replicate_id"):
      return {"error": "No replicate_id found for this prediction"}, 404
    if is_terminal(prediction.get("status")):
      return {"error": f"Prediction already {prediction.get('status')}"}, 409

    message = "Prediction cancelled successfully"
    try:
      replicate.cancel_prediction(prediction["replicate_id"])
    except ReplicateError as exc:
      app.logger.warning("Replicate cancel failed for %s: %s", prediction["replicate_id"], exc)
      message = "Prediction marked as cancelled in database (Replicate API error ignored)"

    store.update_prediction(prediction["id"], status="canceled", is_cancelled=True, completed_at=utcnow())
    return {"success": True, "message": message}, 200

  @app.route("/predictions/<prediction_id>/favorite", methods=["POST"])
  def favorite(prediction_id: str) -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    image_url = payload.get("imageUrl")
    is_liked = payload.get("isLiked")
    if not image_url or not isinstance(is_liked, bool):
      return {"error": "Missing required fields: imageUrl, isLiked"}, 400

    prediction = store.get_prediction(prediction_id)
    if prediction is None:
      return {"error": "Prediction not found"}, 404
    if prediction.get("user_id") != user_id:
      return {"error": "Unauthorized to modify this prediction"}, 403
    if image_url not in (prediction.get("storage_urls") or []):
      return {"error": "Image URL not found in this prediction"}, 400

    liked = list(prediction.get("liked_images") or [])
    if is_liked and image_url not in liked:
      liked.append(image_url)
    elif not is_liked:
      liked = [url for url in liked if url != image_url]
    store.update_prediction(prediction_id, liked_images=liked)
    return {"success": True, "likedImages": liked}, 200

  @app.route("/predictions/<prediction_id>", methods=["DELETE"])
  def delete_prediction(prediction_id: str) -> Tuple[Dict[str, Any], int]:
    """Remove the stored images of a prediction and soft-delete the record."""
    user_id = _current_user_id()
    prediction = _owned_prediction(prediction_id, user_id)
    if prediction is None:
      return {"error": "Prediction not found"}, 404

    payload = request.get_json(silent=True) or {}
    urls = payload.get("urls") if isinstance(payload.get("urls"), list) else None
    owned_urls = set(prediction.get("storage_urls") or [])
    results: List[Dict[str, Any]] = []
    for url in urls or prediction.get("storage_urls") or []:
      location = storage.parse_url(url) if isinstance(url, str) else None
      if location is None:
        results.append({"url": url, "success": False, "error": "Unrecognized signed URL format"})
        continue
      # Only files of this prediction or under the caller's own prefix.
      if url not in owned_urls and not location[1].startswith(f"{user_id}/"):
        app.logger.warning("User %s tried to delete foreign file %s/%s", user_id, *location)
        results.append({"url": url, "success": False, "error": "File does not belong to this user"})
        continue
      try:
        storage.remove(*location)
      except StorageError as exc:
        app.logger.warning("Failed to remove %s: %s", url, exc)
        results.append({"url": url, "success": False, "error": str(exc)})
      else:
        results.append({"url": url, "success": True, "error": None})

    store.update_prediction(prediction["id"], is_deleted=True)
    return {
      "success": True,
      "message": "Files deleted and record marked as deleted",
      "filesDeletionResults": results,
      "databaseUpdateSuccess": True,
    }, 200

  @app.route("/predictions/<prediction_id>/refresh", methods=["POST"])
  def refresh_urls(prediction_id: str) -> Tuple[Dict[str, Any], int]:
    """Re-sign the stored image links of a prediction."""
    user_id = _current_user_id()
    prediction = store.get_prediction(prediction_id)
    if prediction is None:
      return {"error": "Prediction not found"}, 404
    if prediction.get("user_id") != user_id:
      return {"error": "Unauthorized access to prediction"}, 403
    if not prediction.get("storage_urls"):
      return {"error": "No images to refresh"}, 400

    def _resign(url: str) -> Optional[str]:
      location = storage.parse_url(url)
      if location is None:
        return None
      try:
        return storage.signed_url(*location, settings.signed_url_ttl)
      except StorageError as exc:
        app.logger.warning("Could not re-sign %s: %s", url, exc)
        return None

    mapping = {url: _resign(url) for url in prediction["storage_urls"]}
    refreshed = [url for url in mapping.values() if url]
    if not refreshed:
      return {"error": "Failed to refresh any URLs"}, 500

    liked = [mapping.get(url) or url for url in prediction.get("liked_images") or []]
    store.update_prediction(prediction_id, storage_urls=refreshed, liked_images=liked)
    return {"success": True, "urls": refreshed}, 200

  @app.route("/predictions/reconcile", methods=["POST"])
  def reconcile_predictions() -> Tuple[Dict[str, Any], int]:
    """Poll Replicate for the caller's jobs that have been pending too long."""
    user_id = _current_user_id()
    if not replicate.configured:
      return MISSING_TOKEN_ERROR, 401
    summary = jobs.reconcile_stale(settings.reconcile_after_seconds, user_id=user_id)
    return {"success": True, **summary}, 200

  # History and client reconciliation ------------------------------------

  @app.route("/history", methods=["GET"])
  def get_history() -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    return {"history": [item.to_dict() for item in history.list(user_id)]}, 200

  @app.route("/history", methods=["POST"])
  def add_history() -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    if not payload.get("id"):
      return {"error": "Generation id is required"}, 400
    images = payload.get("images")
    if not payload.get("prompt") or not isinstance(images, list) or not images:
      return {"error": "Invalid request body. Required fields: prompt, images"}, 400
    generation = history.add(user_id, ImageGeneration.from_dict(payload))
    return {"success": True, "generation": generation.to_dict()}, 200

  @app.route("/history", methods=["DELETE"])
  def delete_history() -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    generation_id = request.args.get("id") or payload.get("id")
    if not generation_id:
      return {"error": "Generation id is required"}, 400
    removed = history.delete(user_id, generation_id)
    return {"success": True, "removed": removed}, 200

  @app.route("/generations/sync", methods=["POST"])
  def sync_generations() -> Tuple[Dict[str, Any], int]:
    """Reconcile the client's pending generations against stored predictions."""
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    raw_pending = payload.get("pending") or []
    if not isinstance(raw_pending, list) or any(not isinstance(item, dict) or not item.get("id") for item in raw_pending):
      return {"error": "pending must be a list of generations with ids"}, 400

    pending = [PendingGeneration.from_dict(item) for item in raw_pending]
    result = reconcile(
      pending,
      history.list(user_id),
      lambda replicate_id: store.get_prediction_by_replicate_id(replicate_id, user_id),
    )
    for generation in reversed(result.completed):
      history.add(user_id, generation)
    return result.to_dict(), 200

  # Prompt builder --------------------------------------------------------

  @app.route("/prompt/options", methods=["GET"])
  def prompt_options() -> Tuple[Dict[str, Any], int]:
    _current_user_id()
    return catalog_payload(), 200

  @app.route("/prompt/compose", methods=["POST"])
  def prompt_compose() -> Tuple[Dict[str, Any], int]:
    """Apply one prompt-builder action and return the updated prompt and selection."""
    _current_user_id()
    payload = request.get_json(silent=True) or {}
    prompt = payload.get("prompt") or ""
    selection = PromptSelection.from_dict(payload.get("selection"))
    action = payload.get("action") or "select"

    try:
      if action == "select":
        if not payload.get("category") or not payload.get("value"):
          return {"error": "category and value are required"}, 400
        prompt, selection = select(prompt, selection, payload["category"], payload["value"])
      elif action == "preset":
        prompt, selection = apply_preset(prompt, selection, payload.get("preset"))
      elif action == "reset":
        prompt, selection = reset(prompt, selection)
      else:
        return {"error": f"Unknown action: {action}"}, 400
    except UnknownOptionError as exc:
      return {"error": str(exc)}, 400
    return {"prompt": prompt, "selection": selection.to_dict()}, 200

  # Feedback --------------------------------------------------------------

  @app.route("/feedback", methods=["POST"])
  def feedback() -> Tuple[Dict[str, Any], int]:
    user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    text = (payload.get("feedback") or "").strip()
    if not text:
      return {"error": "Feedback text is required"}, 400
    record = store.add_feedback(user_id, text)
    return {"success": True, "id": record["id"]}, 200

  # Webhooks --------------------------------------------------------------

  @app.route("/webhook", methods=["GET"])
  def webhook_health() -> Tuple[Dict[str, str], int]:
    return {"status": "ok", "message": "Webhook endpoint is active"}, 200

  @app.route("/webhook", methods=["POST"])
  def webhook() -> Tuple[Dict[str, Any], int]:
    """Verify, deduplicate and apply a Replicate status notification."""
    body = request.get_data(as_text=True)
    webhook_id = request.headers.get("webhook-id", "")
    try:
      verify_signature(
        settings.replicate_webhook_secret,
        webhook_id,
        request.headers.get("webhook-timestamp", ""),
        body,
        request.headers.get("webhook-signature", ""),
        tolerance=settings.webhook_tolerance_seconds,
      )
      event = parse_event(body)
    except WebhookVerificationError as exc:
      app.logger.warning("Rejected webhook %s: %s", webhook_id or "<no id>", exc)
      return {"error": "Invalid webhook", "details": str(exc)}, 401

    if store.has_webhook_event(webhook_id):
      app.logger.info("Webhook %s already processed", webhook_id)
      return {"success": True, "duplicate": True}, 200

    # Record only after processing so a failed delivery can be retried.
    result = jobs.handle_event(event) if event is not None else {"ignored": True}
    if not store.record_webhook_event(webhook_id):
      app.logger.info("Webhook %s was processed concurrently", webhook_id)
    return {"success": True, **result}, 200

  # Misc ------------------------------------------------------------------

  @app.route("/health", methods=["GET"])
  def health() -> Tuple[Dict[str, str], int]:
    """Simple health-check endpoint."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}, 200

  if isinstance(storage, LocalStorage):
    @app.route("/uploads/sign/<bucket>/<path:object_path>", methods=["GET"])
    def serve_upload(bucket: str, object_path: str):
      """Serve locally stored files to holders of a valid signed link."""
      if not storage.verify_token(bucket, object_path, request.args.get("token", "")):
        return {"error": "Invalid or expired link"}, 403
      return send_from_directory(storage.root / bucket, object_path)

  _register_commands(app)
  return app


def _register_commands(app: Flask) -> None:
  @click.command("grant-subscription")
  @click.argument("email")
  @click.option("--plan", default="pro", show_default=True)
  @click.option("--credits", "credits_", default=100, show_default=True, type=int)
  @click.option("--models", default=1, show_default=True, type=int)
  @click.option("--days", default=30, show_default=True, type=int)
  def grant_subscription(email: str, plan: str, credits_: int, models: int, days: int) -> None:
    """Create or refresh an active subscription for EMAIL."""
    store = app.extensions["studio"]["store"]
    user = store.get_user_by_email(email)
    if user is None:
      raise click.ClickException(f"No user registered with {email}")
    end_date = (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()
    subscription = store.upsert_subscription(
      user["id"], plan=plan, credits=credits_, models=models, end_date=end_date
    )
    click.echo(
      f"{email}: plan={subscription.get('plan')} credits={subscription.get('credits_remaining')} "
      f"models={subscription.get('models_remaining')} until {end_date}"
    )

  @click.command("reconcile")
  @click.option("--older-than", default=None, type=int, help="Seconds a job must have been pending.")
  def reconcile_command(older_than: Optional[int]) -> None:
    """Poll Replicate for jobs whose webhooks never arrived."""
    settings = app.config["SETTINGS"]
    jobs = app.extensions["studio"]["jobs"]
    threshold = settings.reconcile_after_seconds if older_than is None else older_than
    summary = jobs.reconcile_stale(threshold)
    click.echo(f"checked={summary['checked']} updated={summary['updated']} errors={len(summary['errors'])}")

  app.cli.add_command(grant_subscription)
  app.cli.add_command(reconcile_command)


if __name__ == "__main__":
  flask_app = create_app()
  flask_app.run(host="0.0.0.0", port=5000, debug=True)
