import io
import json
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit

import pytest

from conftest import WEBHOOK_SECRET, iso_ago, make_image_bytes
from studio.replicate_client import EDIT_MODEL, ReplicateError, ReplicateRateLimitError
from studio.webhooks import compute_signature


def _deliver(client, payload, webhook_id="msg_1", secret=WEBHOOK_SECRET):
  body = json.dumps(payload)
  timestamp = str(int(time.time()))
  signature = compute_signature(secret, webhook_id, timestamp, body)
  return client.post(
    "/webhook",
    data=body,
    content_type="application/json",
    headers={
      "webhook-id": webhook_id,
      "webhook-timestamp": timestamp,
      "webhook-signature": f"v1,{signature}",
    },
  )


def _local_path(url):
  parts = urlsplit(url)
  return f"{parts.path}?{parts.query}"


def _generate(client, headers, **overrides):
  payload = {"prompt": "TOK smiling", "modelName": "face", "aspectRatio": "3:4", "outputFormat": "png"}
  payload.update(overrides)
  return client.post("/generate", json=payload, headers=headers)


# Auth ----------------------------------------------------------------------


def test_signup_login_and_me(client, signup):
  user, headers = signup()

  login = client.post("/auth/login", json={"email": "ADA@example.com", "password": "s3cret!"})
  me = client.get("/auth/me", headers=headers)

  assert login.status_code == 200
  assert login.get_json()["user"]["id"] == user["id"]
  assert me.get_json()["user"]["email"] == "ada@example.com"


def test_signup_rejects_duplicates_and_missing_fields(client, signup):
  signup()

  assert client.post("/auth/signup", json={"email": "ada@example.com", "password": "x"}).status_code == 409
  assert client.post("/auth/signup", json={"email": "bob@example.com"}).status_code == 400


def test_login_with_wrong_password(client, signup):
  signup()

  response = client.post("/auth/login", json={"email": "ada@example.com", "password": "nope"})

  assert response.status_code == 401
  assert response.get_json()["error"] == "Invalid credentials."


def test_protected_routes_require_a_valid_token(client):
  missing = client.get("/credits")
  invalid = client.get("/credits", headers={"Authorization": "Bearer not-a-jwt"})

  assert missing.status_code == 401
  assert missing.get_json()["error"] == "Authorization header missing or invalid."
  assert invalid.get_json()["error"] == "Token is invalid."


def test_health(client):
  assert client.get("/health").get_json()["status"] == "ok"
  assert client.get("/webhook").get_json()["status"] == "ok"


# Credits -------------------------------------------------------------------


def test_credits_without_subscription(client, signup):
  _, headers = signup()

  body = client.get("/credits", headers=headers).get_json()

  assert body["has_credits"] is False
  assert body["plan"] == "none"


def test_credits_with_active_subscription(client, subscriber):
  _, headers = subscriber

  body = client.get("/credits", headers=headers).get_json()

  assert body == {
    "has_credits": True,
    "credits_remaining": 3,
    "models_remaining": 1,
    "plan": "pro",
    "subscription_active": True,
    "expired": False,
  }


def test_expired_subscription_is_deactivated(client, signup, store):
  user, headers = signup()
  store.upsert_subscription(user["id"], plan="pro", credits=5, models=1, end_date=iso_ago(days=1))

  body = client.get("/credits", headers=headers).get_json()

  assert body["expired"] is True
  assert body["subscription_active"] is False
  assert store.get_active_subscription(user["id"]) is None


# Models and training -------------------------------------------------------


def _create_model(client, headers, name="face"):
  return client.post("/models", json={"modelName": name, "displayName": "My Face"}, headers=headers)


def test_create_model_consumes_a_model_slot(client, subscriber, store, replicate):
  user, headers = subscriber

  response = _create_model(client, headers)

  assert response.status_code == 201
  model = response.get_json()["model"]
  assert model["url"] == "https://replicate.com/arthurbnhm/face"
  assert store.get_subscription(user["id"])["models_remaining"] == 0
  assert store.get_model(model["id"])["status"] == "created"
  assert _create_model(client, headers, "other").status_code == 403


def test_create_model_validation(client, subscriber):
  _, headers = subscriber

  assert _create_model(client, headers, "Bad Name").status_code == 400
  assert client.post("/models", json={"modelName": "face"}, headers=headers).status_code == 400
  assert _create_model(client, headers).status_code == 201
  assert _create_model(client, headers).status_code == 409


def test_create_model_refunds_slot_on_vendor_failure(client, subscriber, store, replicate):
  user, headers = subscriber
  replicate.fail_with = ReplicateError("boom", status_code=500)

  response = _create_model(client, headers)

  assert response.status_code == 502
  assert store.get_subscription(user["id"])["models_remaining"] == 1


@pytest.fixture
def model(client, subscriber):
  _, headers = subscriber
  return _create_model(client, headers).get_json()["model"]


def _upload(client, headers, model_id, files):
  data = {"files": [(io.BytesIO(content), name) for name, content in files]}
  return client.post(f"/models/{model_id}/images", data=data, headers=headers, content_type="multipart/form-data")


def test_upload_reference_images_stores_archive(client, subscriber, model, store):
  _, headers = subscriber

  response = _upload(
    client, headers, model["id"], [("a.jpg", make_image_bytes("JPEG")), ("b.png", make_image_bytes("PNG"))]
  )

  body = response.get_json()
  assert response.status_code == 200
  assert body["fileCount"] == 2
  assert store.get_model(model["id"])["status"] == "files_uploaded"

  download = client.get(_local_path(body["zipUrl"]))
  assert download.status_code == 200
  assert download.data[:2] == b"PK"


def test_upload_rejects_bad_images(client, subscriber, model):
  _, headers = subscriber

  response = _upload(client, headers, model["id"], [("a.jpg", b"nope")])

  assert response.status_code == 400


def test_signed_upload_links_require_a_valid_token(client, subscriber, model):
  _, headers = subscriber
  body = _upload(client, headers, model["id"], [("a.jpg", make_image_bytes())]).get_json()
  path = urlsplit(body["zipUrl"]).path

  assert client.get(path + "?token=forged").status_code == 403


def test_train_model_starts_training(client, subscriber, model, store, replicate):
  user, headers = subscriber
  _upload(client, headers, model["id"], [("a.jpg", make_image_bytes())])

  response = client.post(f"/models/{model['id']}/train", headers=headers)

  training = response.get_json()["training"]
  assert response.status_code == 200
  assert store.get_model(model["id"])["status"] == "training"
  assert store.get_training_by_replicate_id(training["training_id"], user["id"])["status"] == "starting"
  call = [call for call in replicate.calls if call[0] == "create_training"][0]
  assert call[1][0] == "arthurbnhm/face"
  assert call[2]["webhook"] == "http://studio.test/webhook"
  assert client.post(f"/models/{model['id']}/train", headers=headers).status_code == 409


def test_train_requires_uploaded_images(client, subscriber, model):
  _, headers = subscriber

  assert client.post(f"/models/{model['id']}/train", headers=headers).status_code == 400


def test_training_webhook_marks_model_trained(client, subscriber, model, store):
  _, headers = subscriber
  _upload(client, headers, model["id"], [("a.jpg", make_image_bytes())])
  training = client.post(f"/models/{model['id']}/train", headers=headers).get_json()["training"]

  response = _deliver(client, {"training": {"id": training["training_id"], "status": "succeeded"}})

  assert response.get_json() == {"success": True, "kind": "training", "applied": True}
  assert store.get_model(model["id"])["status"] == "trained"
  status = client.get(f"/trainings/{training['training_id']}", headers=headers).get_json()
  assert status["status"] == "succeeded"
  listed = client.get("/models", headers=headers).get_json()
  assert listed["models"][0]["training_status"] == "succeeded"


def test_cancel_training(client, subscriber, model, store):
  _, headers = subscriber
  _upload(client, headers, model["id"], [("a.jpg", make_image_bytes())])
  training = client.post(f"/models/{model['id']}/train", headers=headers).get_json()["training"]

  response = client.post(f"/trainings/{training['training_id']}/cancel", headers=headers)

  assert response.get_json()["success"] is True
  assert store.get_model(model["id"])["status"] == "training_failed"
  assert client.post(f"/trainings/{training['training_id']}/cancel", headers=headers).status_code == 409
  assert client.get("/models", headers=headers).get_json()["models"] == []
  assert len(client.get("/models?is_cancelled=true", headers=headers).get_json()["models"]) == 1


def test_list_models_paginates(client, signup, store):
  user, headers = signup()
  for index in range(3):
    store.create_model(user["id"], model_id=f"m{index}", model_owner="owner", display_name=str(index))

  body = client.get("/models?page=2&limit=2", headers=headers).get_json()

  assert body["pagination"] == {"total": 3, "page": 2, "limit": 2, "pages": 2}
  assert len(body["models"]) == 1


def test_get_and_delete_model(client, subscriber, model):
  _, headers = subscriber

  assert client.get(f"/models/{model['id']}", headers=headers).get_json()["model"]["model_id"] == "face"
  assert client.delete(f"/models/{model['id']}", headers=headers).status_code == 200
  assert client.get(f"/models/{model['id']}", headers=headers).status_code == 404


def test_model_version(client, subscriber):
  _, headers = subscriber

  assert client.get("/model-version?owner=o&name=n", headers=headers).get_json()["version"] == "version-abc"
  assert client.get("/model-version?owner=o", headers=headers).status_code == 400


# Generation ----------------------------------------------------------------


def test_generate_starts_prediction_and_decrements_credit(client, subscriber, store, replicate):
  user, headers = subscriber

  response = _generate(client, headers)

  body = response.get_json()
  assert response.status_code == 200
  assert body["credits_remaining"] == 2
  stored = store.get_prediction(body["id"])
  assert stored["replicate_id"] == body["replicate_id"]
  assert stored["input"]["aspect_ratio"] == "3:4"
  call = [call for call in replicate.calls if call[0] == "create_prediction"][0]
  assert call[2]["version"] == "version-abc"
  assert call[2]["events"] == ["completed"]


def test_generate_validation(client, signup, subscriber):
  _, headers = subscriber
  _, other_headers = signup("bob@example.com")

  assert _generate(client, headers, prompt="  ").status_code == 400
  assert _generate(client, other_headers).status_code == 403
  assert _generate(client, headers, modelName=None).status_code == 400
  assert _generate(client, headers, modelName=None, modelId="missing").status_code == 404


def test_generate_with_stored_model_requires_trained_status(client, subscriber, model, store):
  _, headers = subscriber

  assert _generate(client, headers, modelName=None, modelId=model["id"]).status_code == 404
  store.update_model(model["id"], status="trained")
  response = _generate(client, headers, modelName=None, modelId=model["id"])
  assert response.status_code == 200
  assert store.get_prediction(response.get_json()["id"])["model_id"] == model["id"]


def test_generate_stops_when_credits_run_out(client, subscriber):
  _, headers = subscriber
  for _ in range(3):
    assert _generate(client, headers).status_code == 200

  response = _generate(client, headers)

  assert response.status_code == 403
  assert "Insufficient credits" in response.get_json()["error"]


@pytest.mark.parametrize(
  "error,status,details",
  [
    (ReplicateRateLimitError("429 slow down", status_code=429), 429, "RATE_LIMIT_EXCEEDED"),
    (ReplicateError("boom", status_code=500), 500, "GENERATION_FAILED"),
  ],
)
def test_generate_refunds_credit_on_vendor_failure(client, subscriber, store, replicate, error, status, details):
  user, headers = subscriber
  replicate.fail_with = error

  response = _generate(client, headers)

  assert response.status_code == status
  assert response.get_json()["details"] == details
  assert store.get_subscription(user["id"])["credits_remaining"] == 3


def test_edit_starts_edit_prediction(client, subscriber, store, replicate):
  _, headers = subscriber
  source = _generate(client, headers).get_json()

  response = client.post(
    "/edit",
    json={"prompt": "add a hat", "imageUrl": "https://img/a.png", "originalPredictionId": source["id"]},
    headers=headers,
  )

  stored = store.get_prediction(response.get_json()["id"])
  assert response.status_code == 200
  assert stored["is_edit"] is True
  assert stored["source_prediction_id"] == source["id"]
  assert [call for call in replicate.calls if call[0] == "create_prediction"][-1][2]["model"] == EDIT_MODEL


def test_edit_failure_reports_edit_code(client, subscriber, replicate):
  _, headers = subscriber
  replicate.fail_with = ReplicateError("bad image")

  response = client.post("/edit", json={"prompt": "x", "imageUrl": "https://img/a.png"}, headers=headers)

  assert response.status_code == 500
  assert response.get_json()["details"] == "EDIT_FAILED"


def test_edit_requires_owned_source(client, subscriber):
  _, headers = subscriber

  response = client.post(
    "/edit", json={"prompt": "x", "imageUrl": "https://img/a.png", "originalPredictionId": "nope"}, headers=headers
  )

  assert response.status_code == 404


# Webhooks and predictions --------------------------------------------------


@pytest.fixture
def finished(client, subscriber, store):
  """A generation whose success webhook has been delivered."""
  _, headers = subscriber
  started = _generate(client, headers).get_json()
  response = _deliver(
    client,
    {"id": started["replicate_id"], "status": "succeeded", "output": ["https://cdn/a.png", "https://cdn/b.png"]},
  )
  assert response.get_json()["applied"] is True
  return store.get_prediction(started["id"]), headers


def test_success_webhook_rehosts_outputs(client, finished):
  prediction, headers = finished

  assert prediction["status"] == "succeeded"
  assert len(prediction["storage_urls"]) == 2
  image = client.get(_local_path(prediction["storage_urls"][0]))
  assert image.status_code == 200
  assert image.data == b"image-bytes"


def test_webhook_replays_are_acknowledged_once(client, subscriber, store):
  _, headers = subscriber
  started = _generate(client, headers).get_json()
  payload = {"id": started["replicate_id"], "status": "failed", "error": "nsfw"}

  first = _deliver(client, payload, webhook_id="msg_dup")
  second = _deliver(client, payload, webhook_id="msg_dup")

  assert first.get_json()["applied"] is True
  assert second.get_json() == {"success": True, "duplicate": True}


def test_webhook_late_status_does_not_regress(client, finished, store):
  prediction, _ = finished

  response = _deliver(client, {"id": prediction["replicate_id"], "status": "processing"}, webhook_id="msg_late")

  assert response.get_json()["applied"] is False
  assert store.get_prediction(prediction["id"])["status"] == "succeeded"


def test_webhook_rejects_bad_signatures(client):
  forged = _deliver(client, {"id": "x", "status": "succeeded"}, secret="whsec_d3Jvbmc=")
  unsigned = client.post("/webhook", data="{}", content_type="application/json")

  assert forged.status_code == 401
  assert unsigned.status_code == 401


def test_webhook_with_non_ascii_signature_is_rejected(client):
  response = client.post(
    "/webhook",
    data="{}",
    content_type="application/json",
    headers={"webhook-id": "msg_x", "webhook-timestamp": str(int(time.time())), "webhook-signature": "v1,éé"},
  )

  assert response.status_code == 401


def test_failed_processing_leaves_delivery_retryable(app, client, subscriber, monkeypatch):
  _, headers = subscriber
  started = _generate(client, headers).get_json()
  payload = {"id": started["replicate_id"], "status": "failed", "error": "nsfw"}
  jobs = app.extensions["studio"]["jobs"]
  handle_event = jobs.handle_event

  def broken(event):
    raise RuntimeError("database went away")

  monkeypatch.setattr(jobs, "handle_event", broken)
  with pytest.raises(RuntimeError):
    _deliver(client, payload, webhook_id="msg_retry")
  monkeypatch.setattr(jobs, "handle_event", handle_event)

  retry = _deliver(client, payload, webhook_id="msg_retry")
  replay = _deliver(client, payload, webhook_id="msg_retry")

  assert retry.get_json()["applied"] is True
  assert replay.get_json() == {"success": True, "duplicate": True}


def test_unrecognised_webhook_payload_is_ignored(client):
  response = _deliver(client, {"hello": "world"}, webhook_id="msg_other")

  assert response.get_json() == {"success": True, "ignored": True}


def test_prediction_listing_and_status(client, finished, subscriber):
  prediction, headers = finished
  _generate(client, headers)

  listed = client.get("/predictions", headers=headers).get_json()
  succeeded = client.get("/predictions?status=succeeded", headers=headers).get_json()
  pending = client.get("/predictions/pending", headers=headers).get_json()
  status = client.get(f"/predictions/status?replicate_id={prediction['replicate_id']}", headers=headers).get_json()

  assert listed["pagination"]["total"] == 2
  assert [item["id"] for item in succeeded["predictions"]] == [prediction["id"]]
  assert len(pending["predictions"]) == 1
  assert status["storage_urls"] == prediction["storage_urls"]
  assert client.get("/predictions/status", headers=headers).status_code == 400
  assert client.get("/predictions/status?replicate_id=zzz", headers=headers).status_code == 404


def test_predictions_are_private(client, finished, signup):
  prediction, _ = finished
  _, other_headers = signup("eve@example.com")

  assert client.get("/predictions", headers=other_headers).get_json()["predictions"] == []
  response = client.post(
    f"/predictions/{prediction['id']}/favorite",
    json={"imageUrl": prediction["storage_urls"][0], "isLiked": True},
    headers=other_headers,
  )
  assert response.status_code == 403


def test_favorite_toggles_liked_images(client, finished):
  prediction, headers = finished
  url = prediction["storage_urls"][1]

  liked = client.post(f"/predictions/{prediction['id']}/favorite", json={"imageUrl": url, "isLiked": True}, headers=headers)
  again = client.post(f"/predictions/{prediction['id']}/favorite", json={"imageUrl": url, "isLiked": True}, headers=headers)
  favourites = client.get("/predictions?has_liked_images=true", headers=headers).get_json()
  unliked = client.post(f"/predictions/{prediction['id']}/favorite", json={"imageUrl": url, "isLiked": False}, headers=headers)

  assert liked.get_json()["likedImages"] == [url]
  assert again.get_json()["likedImages"] == [url]
  assert len(favourites["predictions"]) == 1
  assert unliked.get_json()["likedImages"] == []


def test_favorite_validation(client, finished):
  prediction, headers = finished

  assert client.post(
    f"/predictions/{prediction['id']}/favorite", json={"imageUrl": "https://elsewhere/x.png", "isLiked": True}, headers=headers
  ).status_code == 400
  assert client.post(
    f"/predictions/{prediction['id']}/favorite", json={"imageUrl": "x", "isLiked": "yes"}, headers=headers
  ).status_code == 400


def test_refresh_resigns_urls(client, finished, store):
  prediction, headers = finished

  response = client.post(f"/predictions/{prediction['id']}/refresh", headers=headers)

  urls = response.get_json()["urls"]
  assert len(urls) == 2
  assert client.get(_local_path(urls[0])).status_code == 200
  assert store.get_prediction(prediction["id"])["storage_urls"] == urls


def test_delete_prediction_removes_files(client, finished, store):
  prediction, headers = finished

  response = client.delete(f"/predictions/{prediction['replicate_id']}", headers=headers)

  body = response.get_json()
  assert [result["success"] for result in body["filesDeletionResults"]] == [True, True]
  assert store.get_prediction(prediction["id"])["is_deleted"] is True
  assert client.get(_local_path(prediction["storage_urls"][0])).status_code == 404
  assert client.get("/predictions", headers=headers).get_json()["predictions"] == []
  assert len(client.get("/predictions?is_deleted=true", headers=headers).get_json()["predictions"]) == 1


def test_delete_prediction_refuses_other_users_files(client, finished, signup, store):
  prediction, _ = finished
  intruder, intruder_headers = signup("eve@example.com")
  own = store.create_prediction(intruder["id"], "evepred", status="succeeded")
  victim_url = prediction["storage_urls"][0]

  response = client.delete(f"/predictions/{own['id']}", json={"urls": [victim_url]}, headers=intruder_headers)

  results = response.get_json()["filesDeletionResults"]
  assert [result["success"] for result in results] == [False]
  assert client.get(_local_path(victim_url)).status_code == 200


def test_cancel_prediction_by_either_id(client, subscriber, store, replicate):
  _, headers = subscriber
  first = _generate(client, headers).get_json()
  second = _generate(client, headers).get_json()

  by_db_id = client.post(f"/predictions/{first['id']}/cancel", headers=headers)
  replicate.fail_with = ReplicateError("already gone")
  by_replicate_id = client.post(f"/predictions/{second['replicate_id']}/cancel", headers=headers)

  assert by_db_id.get_json()["message"] == "Prediction cancelled successfully"
  assert "Replicate API error ignored" in by_replicate_id.get_json()["message"]
  assert store.get_prediction(first["id"])["is_cancelled"] is True
  assert store.get_prediction(second["id"])["status"] == "canceled"
  assert client.post(f"/predictions/{first['id']}/cancel", headers=headers).status_code == 409
  assert client.post("/predictions/unknown/cancel", headers=headers).status_code == 404


def test_reconcile_endpoint_polls_stale_predictions(client, subscriber, store, replicate):
  user, headers = subscriber
  stale = store.create_prediction(user["id"], "stale1", status="processing", created_at=iso_ago(minutes=30))
  replicate.remote["stale1"] = {"id": "stale1", "status": "failed", "error": "lost"}

  body = client.post("/predictions/reconcile", headers=headers).get_json()

  assert body["checked"] == 1
  assert body["updated"] == 1
  assert store.get_prediction(stale["id"])["status"] == "failed"


# History and sync ----------------------------------------------------------


def test_history_crud(client, signup):
  _, headers = signup()
  generation = {"id": "g1", "prompt": "p", "images": ["u"], "aspectRatio": "1:1"}

  assert client.post("/history", json=generation, headers=headers).status_code == 200
  assert client.post("/history", json=generation, headers=headers).status_code == 200
  assert [item["id"] for item in client.get("/history", headers=headers).get_json()["history"]] == ["g1"]
  assert client.delete("/history?id=g1", headers=headers).get_json()["removed"] is True
  assert client.delete("/history?id=g1", headers=headers).get_json() == {"success": True, "removed": False}
  assert client.post("/history", json={"prompt": "no id"}, headers=headers).status_code == 400


@pytest.mark.parametrize(
  "generation",
  [
    {"id": "g1", "images": ["u"]},
    {"id": "g1", "prompt": "p", "images": []},
    {"id": "g1", "prompt": "p", "images": "https://img/a.png"},
  ],
)
def test_history_requires_prompt_and_image_list(client, signup, generation):
  _, headers = signup()

  assert client.post("/history", json=generation, headers=headers).status_code == 400
  assert client.get("/history", headers=headers).get_json()["history"] == []


def test_sync_moves_completed_generations_into_history(client, finished):
  prediction, headers = finished
  now = datetime.now(timezone.utc)
  pending = [
    {"id": prediction["id"], "replicate_id": prediction["replicate_id"], "startTime": now.isoformat()},
    {"id": "waiting", "startTime": now.isoformat()},
    {"id": "ancient", "replicate_id": "nobody", "startTime": (now - timedelta(minutes=15)).isoformat()},
  ]

  body = client.post("/generations/sync", json={"pending": pending}, headers=headers).get_json()
  again = client.post("/generations/sync", json={"pending": pending[:1]}, headers=headers).get_json()

  assert [item["id"] for item in body["completed"]] == [prediction["id"]]
  assert [item["id"] for item in body["pending"]] == ["waiting"]
  assert body["stale"] == ["ancient"]
  assert again["completed"] == []
  assert [item["id"] for item in client.get("/history", headers=headers).get_json()["history"]] == [prediction["id"]]


def test_sync_validates_payload(client, signup):
  _, headers = signup()

  assert client.post("/generations/sync", json={"pending": [{"prompt": "x"}]}, headers=headers).status_code == 400


def test_sync_drops_items_with_numeric_start_time(client, signup):
  _, headers = signup()

  response = client.post(
    "/generations/sync", json={"pending": [{"id": "a", "startTime": 1760000000000}]}, headers=headers
  )

  assert response.status_code == 200
  assert response.get_json()["stale"] == ["a"]


# Prompt builder and feedback -----------------------------------------------


def test_prompt_options_and_compose(client, signup):
  _, headers = signup()

  options = client.get("/prompt/options", headers=headers).get_json()
  composed = client.post(
    "/prompt/compose",
    json={"prompt": "TOK", "action": "select", "category": "background", "value": "blue"},
    headers=headers,
  ).get_json()
  preset = client.post(
    "/prompt/compose",
    json={"prompt": composed["prompt"], "selection": composed["selection"], "action": "preset", "preset": "team-headshot"},
    headers=headers,
  ).get_json()

  assert len(options["presets"]) == 4
  assert composed == {
    "prompt": "TOK, on a blue background",
    "selection": {
      "background": "blue",
      "expression": None,
      "accessories": [],
      "camera_shot": None,
      "gender": None,
      "preset": None,
    },
  }
  assert preset["prompt"] == "A medium shot, TOK, on a gray background, with a natural smile"


def test_prompt_compose_rejects_unknown_values(client, signup):
  _, headers = signup()

  unknown = client.post(
    "/prompt/compose", json={"prompt": "", "category": "background", "value": "plaid"}, headers=headers
  )
  bad_action = client.post("/prompt/compose", json={"action": "shuffle"}, headers=headers)

  assert unknown.status_code == 400
  assert bad_action.status_code == 400


def test_feedback(client, signup):
  _, headers = signup()

  assert client.post("/feedback", json={"feedback": "Great results"}, headers=headers).get_json()["success"] is True
  assert client.post("/feedback", json={"feedback": "  "}, headers=headers).status_code == 400


# CLI -----------------------------------------------------------------------


def test_grant_subscription_command(app, signup, store):
  user, _ = signup()
  runner = app.test_cli_runner()

  result = runner.invoke(args=["grant-subscription", "ada@example.com", "--credits", "5", "--models", "2"])

  assert result.exit_code == 0, result.output
  assert "credits=5" in result.output
  subscription = store.get_active_subscription(user["id"])
  assert subscription["models_remaining"] == 2


def test_grant_subscription_unknown_user(app):
  result = app.test_cli_runner().invoke(args=["grant-subscription", "ghost@example.com"])

  assert result.exit_code != 0
  assert "No user registered" in result.output


def test_reconcile_command(app, signup, store, replicate):
  user, _ = signup()
  store.create_prediction(user["id"], "late", status="starting", created_at=iso_ago(minutes=30))
  replicate.remote["late"] = {"id": "late", "status": "canceled"}

  result = app.test_cli_runner().invoke(args=["reconcile"])

  assert "checked=1 updated=1" in result.output
