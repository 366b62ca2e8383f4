import base64
import io
from datetime import datetime, timedelta, timezone

import pytest
import requests
from PIL import Image

from app import create_app
from studio.config import Settings
from studio.replicate_client import ReplicateError

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"studio-test-signing-key").decode("ascii")


class FakeReplicate:
  """In-memory stand-in for ReplicateClient."""

  def __init__(self):
    self.configured = True
    self.calls = []
    self.fail_with = None
    self.version = "version-abc"
    self.remote = {}
    self._counter = 0

  def _record(self, name, *args, **kwargs):
    self.calls.append((name, args, kwargs))
    if self.fail_with is not None:
      raise self.fail_with

  def _next_id(self, prefix):
    self._counter += 1
    return f"{prefix}{self._counter}"

  def create_model(self, owner, name, *, visibility="private", hardware="gpu-t4"):
    self._record("create_model", owner, name)
    return {"owner": owner, "name": name, "visibility": visibility, "hardware": hardware}

  def latest_version(self, owner, name):
    self.calls.append(("latest_version", (owner, name), {}))
    return self.version

  def create_training(self, destination, input_images_url, *, webhook=None):
    self._record("create_training", destination, input_images_url, webhook=webhook)
    return {"id": self._next_id("tr"), "status": "starting"}

  def get_training(self, training_id):
    self._record("get_training", training_id)
    if training_id not in self.remote:
      raise ReplicateError("not found", status_code=404)
    return self.remote[training_id]

  def cancel_training(self, training_id):
    self._record("cancel_training", training_id)
    return {"id": training_id, "status": "canceled"}

  def create_prediction(self, input_params, *, version=None, model=None, webhook=None, events=None):
    self._record("create_prediction", input_params, version=version, model=model, webhook=webhook, events=events)
    prediction_id = self._next_id("pred")
    return {"id": prediction_id, "status": "starting", "urls": {"get": f"https://api.replicate.com/v1/predictions/{prediction_id}"}}

  def get_prediction(self, prediction_id):
    self._record("get_prediction", prediction_id)
    if prediction_id not in self.remote:
      raise ReplicateError("not found", status_code=404)
    return self.remote[prediction_id]

  def cancel_prediction(self, prediction_id):
    self._record("cancel_prediction", prediction_id)
    return {"id": prediction_id, "status": "canceled"}


class FakeResponse:
  def __init__(self, content=b"image-bytes", content_type="image/webp", status_code=200):
    self.content = content
    self.headers = {"Content-Type": content_type}
    self.status_code = status_code

  def raise_for_status(self):
    if self.status_code >= 400:
      raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
  def __init__(self, response=None):
    self.response = response or FakeResponse()
    self.requested = []

  def get(self, url, timeout=None):
    self.requested.append(url)
    return self.response


class FakeCaptioner:
  def __init__(self, caption="A person smiling on a white background."):
    self.caption = caption
    self.seen = []

  def caption_image(self, image_url, prompt=None):
    self.seen.append((image_url, prompt))
    return self.caption


def make_image_bytes(fmt="JPEG", size=(32, 32), color=(200, 80, 40)):
  buffer = io.BytesIO()
  Image.new("RGB", size, color).save(buffer, format=fmt)
  return buffer.getvalue()


def iso_ago(**delta):
  return (datetime.now(timezone.utc) - timedelta(**delta)).isoformat()


@pytest.fixture
def settings(tmp_path):
  return Settings(
    sqlite_db_path=tmp_path / "studio.db",
    uploads_dir=tmp_path / "uploads",
    jwt_secret_key="test-secret",
    replicate_api_token="r8_test",
    replicate_webhook_secret=WEBHOOK_SECRET,
    app_url="http://studio.test",
    log_level="WARNING",
  )


@pytest.fixture
def replicate():
  return FakeReplicate()


@pytest.fixture
def app(settings, replicate):
  flask_app = create_app(settings, replicate=replicate)
  flask_app.config.update(TESTING=True)
  flask_app.extensions["studio"]["jobs"].session = FakeSession()
  return flask_app


@pytest.fixture
def client(app):
  return app.test_client()


@pytest.fixture
def store(app):
  return app.extensions["studio"]["store"]


@pytest.fixture
def signup(client):
  def _signup(email="ada@example.com", password="s3cret!"):
    response = client.post("/auth/signup", json={"email": email, "password": password})
    assert response.status_code == 201, response.get_json()
    body = response.get_json()
    return body["user"], {"Authorization": f"Bearer {body['token']}"}

  return _signup


@pytest.fixture
def subscriber(signup, store):
  """A signed-up user with an active subscription."""
  user, headers = signup()
  store.upsert_subscription(
    user["id"],
    plan="pro",
    credits=3,
    models=1,
    end_date=(datetime.now(timezone.utc) + timedelta(days=30)).isoformat(),
  )
  return user, headers
