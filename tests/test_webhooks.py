import json

import pytest

from studio.webhooks import WebhookVerificationError, compute_signature, parse_event, verify_signature

SECRET = "whsec_c2VjcmV0LWtleQ=="
BODY = json.dumps({"id": "abc", "status": "succeeded"})


def _header(secret=SECRET, webhook_id="msg_1", timestamp="1700000000", body=BODY):
  return f"v1,{compute_signature(secret, webhook_id, timestamp, body)}"


def test_valid_signature_passes():
  verify_signature(SECRET, "msg_1", "1700000000", BODY, _header(), now=1700000010)


def test_any_matching_entry_is_accepted():
  header = f"v1,bm90LXRoZS1zaWduYXR1cmU= {_header()}"

  verify_signature(SECRET, "msg_1", "1700000000", BODY, header, now=1700000000)


def test_raw_secret_without_prefix_is_supported():
  header = _header(secret="plain-secret")

  verify_signature("plain-secret", "msg_1", "1700000000", BODY, header, now=1700000000)


def test_tampered_body_is_rejected():
  with pytest.raises(WebhookVerificationError, match="Invalid webhook signature"):
    verify_signature(SECRET, "msg_1", "1700000000", BODY + " ", _header(), now=1700000000)


def test_old_timestamp_is_rejected():
  with pytest.raises(WebhookVerificationError, match="tolerance"):
    verify_signature(SECRET, "msg_1", "1700000000", BODY, _header(), now=1700000000 + 301)


@pytest.mark.parametrize(
  "secret,webhook_id,timestamp,header",
  [
    ("", "msg_1", "1700000000", "v1,x"),
    (SECRET, "", "1700000000", "v1,x"),
    (SECRET, "msg_1", "", "v1,x"),
    (SECRET, "msg_1", "1700000000", ""),
    (SECRET, "msg_1", "yesterday", "v1,x"),
  ],
)
def test_missing_or_malformed_headers_are_rejected(secret, webhook_id, timestamp, header):
  with pytest.raises(WebhookVerificationError):
    verify_signature(secret, webhook_id, timestamp, BODY, header, now=1700000000)


def test_parse_event_shapes():
  training = parse_event(json.dumps({"training": {"id": "t1", "status": "processing"}}))
  prediction = parse_event(BODY)

  assert training.kind == "training" and training.replicate_id == "t1"
  assert prediction.kind == "prediction" and prediction.status == "succeeded"
  assert parse_event(json.dumps({"hello": "world"})) is None
  assert parse_event("[1, 2]") is None


def test_parse_event_rejects_invalid_json():
  with pytest.raises(WebhookVerificationError):
    parse_event("{not json")


def test_non_ascii_signature_is_a_mismatch():
  with pytest.raises(WebhookVerificationError, match="Invalid webhook signature"):
    verify_signature(SECRET, "msg_1", "1700000000", BODY, "v1,éé", now=1700000000)
