import pytest

from studio.lifecycle import can_transition, is_terminal, model_status_for_training


@pytest.mark.parametrize(
  "current,new,allowed",
  [
    (None, "starting", True),
    ("starting", "processing", True),
    ("processing", "succeeded", True),
    ("queued", "canceled", True),
    ("processing", "processing", False),
    ("succeeded", "processing", False),
    ("failed", "succeeded", False),
    ("canceled", "succeeded", False),
    ("processing", "exploded", False),
    ("processing", None, False),
  ],
)
def test_can_transition(current, new, allowed):
  assert can_transition(current, new) is allowed


def test_is_terminal():
  assert is_terminal("succeeded")
  assert not is_terminal("processing")
  assert not is_terminal(None)


def test_model_status_for_training():
  assert model_status_for_training("succeeded") == "trained"
  assert model_status_for_training("failed") == "training_failed"
  assert model_status_for_training("canceled") == "training_failed"
  assert model_status_for_training("processing") is None
