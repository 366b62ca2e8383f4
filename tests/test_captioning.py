from types import SimpleNamespace

import pytest
from openai import OpenAIError

from studio.captioning import Captioner, CaptionError


class FakeCompletions:
  def __init__(self, content=None, error=None):
    self.content = content
    self.error = error
    self.requests = []

  def create(self, **kwargs):
    self.requests.append(kwargs)
    if self.error:
      raise self.error
    message = SimpleNamespace(content=self.content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _captioner(completions):
  client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
  return Captioner("", model="gpt-test", client=client)


def test_caption_includes_image_and_prompt():
  completions = FakeCompletions(content=' "A woman smiling in a studio." ')

  caption = _captioner(completions).caption_image("https://img/a.webp", prompt="TOK smiling")

  request = completions.requests[0]
  assert caption == "A woman smiling in a studio."
  assert request["model"] == "gpt-test"
  parts = request["messages"][1]["content"]
  assert "TOK smiling" in parts[0]["text"]
  assert parts[1]["image_url"]["url"] == "https://img/a.webp"


def test_api_errors_become_caption_errors():
  completions = FakeCompletions(error=OpenAIError("quota exceeded"))

  with pytest.raises(CaptionError, match="quota exceeded"):
    _captioner(completions).caption_image("https://img/a.webp")


def test_empty_caption_is_an_error():
  with pytest.raises(CaptionError, match="empty"):
    _captioner(FakeCompletions(content="  ")).caption_image("https://img/a.webp")


def test_missing_key_is_rejected():
  with pytest.raises(CaptionError):
    Captioner("")
