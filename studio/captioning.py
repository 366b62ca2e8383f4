"""
Optional OpenAI post-processing for generated photos.

A vision-capable chat model is asked for a single-sentence caption of a
finished image. Captions are a nicety: callers record a failure on the
prediction and carry on.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
  "You write short alt-text captions for AI generated portrait photos. "
  "Answer with one plain sentence, no quotes, no markdown."
)


class CaptionError(RuntimeError):
  """Raised when a caption cannot be produced."""


class Captioner:
  """Wraps an OpenAI client configured for image captioning."""

  def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: Optional[Any] = None) -> None:
    if not api_key and client is None:
      raise CaptionError("OpenAI API key is not configured.")
    self.model = model
    self.client = client or OpenAI(api_key=api_key)

  def caption_image(self, image_url: str, prompt: Optional[str] = None) -> str:
    """Return a one-sentence caption for ``image_url``."""
    user_text = "Describe this photo in one sentence."
    if prompt:
      user_text += f" It was generated from the prompt: {prompt}"

    try:
      response = self.client.chat.completions.create(
        model=self.model,
        temperature=0.2,
        max_tokens=80,
        messages=[
          {"role": "system", "content": SYSTEM_PROMPT},
          {
            "role": "user",
            "content": [
              {"type": "text", "text": user_text},
              {"type": "image_url", "image_url": {"url": image_url}},
            ],
          },
        ],
      )
    except OpenAIError as exc:
      raise CaptionError(f"OpenAI caption request failed: {exc}") from exc

    try:
      content = response.choices[0].message.content
    except (AttributeError, IndexError) as exc:
      raise CaptionError("OpenAI response did not include a caption.") from exc

    caption = (content or "").strip().strip('"')
    if not caption:
      raise CaptionError("OpenAI returned an empty caption.")
    return caption


__all__ = ["Captioner", "CaptionError"]
