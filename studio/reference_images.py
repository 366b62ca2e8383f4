"""
Validation and packaging of reference photos used for LoRA training.

Every upload is opened with Pillow so corrupt or non-image files are
rejected before anything is sent to the trainer. Accepted files are packed
into a single zip whose entries are numbered ``0.jpg``, ``1.png`` ... in
upload order, which is the layout the trainer expects.
"""

from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from PIL import ExifTags, Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

MAX_FILES = 50
MAX_FILE_BYTES = 20 * 1024 * 1024
ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP"}

# EXIF orientation values mapped to degrees.
ORIENTATION_TO_DEGREES = {
  1: 0,
  3: 180,
  6: 90,
  8: 270,
}

_EXIF_NAMES = {tag_id: name for tag_id, name in ExifTags.TAGS.items()}


class ReferenceImageError(ValueError):
  """Raised when an uploaded reference photo cannot be used for training."""


@dataclass
class ReferenceImage:
  filename: str
  content: bytes

  @property
  def extension(self) -> str:
    suffix = Path(self.filename or "").suffix.lower()
    return suffix or ".jpg"


def describe_image(image_bytes: bytes) -> Dict[str, Any]:
  """
  Return basic facts about an image: size, format and a few EXIF fields.

  Raises :class:`ReferenceImageError` when Pillow cannot decode the bytes.
  """
  try:
    with Image.open(io.BytesIO(image_bytes)) as image:
      image.verify()
    # ``verify`` leaves the image unusable, so reopen for metadata.
    with Image.open(io.BytesIO(image_bytes)) as image:
      info: Dict[str, Any] = {
        "format": image.format,
        "width": image.width,
        "height": image.height,
      }
      exif = image.getexif()
  except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as exc:
    raise ReferenceImageError(f"File is not a readable image: {exc}") from exc

  if exif:
    named = {_EXIF_NAMES.get(tag_id, str(tag_id)): value for tag_id, value in exif.items()}
    orientation = named.get("Orientation")
    if isinstance(orientation, int):
      info["rotationDegrees"] = ORIENTATION_TO_DEGREES.get(orientation, 0)
    capture_time = named.get("DateTimeOriginal") or named.get("DateTime")
    if capture_time:
      info["capturedAt"] = str(capture_time)
    for key in ("Make", "Model"):
      if key in named:
        info[key.lower()] = str(named[key])
  return info


def validate_reference_images(images: Iterable[ReferenceImage]) -> List[Dict[str, Any]]:
  """Check count, size and format of each upload; return per-file descriptions."""
  images = list(images)
  if not images:
    raise ReferenceImageError("At least one reference photo is required.")
  if len(images) > MAX_FILES:
    raise ReferenceImageError(f"At most {MAX_FILES} reference photos are allowed.")

  descriptions: List[Dict[str, Any]] = []
  for index, image in enumerate(images):
    if not image.content:
      raise ReferenceImageError(f"File {image.filename or index} is empty.")
    if len(image.content) > MAX_FILE_BYTES:
      raise ReferenceImageError(f"File {image.filename or index} exceeds {MAX_FILE_BYTES // (1024 * 1024)} MB.")
    info = describe_image(image.content)
    if info.get("format") not in ALLOWED_FORMATS:
      raise ReferenceImageError(
        f"File {image.filename or index} has unsupported format {info.get('format')}."
      )
    info["filename"] = image.filename
    descriptions.append(info)
  return descriptions


def build_training_archive(images: Iterable[ReferenceImage], *, compression: Optional[int] = None) -> bytes:
  """Zip ``images`` as ``<index><extension>`` entries and return the bytes."""
  buffer = io.BytesIO()
  mode = zipfile.ZIP_DEFLATED if compression is None else compression
  with zipfile.ZipFile(buffer, "w", compression=mode) as archive:
    for index, image in enumerate(images):
      archive.writestr(f"{index}{image.extension}", image.content)
  logger.debug("Built training archive of %d bytes", buffer.tell())
  return buffer.getvalue()


__all__ = [
  "ReferenceImage",
  "ReferenceImageError",
  "build_training_archive",
  "describe_image",
  "validate_reference_images",
]
