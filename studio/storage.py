"""
File storage for training archives and generated images.

Two logical buckets are used, ``training-files`` and ``generated-images``.
In development they are directories under the uploads folder served by the
Flask app through signed links; in production they are key prefixes inside
one S3 bucket and links are S3 presigned URLs.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import quote, unquote, urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from itsdangerous import BadSignature, URLSafeTimedSerializer

logger = logging.getLogger(__name__)

TRAINING_BUCKET = "training-files"
GENERATED_BUCKET = "generated-images"
BUCKETS = (TRAINING_BUCKET, GENERATED_BUCKET)


class StorageError(RuntimeError):
  """Raised when a storage backend operation fails."""


def _check_location(bucket: str, path: str) -> None:
  if bucket not in BUCKETS:
    raise StorageError(f"Unknown bucket: {bucket}")
  if not path or path.startswith("/") or ".." in Path(path).parts:
    raise StorageError(f"Invalid object path: {path!r}")


class LocalStorage:
  """Stores objects on disk; links carry a timestamped itsdangerous token."""

  def __init__(self, root: Path, secret_key: str, base_url: str) -> None:
    self.root = Path(root)
    self.base_url = base_url.rstrip("/")
    self._serializer = URLSafeTimedSerializer(secret_key, salt="studio-storage")

  def _path_for(self, bucket: str, path: str) -> Path:
    _check_location(bucket, path)
    return self.root / bucket / path

  def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
    destination = self._path_for(bucket, path)
    try:
      destination.parent.mkdir(parents=True, exist_ok=True)
      with open(destination, "wb") as handle:
        handle.write(data)
    except OSError as exc:
      raise StorageError(f"Could not write {bucket}/{path}: {exc}") from exc

  def signed_url(self, bucket: str, path: str, ttl: int) -> str:
    _check_location(bucket, path)
    token = self._serializer.dumps({"bucket": bucket, "path": path, "ttl": int(ttl)})
    return f"{self.base_url}/uploads/sign/{bucket}/{quote(path)}?token={token}"

  def verify_token(self, bucket: str, path: str, token: str) -> bool:
    """Return True when ``token`` was issued for this object and has not expired."""
    try:
      payload = self._serializer.loads(token)
      if not isinstance(payload, dict):
        return False
      if payload.get("bucket") != bucket or payload.get("path") != path:
        return False
      # ttl is signed with the payload and checked against the signing timestamp.
      self._serializer.loads(token, max_age=int(payload.get("ttl", 0)))
    except (BadSignature, TypeError, ValueError):
      return False
    return True

  def file_path(self, bucket: str, path: str) -> Path:
    return self._path_for(bucket, path)

  def remove(self, bucket: str, path: str) -> None:
    target = self._path_for(bucket, path)
    try:
      target.unlink(missing_ok=True)
    except OSError as exc:
      raise StorageError(f"Could not remove {bucket}/{path}: {exc}") from exc

  def parse_url(self, url: str) -> Optional[Tuple[str, str]]:
    """Return ``(bucket, path)`` for a link produced by :meth:`signed_url`."""
    parts = urlparse(url).path.split("/")
    if "sign" not in parts:
      return None
    index = parts.index("sign")
    if index >= len(parts) - 2:
      return None
    bucket = parts[index + 1]
    path = unquote("/".join(parts[index + 2:]))
    if bucket not in BUCKETS or not path:
      return None
    return bucket, path


def _build_s3_client(region: Optional[str]):
  """Create an S3 client using environment credentials."""
  kwargs = {"service_name": "s3"}
  if region:
    kwargs["region_name"] = region
  return boto3.client(**kwargs)


class S3Storage:
  """Stores objects under ``<bucket>/<path>`` keys of one S3 bucket."""

  def __init__(self, bucket_name: str, region: Optional[str] = None, client=None) -> None:
    self.bucket_name = bucket_name
    self.client = client or _build_s3_client(region)

  @staticmethod
  def _key(bucket: str, path: str) -> str:
    _check_location(bucket, path)
    return f"{bucket}/{path}"

  def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
    key = self._key(bucket, path)
    try:
      self.client.upload_fileobj(
        io.BytesIO(data),
        self.bucket_name,
        key,
        ExtraArgs={"ContentType": content_type},
      )
    except (BotoCoreError, NoCredentialsError, ClientError) as exc:
      raise StorageError(f"S3 upload failed for {key}: {exc}") from exc

  def signed_url(self, bucket: str, path: str, ttl: int) -> str:
    key = self._key(bucket, path)
    try:
      return self.client.generate_presigned_url(
        "get_object",
        Params={"Bucket": self.bucket_name, "Key": key},
        ExpiresIn=ttl,
      )
    except (BotoCoreError, ClientError) as exc:
      raise StorageError(f"Could not sign {key}: {exc}") from exc

  def remove(self, bucket: str, path: str) -> None:
    key = self._key(bucket, path)
    try:
      self.client.delete_object(Bucket=self.bucket_name, Key=key)
    except (BotoCoreError, ClientError) as exc:
      raise StorageError(f"S3 delete failed for {key}: {exc}") from exc

  def parse_url(self, url: str) -> Optional[Tuple[str, str]]:
    """Map a presigned URL (virtual-host or path style) back to ``(bucket, path)``."""
    parsed = urlparse(url)
    key = unquote(parsed.path.lstrip("/"))
    if not parsed.netloc.startswith(f"{self.bucket_name}."):
      prefix = f"{self.bucket_name}/"
      if not key.startswith(prefix):
        return None
      key = key[len(prefix):]
    bucket, _, path = key.partition("/")
    if bucket not in BUCKETS or not path:
      return None
    return bucket, path


__all__ = [
  "GENERATED_BUCKET",
  "LocalStorage",
  "S3Storage",
  "StorageError",
  "TRAINING_BUCKET",
]
