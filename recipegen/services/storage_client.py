"""Object storage helper for recipe images."""

from __future__ import annotations

import os
from typing import Protocol
from urllib.parse import quote, urlparse, urlunparse

from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from starlette.concurrency import run_in_threadpool

from recipegen.config import Settings


class BlobStorage(Protocol):
  """Put-object contract used by the image uploader."""

  async def upload_image(self, image_bytes: bytes, object_name: str, content_type: str) -> str:
    """Upload bytes and return the public URL of the object."""


class StorageClient:
  """Thin wrapper over GCS and emulator access for image uploads."""

  def __init__(self, settings: Settings) -> None:
    self._bucket_name = settings.image_bucket
    self._storage_host = settings.gcs_storage_host
    # Ensure emulator endpoint is visible to the SDK in local development.
    if self._storage_host:
      self._endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["STORAGE_EMULATOR_HOST"] = self._endpoint
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": self._endpoint})
    else:
      self._endpoint = "https://storage.googleapis.com"
      self._client = storage.Client(project=settings.gcp_project_id)

  @property
  def bucket_name(self) -> str:
    """Return the default bucket name for recipe images."""
    return self._bucket_name

  async def ensure_bucket(self) -> None:
    """Create the default bucket when missing in local/dev flows."""
    # Keep production startup side-effect free; only auto-create in emulator mode.
    if not self._storage_host:
      return
    bucket = self._client.bucket(self._bucket_name)

    def _create_if_missing() -> None:
      if not bucket.exists(client=self._client):
        self._client.create_bucket(bucket)

    await run_in_threadpool(_create_if_missing)

  async def upload_image(self, image_bytes: bytes, object_name: str, content_type: str, cache_control: str = "public, max-age=86400") -> str:
    """Upload image bytes to the default bucket and return the public URL."""
    bucket = self._client.bucket(self._bucket_name)
    blob = bucket.blob(object_name)
    blob.cache_control = cache_control
    blob.content_type = content_type
    await run_in_threadpool(blob.upload_from_string, image_bytes, content_type)
    return self.public_url(object_name)

  def public_url(self, object_name: str) -> str:
    return f"{self._endpoint}/{self._bucket_name}/{quote(object_name)}"

  async def delete(self, object_name: str) -> None:
    """Delete an object from the default bucket when cleanup is required."""
    bucket = self._client.bucket(self._bucket_name)
    blob = bucket.blob(object_name)
    await run_in_threadpool(blob.delete)


def build_storage_client(settings: Settings) -> StorageClient:
  """Create a storage client instance with environment-aware credentials."""
  return StorageClient(settings)


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
  """Normalize emulator endpoint so the SDK receives scheme+host+port only."""
  parsed = urlparse(raw_endpoint)
  if not parsed.scheme or not parsed.netloc:
    return raw_endpoint.rstrip("/")
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")
