"""
Storage abstraction for S3-compatible object storage and in-memory testing.

Uploaded files are namespaced by purpose (``cover-photos/``,
``honouree-photos/``, ``media/``) and prefixed with a millisecond timestamp
so repeated uploads of the same filename never collide.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
from botocore.config import Config

COVER_PHOTOS = "cover-photos"
HONOUREE_PHOTOS = "honouree-photos"
MEDIA = "media"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def build_object_path(prefix: str, filename: str | None) -> str:
    name = (filename or "upload").replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("-", name).strip("-") or "upload"
    return f"{prefix}/{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{name}"


class StorageClient(Protocol):
    """Defines the operations the service needs from object storage."""

    def store(self, path: str, data: bytes, content_type: str) -> str:
        ...

    def remove(self, path: str) -> None:
        ...

    def public_url(self, path: str) -> str:
        ...

    def path_for_url(self, url: str) -> Optional[str]:
        ...


def _path_under(base_url: str, url: str) -> Optional[str]:
    prefix = base_url.rstrip("/") + "/"
    if not url or not url.startswith(prefix):
        return None
    return url[len(prefix):] or None


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = field(default_factory=dict)

    def store(self, path: str, data: bytes, content_type: str) -> str:
        self.stored_objects[path] = (data, content_type)
        return self.public_url(path)

    def remove(self, path: str) -> None:
        if path not in self.stored_objects:
            raise FileNotFoundError(path)
        del self.stored_objects[path]

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def path_for_url(self, url: str) -> Optional[str]:
        return _path_under(self.base_url, url)

    def reset(self) -> None:
        self.stored_objects.clear()


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client (AWS S3, Supabase storage, COS, MinIO...).
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str = ""

    def __post_init__(self):
        config = Config(signature_version="s3v4")
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )
        if not self.public_base_url:
            if self.endpoint:
                self.public_base_url = f"{self.endpoint.rstrip('/')}/{self.bucket}"
            else:
                self.public_base_url = f"https://{self.bucket}.s3.amazonaws.com"

    def store(self, path: str, data: bytes, content_type: str) -> str:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
        )
        return self.public_url(path)

    def remove(self, path: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=path)

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{path}"

    def path_for_url(self, url: str) -> Optional[str]:
        return _path_under(self.public_base_url, url)
