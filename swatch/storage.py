"""Preview uploads to S3-compatible object storage (DigitalOcean Spaces)."""
from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from swatch.errors import StorageError

logger = logging.getLogger("swatch.storage")

CACHE_CONTROL = "public, max-age=31536000, immutable"
CREDENTIAL_FIELDS = ("key", "secret", "bucket", "region", "endpoint")


@dataclass(frozen=True)
class StorageCredentials:
    key: str = ""
    secret: str = ""
    bucket: str = ""
    region: str = ""
    endpoint: str = ""

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> "StorageCredentials":
        return cls(**{f: str(values.get(f) or "") for f in CREDENTIAL_FIELDS})

    def public_url(self, object_key: str) -> str:
        host = urlparse(self.endpoint).hostname if self.endpoint else None
        if not host:
            host = f"{self.region}.digitaloceanspaces.com"
        return f"https://{self.bucket}.{host}/{object_key}"


def _make_client(credentials: StorageCredentials):
    kwargs: dict = {}
    if credentials.region:
        kwargs["region_name"] = credentials.region
    if credentials.endpoint:
        kwargs["endpoint_url"] = credentials.endpoint
    if credentials.key and credentials.secret:
        kwargs["aws_access_key_id"] = credentials.key
        kwargs["aws_secret_access_key"] = credentials.secret
    return boto3.client("s3", **kwargs)


class StoragePublisher:
    """Uploads previews and hot-swaps credentials pushed by the catalog.

    The (credentials, client) pair is replaced as a unit under a lock. An
    upload takes one snapshot of the pair, so it finishes on the client it
    started with even if a swap happens mid-flight.
    """

    def __init__(
        self,
        credentials: StorageCredentials,
        client_factory: Optional[Callable[[StorageCredentials], Any]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._credentials = credentials
        self._client: Any = None
        self._client_factory = client_factory or _make_client

    @property
    def credentials(self) -> StorageCredentials:
        with self._lock:
            return self._credentials

    def _snapshot(self) -> tuple[StorageCredentials, Any]:
        with self._lock:
            if self._client is None:
                self._client = self._client_factory(self._credentials)
            return self._credentials, self._client

    def reinitialize(self, **fields: Optional[str]) -> bool:
        """Merge non-empty fields over the active credentials.

        Returns False when nothing changed (no new client is built).
        """
        unknown = set(fields) - set(CREDENTIAL_FIELDS)
        if unknown:
            raise TypeError(f"unknown storage fields: {sorted(unknown)}")
        updates = {k: v for k, v in fields.items() if v}
        with self._lock:
            merged = dataclasses.replace(self._credentials, **updates)
            if merged == self._credentials:
                return False
            client = self._client_factory(merged)
            self._credentials, self._client = merged, client
        logger.info("storage config changed, client reinitialized (bucket=%s region=%s)",
                    merged.bucket, merged.region)
        return True

    def upload(self, asset_id: str, data: bytes) -> str:
        credentials, client = self._snapshot()
        if not credentials.bucket:
            raise StorageError("no storage bucket configured")
        object_key = f"thumbnails/{asset_id}.jpg"
        try:
            client.put_object(
                Bucket=credentials.bucket,
                Key=object_key,
                Body=data,
                ContentType="image/jpeg",
                CacheControl=CACHE_CONTROL,
                ACL="public-read",
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"upload {object_key} failed: {e}") from e
        url = credentials.public_url(object_key)
        logger.info("preview uploaded for %s: %s", asset_id, url)
        return url
