"""
S3 Upload Storage — original upload bytes

The upload flow stores the original file and records its location on the
catalog record (`storage_path`). Workers fetch the bytes from here before
handing them to the ingestion service.

storage_path forms accepted:
    s3://<bucket>/<key>
    <key>                 (resolved against the configured bucket)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import ClientError

from knowledge_ingest.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectLocation:
    bucket: str
    key:    str


def parse_storage_path(storage_path: str, default_bucket: str | None = None) -> ObjectLocation:
    """Split a storage path into bucket and key; rejects empty keys."""
    path = storage_path.strip()
    if path.startswith("s3://"):
        bucket, _, key = path[len("s3://"):].partition("/")
    else:
        bucket, key = default_bucket or settings.s3_bucket, path.lstrip("/")
    if not bucket or not key:
        raise ValueError(f"Invalid storage path: {storage_path!r}")
    return ObjectLocation(bucket=bucket, key=key)


class UploadStorage:
    """Async read access to original uploads."""

    def __init__(self, bucket: str | None = None, region: str | None = None) -> None:
        self._bucket  = bucket or settings.s3_bucket
        self._region  = region or settings.aws_region
        self._session = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    async def get_object(self, storage_path: str) -> bytes:
        """
        Download the object behind `storage_path`.
        Raises FileNotFoundError when the key does not exist.
        """
        location = parse_storage_path(storage_path, self._bucket)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=location.bucket, Key=location.key)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(
                        f"Object not found: s3://{location.bucket}/{location.key}"
                    ) from exc
                raise

        logger.info(
            "Upload fetched | bucket=%s key=%s bytes=%d",
            location.bucket, location.key, len(data),
        )
        return data
