"""S3 blob store for the failover state file."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import aioboto3
from botocore.exceptions import ClientError

from cloudfailover import constants
from cloudfailover.errors import DiscoveryAmbiguityError
from cloudfailover.failover.retrier import CLOUD_API_RETRY, RetryPolicy, retry

logger = logging.getLogger("cloudfailover.aws.s3")


def _normalize_tags(tag_set: Optional[list[dict[str, str]]]) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in tag_set or []}


class S3StateStore:
    """Read-modify-write of JSON objects under a fixed folder prefix."""

    def __init__(
        self,
        session: aioboto3.Session,
        region: str,
        bucket: str = "",
        prefix: str = constants.STORAGE_FOLDER_NAME,
        retry_policy: RetryPolicy = CLOUD_API_RETRY,
    ) -> None:
        self._session = session
        self._region = region
        self._prefix = prefix
        self._retry = retry_policy
        self.bucket = bucket

    def _key(self, name: str) -> str:
        return f"{self._prefix}/{name}"

    # -- bucket discovery -----------------------------------------------------

    async def _list_buckets(self) -> list[str]:
        async with self._session.client("s3", region_name=self._region) as s3:
            resp = await s3.list_buckets()
        return [b["Name"] for b in resp.get("Buckets", [])]

    async def _get_bucket_tags(self, bucket: str) -> Optional[dict[str, str]]:
        """Tags of ``bucket``, or None if they cannot be read (no tags, no permission)."""
        try:
            async with self._session.client("s3", region_name=self._region) as s3:
                resp = await s3.get_bucket_tagging(Bucket=bucket)
        except ClientError as exc:
            logger.debug("Skipping bucket %s: %s", bucket, exc)
            return None
        return _normalize_tags(resp.get("TagSet"))

    async def find_bucket_by_tags(self, tags: dict[str, str]) -> str:
        """Select the first bucket carrying every one of ``tags``."""
        names = await retry(self._list_buckets, policy=self._retry)
        bucket_tags = await asyncio.gather(*(self._get_bucket_tags(name) for name in names))

        matches = [
            name for name, found in zip(names, bucket_tags)
            if found is not None and all(found.get(k) == v for k, v in tags.items())
        ]
        logger.debug("Buckets matching %s: %s", tags, matches)
        if not matches:
            raise DiscoveryAmbiguityError("No valid S3 Buckets found!")
        self.bucket = matches[0]
        return self.bucket

    # -- public API -----------------------------------------------------------

    async def _put(self, key: str, body: bytes) -> None:
        async with self._session.client("s3", region_name=self._region) as s3:
            await s3.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType="application/json")

    async def _get(self, key: str) -> dict[str, Any]:
        async with self._session.client("s3", region_name=self._region) as s3:
            # Missing objects read as empty rather than raising NoSuchKey
            listing = await s3.list_objects_v2(Bucket=self.bucket, Prefix=key)
            if not any(obj["Key"] == key for obj in listing.get("Contents", [])):
                return {}
            resp = await s3.get_object(Bucket=self.bucket, Key=key)
            body = await resp["Body"].read()
        return json.loads(body) if body else {}

    async def upload_json(self, name: str, data: dict[str, Any]) -> int:
        """Upload *data* as JSON under the folder prefix. Returns size in bytes."""
        key = self._key(name)
        body = json.dumps(data, default=str, ensure_ascii=False).encode()
        logger.debug("Uploading %d bytes to s3://%s/%s", len(body), self.bucket, key)
        await retry(self._put, key, body, policy=self._retry)
        return len(body)

    async def download_json(self, name: str) -> dict[str, Any]:
        """Download and parse a JSON object. Returns ``{}`` if it does not exist."""
        key = self._key(name)
        logger.debug("Downloading s3://%s/%s", self.bucket, key)
        return await retry(self._get, key, policy=self._retry)
