"""
Source file storage — read-only access to accepted uploads.

A document's storage location is either
  - s3://bucket/key        → aioboto3 get_object
  - a filesystem path      → read in the default executor; relative paths
                             resolve under settings.storage_root

Missing or unreadable files raise InputError (the attempt fails with a
message the user can act on); throttling / 5xx from S3 raise TransientError
so the job is retried with backoff.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from scholarai.core.config import Settings
from scholarai.core.errors import InputError, TransientError

logger = logging.getLogger(__name__)

S3_SCHEME = "s3://"

_MISSING_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "404"})
_DENIED_CODES  = frozenset({"AccessDenied", "403"})


def parse_s3_location(location: str) -> tuple[str, str]:
    """'s3://bucket/a/b.pdf' → ('bucket', 'a/b.pdf')"""
    bucket, _, key = location[len(S3_SCHEME):].partition("/")
    if not bucket or not key:
        raise InputError(f"malformed S3 location: {location}")
    return bucket, key


class FileStorage:
    """
    Usage:
        storage = FileStorage(root="./uploads", region="eu-west-1")
        data = await storage.read(document.storage_location)
    """

    def __init__(
        self,
        root:                  str = "./uploads",
        region:                str = "us-east-1",
        aws_access_key_id:     str = "",
        aws_secret_access_key: str = "",
    ) -> None:
        self._root = Path(root)
        self._region = region
        self._session_kwargs: dict = {}
        # Local dev only; production uses the task role / IRSA
        if aws_access_key_id and aws_secret_access_key:
            self._session_kwargs = {
                "aws_access_key_id":     aws_access_key_id,
                "aws_secret_access_key": aws_secret_access_key,
            }
        self._session: aioboto3.Session | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileStorage":
        return cls(
            root=settings.storage_root,
            region=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )

    async def read(self, location: str) -> bytes:
        if location.startswith(S3_SCHEME):
            return await self._read_s3(location)
        return await self._read_local(location)

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def resolve_local(self, location: str) -> Path:
        path = Path(location)
        return path if path.is_absolute() else self._root / path

    async def _read_local(self, location: str) -> bytes:
        path = self.resolve_local(location)
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, path.read_bytes)
        except FileNotFoundError as exc:
            raise InputError(f"source file not found: {location}") from exc
        except IsADirectoryError as exc:
            raise InputError(f"source location is a directory: {location}") from exc
        except PermissionError as exc:
            raise InputError(f"source file is not readable: {location}") from exc
        logger.debug("File read | location=%s size=%d", path, len(data))
        return data

    def _client(self):
        """Return a scoped async S3 client context manager."""
        if self._session is None:
            self._session = aioboto3.Session(**self._session_kwargs)
        return self._session.client("s3", region_name=self._region)

    async def _read_s3(self, location: str) -> bytes:
        bucket, key = parse_s3_location(location)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code in _MISSING_CODES:
                    raise InputError(f"source file not found: {location}") from exc
                if code in _DENIED_CODES:
                    raise InputError(f"source file is not readable: {location}") from exc
                raise TransientError(f"S3 get_object failed ({code}): {location}") from exc
            except BotoCoreError as exc:
                raise TransientError(f"S3 get_object failed: {exc}") from exc
        logger.debug("S3 read | bucket=%s key=%s size=%d", bucket, key, len(data))
        return data
