"""
Upload Staging — durable spool for uploaded PDFs

The API process writes the upload once; Celery workers and the vision path
re-read it by session id, so task payloads never carry document bytes.
Objects live until the session is deleted or swept by the TTL cleanup.

Backends (settings.staging_backend):

  s3     s3://<S3_BUCKET>/<S3_PREFIX>/<session_id>.pdf
         Shared by every API and worker host. The key is built server-side
         from the session id, never accepted from the client.

  local  <UPLOAD_STAGING_DIR>/<session_id>.pdf
         Single-host development only: API and workers must share the
         directory. Filesystem calls run in the default thread executor.

A session whose staged object has disappeared raises StagedFileMissing,
never SessionNotFound: the session row still exists.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Union

import aioboto3
from botocore.exceptions import ClientError

from uwia.core.exceptions import StagedFileMissing

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


# ---------------------------------------------------------------------------
# S3 backend (default)
# ---------------------------------------------------------------------------

class S3UploadStaging:
    """Async S3 spool keyed by session id."""

    def __init__(
        self,
        bucket:       str | None = None,
        prefix:       str | None = None,
        region:       str | None = None,
        endpoint_url: str | None = None,
        kms_key_arn:  str | None = None,
    ) -> None:
        from uwia.core.config import settings

        self._bucket       = bucket or settings.s3_bucket
        self._prefix       = (settings.s3_prefix if prefix is None else prefix).strip("/")
        self._region       = region or settings.aws_region
        self._endpoint_url = endpoint_url or settings.s3_endpoint_url or None
        self._kms_key_arn  = settings.s3_kms_key_arn if kms_key_arn is None else kms_key_arn
        self._session      = aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
        )

    def key_for(self, session_id: str) -> str:
        safe_id = session_id.replace("/", "_").replace("..", "_")
        return f"{self._prefix}/{safe_id}.pdf" if self._prefix else f"{safe_id}.pdf"

    def location_for(self, session_id: str) -> str:
        return f"s3://{self._bucket}/{self.key_for(session_id)}"

    def _sse_params(self) -> dict:
        if not self._kms_key_arn:
            return {}
        return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_arn}

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def save(self, session_id: str, data: bytes) -> str:
        key = self.key_for(session_id)
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=PDF_CONTENT_TYPE,
                Metadata={"session_id": session_id},
                **self._sse_params(),
            )

        logger.info(
            "Staged upload | session=%s bytes=%d bucket=%s key=%s",
            session_id, len(data), self._bucket, key,
        )
        return self.location_for(session_id)

    async def load(self, session_id: str) -> bytes:
        key = self.key_for(session_id)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    logger.error("Staged upload missing | session=%s key=%s", session_id, key)
                    raise StagedFileMissing(session_id, self.location_for(session_id)) from exc
                raise

    async def discard(self, session_id: str) -> bool:
        """Hard-delete the staged object. S3 deletes are idempotent, so always True."""
        key = self.key_for(session_id)
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=key)
        logger.info("Discarded staged upload | session=%s key=%s", session_id, key)
        return True


# ---------------------------------------------------------------------------
# Local directory backend (development only)
# ---------------------------------------------------------------------------

class LocalUploadStaging:

    def __init__(self, root: str | os.PathLike | None = None) -> None:
        if root is None:
            from uwia.core.config import settings
            root = settings.upload_staging_dir
        self._root = Path(root)

    def path_for(self, session_id: str) -> Path:
        return self._root / f"{session_id}.pdf"

    async def save(self, session_id: str, data: bytes) -> str:
        path = self.path_for(session_id)
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._write, path, data)
        logger.info("Staged upload | session=%s bytes=%d path=%s", session_id, len(data), path)
        return str(path)

    async def load(self, session_id: str) -> bytes:
        path = self.path_for(session_id)
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, path.read_bytes)
        except FileNotFoundError as exc:
            logger.error("Staged upload missing | session=%s path=%s", session_id, path)
            raise StagedFileMissing(session_id, str(path)) from exc

    async def discard(self, session_id: str) -> bool:
        """Remove the staged file; returns False if it was already gone."""
        path = self.path_for(session_id)
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, path.unlink)
        except FileNotFoundError:
            return False
        logger.info("Discarded staged upload | session=%s", session_id)
        return True

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".part")
        tmp.write_bytes(data)
        tmp.replace(path)


UploadStaging = Union[S3UploadStaging, LocalUploadStaging]


def get_upload_staging() -> UploadStaging:
    """Build the configured backend; unknown names are a configuration error."""
    from uwia.core.config import settings

    backend = settings.staging_backend.lower()
    if backend == "s3":
        return S3UploadStaging()
    if backend == "local":
        if settings.is_production:
            logger.warning("Local upload staging in production | dir=%s", settings.upload_staging_dir)
        return LocalUploadStaging()
    raise ValueError(f"Unknown staging backend: {settings.staging_backend!r}")
