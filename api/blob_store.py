"""
Blob Adapter - object storage addressed by (bucket, key).

LocalBlobStore keeps each bucket as a directory under the storage root and
serves the operations the pipeline needs:

- sign_upload: time-limited HMAC-signed PUT URLs, received by the public API
- download: copy an object to a local file
- upload: copy a local file into a bucket with content-type/cache metadata
- write_stream: receive a signed upload body chunk by chunk

Objects are written to a temporary sibling first and moved into place with
os.replace, so readers never observe a partially written object. File I/O
runs in a thread (asyncio.to_thread) to keep the event loop responsive.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import os
import re
import secrets
import shutil
import time
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol, Tuple
from urllib.parse import quote, urlencode

from api.errors import PipelineError

logger = logging.getLogger(__name__)

# Bucket names follow the usual object-store rules (lowercase, digits, dot, dash, underscore)
_BUCKET_NAME = re.compile(r"^[a-z0-9][a-z0-9._-]{1,62}$")

METADATA_DIRNAME = ".metadata"


class BlobError(Exception):
    """An object-store operation failed."""

    pass


class BlobNotFoundError(BlobError):
    """The requested object does not exist."""

    pass


class InvalidSignature(PipelineError):
    """A signed upload URL was tampered with, expired, or used with the wrong content type."""

    status_code = 403


class UploadTooLarge(PipelineError):
    status_code = 413


def storage_uri(scheme: str, bucket: str, key: str) -> str:
    """Fully-qualified object location, e.g. gs://raw-videos/raw/abc-clip.mp4."""
    return f"{scheme}://{bucket}/{key}"


def parse_storage_uri(uri: Optional[str], scheme: str) -> Optional[Tuple[str, str]]:
    """
    Split "<scheme>://<bucket>/<key>" into (bucket, key).

    Returns None when the scheme differs or bucket/key is empty.
    """
    prefix = f"{scheme}://"
    if not uri or not uri.startswith(prefix):
        return None
    bucket, _, key = uri[len(prefix):].partition("/")
    if not bucket or not key:
        return None
    return bucket, key


class BlobStore(Protocol):
    """Collaborator contract consumed by the dispatcher and the worker."""

    def sign_upload(self, bucket: str, key: str, content_type: str, ttl_seconds: int) -> str: ...

    async def download(self, bucket: str, key: str, local_path: Path) -> None: ...

    async def upload(
        self, local_path: Path, bucket: str, key: str, content_type: str, cache_control: Optional[str] = None
    ) -> None: ...

    def public_url(self, bucket: str, key: str) -> str: ...


class LocalBlobStore:
    """Filesystem-backed object store (one directory per bucket)."""

    def __init__(self, root: Path, public_base_url: str, signing_secret: str = ""):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        if not signing_secret:
            # Signed URLs then only verify within this process
            logger.warning("No signing secret configured, generating an ephemeral one")
            signing_secret = secrets.token_urlsafe(32)
        self._secret = signing_secret.encode()

    # =========================================================================
    # Paths
    # =========================================================================

    def object_path(self, bucket: str, key: str) -> Path:
        """
        Resolve (bucket, key) to a file path inside the storage root.

        Raises:
            ValueError: If the bucket name is invalid or the key escapes the bucket
        """
        if not _BUCKET_NAME.match(bucket):
            raise ValueError(f"Invalid bucket name: {bucket!r}")
        if not key or key.startswith("/") or "\\" in key:
            raise ValueError(f"Invalid object key: {key!r}")
        parts = key.split("/")
        if any(part in ("", ".", "..") for part in parts) or parts[0] == METADATA_DIRNAME:
            raise ValueError(f"Invalid object key: {key!r}")
        return self.root / bucket / key

    def _metadata_path(self, bucket: str, key: str) -> Path:
        self.object_path(bucket, key)
        return self.root / METADATA_DIRNAME / bucket / f"{key}.json"

    def exists(self, bucket: str, key: str) -> bool:
        return self.object_path(bucket, key).is_file()

    def get_metadata(self, bucket: str, key: str) -> dict:
        """Stored object metadata (contentType, cacheControl, size); empty when none was recorded."""
        path = self._metadata_path(bucket, key)
        try:
            return json.loads(path.read_text())
        except FileNotFoundError:
            return {}

    def public_url(self, bucket: str, key: str) -> str:
        """Public playback URL served by the public API."""
        return f"{self.public_base_url}/storage/{bucket}/{quote(key)}"

    # =========================================================================
    # Signed upload URLs
    # =========================================================================

    def _signature(self, bucket: str, key: str, content_type: str, expires: int) -> str:
        message = f"PUT\n{bucket}\n{key}\n{content_type}\n{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def sign_upload(self, bucket: str, key: str, content_type: str, ttl_seconds: int) -> str:
        """Create a signed PUT URL valid for ttl_seconds."""
        self.object_path(bucket, key)
        expires = int(time.time()) + ttl_seconds
        query = urlencode(
            {
                "expires": expires,
                "contentType": content_type,
                "signature": self._signature(bucket, key, content_type, expires),
            }
        )
        return f"{self.public_base_url}/uploads/{bucket}/{quote(key)}?{query}"

    def verify_upload(
        self,
        bucket: str,
        key: str,
        content_type: str,
        expires: int,
        signature: str,
        now: Optional[float] = None,
    ) -> None:
        """
        Check a signed upload request.

        Raises:
            InvalidSignature: If the signature does not match or the URL expired
        """
        expected = self._signature(bucket, key, content_type, expires)
        # Use timing-safe comparison to prevent timing attacks
        if not hmac.compare_digest(expected, signature or ""):
            raise InvalidSignature("Invalid upload signature")
        if (now if now is not None else time.time()) > expires:
            raise InvalidSignature("Upload URL expired")

    # =========================================================================
    # Transfers
    # =========================================================================

    def _commit(self, temp_path: Path, bucket: str, key: str, metadata: dict) -> None:
        """Move a fully written temp file into place and record its metadata."""
        target = self.object_path(bucket, key)
        os.replace(temp_path, target)
        meta_path = self._metadata_path(bucket, key)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        metadata = {**metadata, "size": target.stat().st_size}
        meta_path.write_text(json.dumps(metadata))

    def _temp_path_for(self, bucket: str, key: str) -> Path:
        target = self.object_path(bucket, key)
        target.parent.mkdir(parents=True, exist_ok=True)
        return target.with_name(f".{target.name}.{uuid.uuid4().hex}.partial")

    def _download_sync(self, bucket: str, key: str, local_path: Path) -> None:
        source = self.object_path(bucket, key)
        if not source.is_file():
            raise BlobNotFoundError(f"Object {bucket}/{key} not found")
        local_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, local_path)

    async def download(self, bucket: str, key: str, local_path: Path) -> None:
        """
        Copy an object into local_path.

        Raises:
            BlobNotFoundError: If the object does not exist
            BlobError: On any other storage failure
        """
        try:
            await asyncio.to_thread(self._download_sync, bucket, key, Path(local_path))
        except BlobError:
            raise
        except (OSError, ValueError) as e:
            raise BlobError(f"Download of {bucket}/{key} failed: {e.__class__.__name__}") from e
        logger.debug(f"Downloaded {bucket}/{key}")

    def _upload_sync(
        self, local_path: Path, bucket: str, key: str, content_type: str, cache_control: Optional[str]
    ) -> None:
        temp_path = self._temp_path_for(bucket, key)
        try:
            shutil.copyfile(local_path, temp_path)
            metadata = {"contentType": content_type}
            if cache_control:
                metadata["cacheControl"] = cache_control
            self._commit(temp_path, bucket, key, metadata)
        finally:
            temp_path.unlink(missing_ok=True)

    async def upload(
        self,
        local_path: Path,
        bucket: str,
        key: str,
        content_type: str,
        cache_control: Optional[str] = None,
    ) -> None:
        """
        Store local_path as bucket/key with content-type and cache metadata.

        Raises:
            BlobError: If the file cannot be stored
        """
        try:
            await asyncio.to_thread(self._upload_sync, Path(local_path), bucket, key, content_type, cache_control)
        except (OSError, ValueError) as e:
            raise BlobError(f"Upload of {bucket}/{key} failed: {e.__class__.__name__}") from e
        logger.debug(f"Uploaded {bucket}/{key} ({content_type})")

    async def write_stream(
        self,
        bucket: str,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
        max_size: int,
    ) -> int:
        """
        Store an incoming request body as bucket/key.

        Returns:
            Number of bytes written

        Raises:
            UploadTooLarge: If the body exceeds max_size (nothing is stored)
        """
        temp_path = self._temp_path_for(bucket, key)
        written = 0
        try:
            handle = await asyncio.to_thread(open, temp_path, "wb")
            try:
                async for chunk in chunks:
                    written += len(chunk)
                    if written > max_size:
                        raise UploadTooLarge(f"Upload exceeds maximum size of {max_size} bytes")
                    await asyncio.to_thread(handle.write, chunk)
            finally:
                await asyncio.to_thread(handle.close)
            await asyncio.to_thread(self._commit, temp_path, bucket, key, {"contentType": content_type})
        finally:
            temp_path.unlink(missing_ok=True)
        logger.info(f"Stored upload {bucket}/{key} ({written} bytes)")
        return written
