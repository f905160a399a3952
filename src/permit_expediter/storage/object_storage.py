"""File-backed object storage with HMAC-signed URLs.

Objects are written to ``{workspace}/storage/{bucket}/{path}``. Signed URLs
are ``file://`` URLs carrying ``expires`` (unix seconds) and ``signature``
query parameters; :meth:`FileObjectStorage.verify_signed_url` checks them.
"""

import asyncio
import hashlib
import hmac
import logging
import time
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

logger = logging.getLogger(__name__)


def _write_atomic(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(target.name + ".tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
    tmp_path.replace(target)


class FileObjectStorage:
    def __init__(self, workspace_dir: Path, signing_secret: str):
        if not signing_secret:
            raise ValueError("signing_secret must not be empty")
        self.root = (Path(workspace_dir) / "storage").resolve()
        self._secret = signing_secret.encode("utf-8")

    def object_path(self, bucket: str, path: str) -> Path:
        """Resolve bucket/path under the storage root, rejecting traversal."""
        bucket_dir = (self.root / bucket).resolve()
        target = (bucket_dir / path).resolve()
        if bucket_dir.parent != self.root or not target.is_relative_to(bucket_dir):
            raise ValueError(f"Object path escapes bucket '{bucket}': {path}")
        return target

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> int:
        target = self.object_path(bucket, path)
        await asyncio.to_thread(_write_atomic, target, data)
        logger.info(f"Stored {bucket}/{path} ({len(data)} bytes, {content_type})")
        return len(data)

    def _sign(self, bucket: str, path: str, expires: int) -> str:
        message = f"{bucket}/{path}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    async def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        target = self.object_path(bucket, path)
        if not await asyncio.to_thread(target.exists):
            raise FileNotFoundError(f"Object not found: {bucket}/{path}")
        expires = int(time.time()) + int(expires_in)
        query = urlencode(
            {
                "bucket": bucket,
                "path": path,
                "expires": expires,
                "signature": self._sign(bucket, path, expires),
            }
        )
        return f"{target.as_uri()}?{query}"

    def verify_signed_url(self, url: str, now: Optional[float] = None) -> bool:
        """True if the URL's signature is valid and it has not expired."""
        params = parse_qs(urlparse(url).query)
        try:
            bucket = params["bucket"][0]
            path = params["path"][0]
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, IndexError, ValueError):
            return False
        if (now if now is not None else time.time()) > expires:
            return False
        return hmac.compare_digest(signature, self._sign(bucket, path, expires))
