"""
Filesystem artifact storage with signed download URLs

Artifacts are addressed as {owner_id}/{document_id}/{artifact_kind}.
Writes overwrite, so re-running a stage is idempotent.
"""
import hashlib
import hmac
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from billflow.core.utils.error_handler import StorageError
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class LocalArtifactStore:
    """Stores artifacts under a root directory"""

    def __init__(
        self,
        root: str,
        url_base: str,
        signing_secret: str,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            root: Directory holding all artifacts
            url_base: Public URL prefix of the artifact download route
            signing_secret: HMAC key for signed URLs
            clock: Seconds since epoch, injectable for tests

        Raises:
            ValueError: If no signing secret is configured
        """
        if not signing_secret:
            raise ValueError("ARTIFACT_SIGNING_SECRET must be set to sign artifact URLs")
        self.root = Path(root).resolve()
        self.url_base = url_base.rstrip('/')
        self.signing_secret = signing_secret.encode('utf-8')
        self.clock = clock
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        parts = Path(path).parts
        if not path or Path(path).is_absolute() or '..' in parts:
            raise StorageError(f"Invalid artifact path: {path!r}", recoverable=False)
        resolved = (self.root / path).resolve()
        if self.root not in resolved.parents:
            raise StorageError(f"Artifact path escapes storage root: {path!r}", recoverable=False)
        return resolved

    def put(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Could not write artifact {path}: {e}") from e
        logger.debug(f"Stored artifact {path} ({len(data)} bytes)")
        return path

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"Artifact not found: {path}", recoverable=False) from e
        except OSError as e:
            raise StorageError(f"Could not read artifact {path}: {e}") from e

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except StorageError:
            return False

    def _signature(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode('utf-8')
        return hmac.new(self.signing_secret, message, hashlib.sha256).hexdigest()

    def signed_url(self, path: Optional[str], ttl_seconds: int) -> Optional[str]:
        """
        Build a time-limited download URL for an artifact

        Returns:
            URL, or None when path is empty
        """
        if not path:
            return None
        expires = int(self.clock()) + int(ttl_seconds)
        query = urlencode({'expires': expires, 'signature': self._signature(path, expires)})
        return f"{self.url_base}/{quote(path)}?{query}"

    def verify(self, path: str, expires: int, signature: str) -> bool:
        """Check a signed URL's signature and expiry"""
        if int(expires) < int(self.clock()):
            return False
        expected = self._signature(path, int(expires)).encode('utf-8')
        return hmac.compare_digest(expected, (signature or '').encode('utf-8'))
