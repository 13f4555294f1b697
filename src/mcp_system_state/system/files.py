"""Local filesystem collaborator with HTTP artifact download."""
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Optional

import httpx

from ..engine.errors import ExecutionError
from ..utils.retry import with_retry
from .base import FileStat, FileSystem

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644


class LocalFileSystem(FileSystem):
    """Read and write files on the local host."""

    def __init__(self, download_timeout: float = 60.0, verify_ssl: bool = True):
        self.download_timeout = download_timeout
        self.verify_ssl = verify_ssl

    def stat(self, path: str) -> Optional[FileStat]:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        return FileStat(size=st.st_size, mode=stat.S_IMODE(st.st_mode))

    def read_bytes(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def write_bytes(self, path: str, data: bytes, mode: Optional[int] = None) -> None:
        """Write atomically: temp file in the same directory, then rename."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        if mode is None:
            existing = self.stat(path)
            mode = existing.mode if existing else DEFAULT_FILE_MODE

        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.info(f"Wrote {len(data)} bytes to {path} (mode {mode:04o})")

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(path, mode)

    def remove(self, path: str) -> None:
        Path(path).unlink(missing_ok=True)

    def fetch(self, source: str) -> bytes:
        """Fetch artifact content from an http(s) URL, file:// URL or local path."""
        if source.startswith(("http://", "https://")):
            try:
                return self._download(source)
            except httpx.HTTPError as e:
                raise ExecutionError(f"Download failed for {source}: {e}") from e

        path = source[len("file://"):] if source.startswith("file://") else source
        try:
            return Path(path).read_bytes()
        except OSError as e:
            raise ExecutionError(f"Cannot read artifact {path}: {e}") from e

    @with_retry(max_attempts=3, min_wait=1, max_wait=10)
    def _download(self, url: str) -> bytes:
        logger.info(f"Downloading {url}")
        with httpx.Client(
            timeout=httpx.Timeout(self.download_timeout),
            follow_redirects=True,
            verify=self.verify_ssl,
        ) as client:
            response = client.get(url)
            response.raise_for_status()
            return response.content
