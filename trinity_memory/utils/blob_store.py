"""
File share access for transcripts, summaries, proposals and exports.

Paths handed to the store are POSIX style and namespaced per user, e.g.
``/trinity/users/<user_id>/conversations/2025/06/conv_<id>.json``. The store maps
them onto a mount point of the network share on the local host.
"""

import hashlib
import os
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import List, Optional, Protocol

from ..models.core import FileInfo
from .config import BlobStoreConfig
from .errors import DependencyError, NotFoundError, ValidationError
from .logging_config import get_logger
from .timestamp_utils import utc_now

logger = get_logger(__name__)


class BlobStoreError(DependencyError):
    """Custom exception for file share errors."""
    pass


class BlobStore(Protocol):
    """File I/O capability the memory services depend on."""

    def read_file(self, path: str) -> str:
        ...

    def write_file(self, path: str, content: str) -> None:
        ...

    def list_directory(self, path: str) -> List[FileInfo]:
        ...

    def get_file_stats(self, path: str) -> FileInfo:
        ...

    def get_file_checksum(self, path: str) -> str:
        ...


def build_user_path(root_namespace: str,
                    user_id: str,
                    category: str,
                    filename: str,
                    now: Optional[datetime] = None) -> str:
    """
    Build the share path for a user file.

    Args:
        root_namespace: Top-level folder of the share (e.g. "trinity")
        user_id: Owning user
        category: conversations, summaries, agents/proposals, ...
        filename: File name
        now: Timestamp that selects the year/month folders (current time if None)

    Returns:
        POSIX path ``/<root>/users/<user>/<category>/<yyyy>/<mm>/<filename>``

    Raises:
        ValidationError: If any component would leave the user's area
    """
    if not user_id or '/' in user_id or user_id in ('.', '..'):
        raise ValidationError(f'Invalid user id: {user_id!r}')
    parts = [part for part in category.split('/') if part]
    if not parts or any(part in ('.', '..') for part in parts):
        raise ValidationError(f'Invalid category: {category!r}')
    if not filename or '/' in filename or filename in ('.', '..'):
        raise ValidationError(f'Invalid file name: {filename!r}')

    now = now or utc_now()
    return f"/{root_namespace}/users/{user_id}/{'/'.join(parts)}/{now.year}/{now.month:02d}/{filename}"


def content_checksum(content: str) -> str:
    """SHA-256 hex digest of text content."""
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


class LocalBlobStore:
    """File share mounted on the local filesystem (SMB/NFS mount, rclone mount or plain directory)."""

    def __init__(self, config: BlobStoreConfig):
        """
        Initialize the store.

        Args:
            config: BlobStoreConfig with the mount point of the share
        """
        self.config = config
        self.mount_path = Path(config.mount_path).resolve()
        self.mount_path.mkdir(parents=True, exist_ok=True)

        logger.info(f'Initialized file share at mount path: {self.mount_path}')

    def user_path(self, user_id: str, category: str, filename: str, now: Optional[datetime] = None) -> str:
        return build_user_path(self.config.root_namespace, user_id, category, filename, now)

    def _resolve(self, path: str) -> Path:
        """Map a share path onto the mount point, refusing anything that escapes it."""
        relative = PurePosixPath('/', path).relative_to('/')
        local = (self.mount_path / relative).resolve()
        if local != self.mount_path and self.mount_path not in local.parents:
            raise BlobStoreError(f'Path escapes the share root: {path}')
        return local

    def _to_share_path(self, local: Path) -> str:
        return '/' + local.relative_to(self.mount_path).as_posix()

    def read_file(self, path: str) -> str:
        """
        Read a text file from the share.

        Raises:
            NotFoundError: If the file does not exist
            BlobStoreError: If the read fails
        """
        local = self._resolve(path)
        logger.debug(f'Reading file from share: {path}')
        try:
            return local.read_text(encoding='utf-8')
        except FileNotFoundError:
            raise NotFoundError(f'File not found: {path}')
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f'Failed to read file {path}: {e}')
            raise BlobStoreError(f'Failed to read file {path}: {e}')

    def write_file(self, path: str, content: str) -> None:
        """Write a text file, creating intermediate directories."""
        local = self._resolve(path)
        logger.debug(f'Writing file to share: {path}')
        try:
            local.parent.mkdir(parents=True, exist_ok=True)
            tmp = local.with_name(f'.{local.name}.tmp')
            tmp.write_text(content, encoding='utf-8')
            os.replace(tmp, local)
        except OSError as e:
            logger.error(f'Failed to write file {path}: {e}')
            raise BlobStoreError(f'Failed to write file {path}: {e}')

    def _info(self, local: Path) -> FileInfo:
        stat = local.stat()
        return FileInfo(path=self._to_share_path(local),
                        size=stat.st_size,
                        modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).replace(tzinfo=None),
                        is_directory=local.is_dir())

    def list_directory(self, path: str) -> List[FileInfo]:
        """List the direct children of a directory, sorted by path."""
        local = self._resolve(path)
        try:
            return sorted((self._info(child) for child in local.iterdir() if not child.name.startswith('.')),
                          key=lambda info: info.path)
        except FileNotFoundError:
            raise NotFoundError(f'Directory not found: {path}')
        except OSError as e:
            logger.error(f'Failed to list directory {path}: {e}')
            raise BlobStoreError(f'Failed to list directory {path}: {e}')

    def get_file_stats(self, path: str) -> FileInfo:
        local = self._resolve(path)
        try:
            return self._info(local)
        except FileNotFoundError:
            raise NotFoundError(f'File not found: {path}')
        except OSError as e:
            raise BlobStoreError(f'Failed to stat file {path}: {e}')

    def get_file_checksum(self, path: str) -> str:
        return content_checksum(self.read_file(path))

    def health_check(self) -> bool:
        """
        Perform a health check on the file share.

        Returns:
            True if the mount point is a writable directory, False otherwise
        """
        try:
            return self.mount_path.is_dir() and os.access(self.mount_path, os.W_OK)
        except Exception as e:
            logger.error(f'File share health check failed: {e}')
            return False
