import os
import logging
from typing import Dict, Any, Optional, BinaryIO, Union
from pathlib import Path

logger = logging.getLogger(__name__)


class FileSystemStorage:
    """
    File system storage for uploaded images

    Image records hold a storage key; this class maps keys to files under a
    base directory and refuses keys that escape it.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize filesystem storage

        Args:
            config: Storage configuration dictionary with at least:
                   - path: Base path for storage
        """
        self.config = config
        self.base_path = Path(config.get('path', 'storage'))
        self.ensure_storage_exists()

    def ensure_storage_exists(self) -> None:
        """Ensure storage directory exists"""
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_path(self, key: str) -> Path:
        """
        Get full path for a storage key with path traversal protection

        Args:
            key: Storage key

        Returns:
            Full path

        Raises:
            ValueError: If path traversal is detected or key is invalid
        """
        if not key:
            raise ValueError("Storage key cannot be empty")

        if '..' in key or os.path.isabs(key):
            raise ValueError(f"Invalid storage key: {key} - path traversal detected")

        normalized_key = os.path.normpath(key)
        if normalized_key.startswith('..') or os.path.isabs(normalized_key):
            raise ValueError(f"Invalid storage key: {key} - path traversal detected")

        full_path = (self.base_path / normalized_key).resolve()

        # Ensure the resolved path is still within base_path
        try:
            full_path.relative_to(self.base_path.resolve())
        except ValueError:
            raise ValueError(f"Invalid storage key: {key} - path outside storage directory")

        return full_path

    def save(self, key: str, content: Union[bytes, BinaryIO]) -> None:
        """
        Save content to storage

        Args:
            key: Storage key
            content: Raw bytes or a binary stream
        """
        path = self.get_path(key)
        if path.exists() and path.is_symlink():
            raise ValueError(f"Invalid storage key: {key} - symlinks not allowed")
        path.parent.mkdir(parents=True, exist_ok=True)

        data = content if isinstance(content, bytes) else content.read()

        # Atomic write
        temp_path = path.with_suffix(path.suffix + '.tmp')
        try:
            with temp_path.open('wb') as f:
                f.write(data)
            temp_path.replace(path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def load(self, key: str) -> Optional[bytes]:
        """
        Load content from storage

        Returns:
            File bytes or None if not found
        """
        path = self.get_path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        try:
            return self.get_path(key).exists()
        except ValueError:
            return False

    def delete(self, key: str) -> bool:
        """
        Delete content from storage

        Returns:
            True if a file was removed
        """
        path = self.get_path(key)
        if path.exists():
            path.unlink()
            logger.debug(f"Deleted stored file {key}")
            return True
        return False
