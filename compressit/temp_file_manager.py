# temp_file_manager.py
import os
import uuid
import logging
import threading
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class TempFileManager:
    """Hands out unique temp paths and removes whatever was not promoted."""

    def __init__(self, temp_dir: Optional[Union[str, Path]] = None):
        self.temp_dir = Path(temp_dir) if temp_dir else Path(os.getcwd()) / 'temp_files'
        self._temp_files = set()
        self._lock = threading.Lock()

    def allocate(self, suffix: str = '', prefix: str = 'attempt_') -> Path:
        """Reserve a unique path in the temp dir; the file itself is not created."""
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        path = self.temp_dir / f"{prefix}{uuid.uuid4().hex}{suffix}"
        with self._lock:
            self._temp_files.add(path)
        logger.debug(f"Allocated temporary file: {path}")
        return path

    def register(self, file_path):
        """Register an externally created temporary file for cleanup."""
        with self._lock:
            self._temp_files.add(Path(file_path))

    def promote(self, file_path) -> Path:
        """Hand ownership of a temp file to the caller; it will not be cleaned up."""
        path = Path(file_path)
        with self._lock:
            self._temp_files.discard(path)
        return path

    def release(self, file_path):
        """Delete a temp file now and stop tracking it."""
        path = Path(file_path)
        with self._lock:
            self._temp_files.discard(path)
        try:
            if path.exists():
                path.unlink()
                logger.debug(f"Released temporary file: {path}")
        except OSError as e:
            logger.error(f"Failed to release temporary file {path}: {e}")

    def cleanup(self):
        """Clean up all registered temporary files."""
        with self._lock:
            pending = list(self._temp_files)
        for file_path in pending:
            self.release(file_path)

    def get_temp_count(self) -> int:
        """Get count of registered temporary files."""
        with self._lock:
            return len(self._temp_files)

    def list_temp_files(self):
        """List all registered temporary files."""
        with self._lock:
            return list(self._temp_files)
