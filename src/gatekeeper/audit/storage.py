"""
Durable audit sink: JSON lines files rotated by size.

Files are named ``audit-<UTC timestamp>.log`` so that lexical order is
chronological. Each rotation prunes the oldest files beyond ``max_files``.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from loguru import logger

from ..errors import StorageUnavailableError
from .models import AuditEvent


FILE_PREFIX = "audit-"
FILE_SUFFIX = ".log"


class AuditFileStorage:
    """
    Size-rotated JSONL writer.

    Attributes:
        directory: Directory holding the audit files
        max_file_size: Rotate once the current file reaches this many bytes
        max_files: Number of files kept after a rotation
    """

    def __init__(self, directory: Path, max_file_size: int = 10 * 1024 * 1024, max_files: int = 10):
        self.directory = Path(directory)
        self.max_file_size = max_file_size
        self.max_files = max_files
        self.current_file: Optional[Path] = None
        self._lock = threading.Lock()

    def write(self, events: List[AuditEvent]) -> None:
        """
        Append events to the current file, rotating first when it is full.

        Raises:
            StorageUnavailableError: If the directory or file cannot be written
        """
        if not events:
            return

        data = "".join(json.dumps(event.to_dict(), default=str) + "\n" for event in events)

        with self._lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                if self.current_file is None or self._should_rotate():
                    self._rotate()
                with open(self.current_file, "a", encoding="utf-8") as f:
                    f.write(data)
            except OSError as e:
                raise StorageUnavailableError(f"Failed to write audit events: {e}")

    def _should_rotate(self) -> bool:
        try:
            return self.current_file.stat().st_size >= self.max_file_size
        except FileNotFoundError:
            return True

    def _rotate(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        candidate = self.directory / f"{FILE_PREFIX}{stamp}{FILE_SUFFIX}"
        counter = 1
        while candidate.exists():
            candidate = self.directory / f"{FILE_PREFIX}{stamp}_{counter}{FILE_SUFFIX}"
            counter += 1

        self.current_file = candidate
        logger.debug(f"Audit log rotated to {candidate.name}")
        self._cleanup_old_files()

    def _cleanup_old_files(self) -> None:
        files = self.list_files()
        # The new current file is not created yet; leave room for it
        excess = len(files) - (self.max_files - 1)
        for path in files[:max(excess, 0)]:
            try:
                path.unlink()
                logger.debug(f"Removed old audit log {path.name}")
            except FileNotFoundError:
                pass

    def list_files(self) -> List[Path]:
        if not self.directory.exists():
            return []
        return sorted(
            p for p in self.directory.iterdir()
            if p.name.startswith(FILE_PREFIX) and p.name.endswith(FILE_SUFFIX)
        )

    def read_events(self) -> Iterator[AuditEvent]:
        """
        Yield persisted events oldest first.

        Malformed lines are skipped with a warning.
        """
        for path in self.list_files():
            try:
                with open(path, encoding="utf-8") as f:
                    for line_no, line in enumerate(f, 1):
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            yield AuditEvent.from_dict(json.loads(line))
                        except (ValueError, KeyError) as e:
                            logger.warning(f"Skipping malformed audit line {path.name}:{line_no}: {e}")
            except OSError as e:
                raise StorageUnavailableError(f"Failed to read {path}: {e}")
