"""Persistent metadata for completed recordings."""

import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional

from .errors import MetadataWriteFailed
from .platform import VIDEO_SUFFIXES

logger = logging.getLogger(__name__)

METADATA_FILENAME = ".rec_metadata.json"


@dataclass
class RecordingRecord:
    """One completed recording. ``path`` is the unique key."""

    path: str
    timestamp: int
    mode: str
    duration: Optional[float] = None
    title: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> Optional["RecordingRecord"]:
        """Build a record from JSON, or None if required fields are missing."""
        try:
            return cls(
                path=str(data["path"]),
                timestamp=int(data.get("timestamp", 0)),
                mode=str(data.get("mode", "unknown")),
                duration=data.get("duration"),
                title=data.get("title"),
            )
        except (KeyError, TypeError, ValueError):
            return None

    @property
    def exists(self) -> bool:
        return Path(self.path).is_file()


def normalize_path(path) -> str:
    """Expand ~ and make absolute so the same file always has one key."""
    return os.path.abspath(os.path.expanduser(str(path)))


def find_latest_recording(directory: Path, since: Optional[float] = None) -> Optional[Path]:
    """
    Fallback discovery of a session's output file.

    Picks the most recently modified video file in the directory. This is a
    guess: another recording finishing at the same time, or an unrelated file
    dropped into the directory, will be picked up instead. ``since`` discards
    files last modified before the session started.
    """
    if not directory.is_dir():
        return None

    candidates = []
    for path in directory.iterdir():
        if path.suffix.lower() not in VIDEO_SUFFIXES:
            continue
        try:
            mtime = path.stat().st_mtime
        except OSError:
            continue  # Deleted while scanning
        if since is not None and mtime < since:
            continue
        candidates.append((mtime, path))

    if not candidates:
        return None
    return max(candidates)[1]


class MetadataStore:
    """
    JSON-backed list of recordings, one document per output directory.

    Every save rewrites the whole document atomically. Concurrent writers
    are not supported; callers go through the session controller.
    """

    def __init__(self, output_dir: Path, filename: str = METADATA_FILENAME):
        self.output_dir = Path(output_dir)
        self.path = self.output_dir / filename

    def _load(self) -> List[RecordingRecord]:
        """Read all records; a missing or unparsable file reads as empty."""
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Failed to read {self.path}: {e}")
            return []

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unparsable metadata {self.path}: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"Ignoring metadata {self.path}: expected a list")
            return []

        records = []
        for item in data:
            record = RecordingRecord.from_dict(item) if isinstance(item, dict) else None
            if record is not None:
                records.append(record)
        return records

    def _save(self, records: List[RecordingRecord]):
        """Atomically replace the document."""
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".rec_metadata.", suffix=".tmp", dir=str(self.output_dir)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump([asdict(r) for r in records], f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise MetadataWriteFailed(self.path, str(e)) from e

    def add(
        self,
        path,
        mode: str,
        duration: Optional[float] = None,
        title: Optional[str] = None,
    ) -> bool:
        """
        Record a completed recording.

        Returns:
            False if the file does not exist; True if recorded or already present

        Raises:
            MetadataWriteFailed: if the document could not be written
        """
        key = normalize_path(path)
        if not Path(key).is_file():
            logger.warning(f"Not recording metadata for missing file {key}")
            return False

        records = self._load()
        if any(r.path == key for r in records):
            logger.debug(f"Metadata for {key} already present")
            return True

        records.append(RecordingRecord(
            path=key,
            timestamp=int(time.time()),
            mode=mode,
            duration=duration,
            title=title,
        ))
        self._save(records)
        logger.info(f"Saved metadata for {Path(key).name}")
        return True

    def list(self) -> List[RecordingRecord]:
        """Existing recordings, newest first."""
        records = [r for r in self._load() if r.exists]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    def get(self, path) -> Optional[RecordingRecord]:
        key = normalize_path(path)
        for record in self._load():
            if record.path == key:
                return record
        return None

    def get_latest(self) -> Optional[RecordingRecord]:
        records = self.list()
        return records[0] if records else None

    def delete(self, path) -> bool:
        """
        Remove a recording file and its metadata entry.

        Fails (returns False) if the file is already gone, leaving the
        document untouched so the inconsistency stays visible. The document
        is rewritten before the file is removed, so a write failure leaves
        both in place.

        Raises:
            MetadataWriteFailed: if the document could not be written
        """
        key = normalize_path(path)
        target = Path(key)
        if not target.is_file():
            logger.warning(f"Cannot delete {key}: file not found")
            return False

        records = self._load()
        remaining = [r for r in records if r.path != key]
        changed = len(remaining) != len(records)
        if changed:
            self._save(remaining)

        try:
            target.unlink()
        except OSError as e:
            logger.error(f"Failed to delete {key}: {e}")
            if changed:
                self._save(records)
            return False
        logger.info(f"Deleted recording {target.name}")
        return True

    def count(self) -> int:
        return len(self._load())
