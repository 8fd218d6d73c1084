"""
Local snapshots of the directory: display name to identifier.

A snapshot written by a listing run lets a later create run skip identities
that already exist. Long listings write checkpoints as a fixed set of shard
files partitioned by a stable hash of the display name, and finish with one
authoritative complete file.
"""

import os
import json
import glob
import zlib
import logging
import tempfile
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_SHARD_COUNT = 10


class SnapshotError(Exception):
    """Base exception for snapshot errors."""
    pass


class SnapshotNotFoundError(SnapshotError):
    """Raised when a snapshot file does not exist."""
    pass


class SnapshotFormatError(SnapshotError):
    """Raised when a snapshot file is not a JSON object of strings."""
    pass


def shard_for(display_name: str, shard_count: int) -> int:
    """Stable shard index for a display name."""
    return zlib.crc32(display_name.encode('utf-8')) % shard_count


class SnapshotStore:
    """
    Reads and writes snapshot files under one directory.

    Args:
        directory: Directory holding the snapshot files
        name: Base file name (``<name>_complete.json``, ``<name>_shard_<n>.json``)
        shard_count: Number of checkpoint shards
    """

    def __init__(self, directory: str = 'snapshots', name: str = 'users',
                 shard_count: int = DEFAULT_SHARD_COUNT):
        if shard_count < 1:
            raise ValueError(f"shard_count must be at least 1, got {shard_count}")
        self.directory = directory
        self.name = name
        self.shard_count = shard_count

    @property
    def complete_path(self) -> str:
        return os.path.join(self.directory, f'{self.name}_complete.json')

    def shard_path(self, index: int) -> str:
        return os.path.join(self.directory, f'{self.name}_shard_{index}.json')

    def load(self, path: str) -> Dict[str, str]:
        """
        Load a snapshot mapping from ``path``.

        Raises:
            SnapshotNotFoundError: If the file does not exist
            SnapshotFormatError: If the content is not a mapping of strings
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            raise SnapshotNotFoundError(f"Snapshot file not found: {path}")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SnapshotFormatError(f"Invalid JSON in snapshot {path}: {e}")

        if not isinstance(data, dict):
            raise SnapshotFormatError(f"Snapshot {path} must contain a JSON object, got {type(data).__name__}")
        for key, value in data.items():
            if not isinstance(value, str):
                raise SnapshotFormatError(f"Snapshot {path} has non-string identifier for '{key}'")

        logger.info(f"Loaded {len(data)} snapshot entries from {path}")
        return data

    def save(self, path: str, mapping: Dict[str, str]):
        """
        Write a snapshot mapping to ``path``.

        The content goes to a temporary file in the same directory first and
        is moved into place, so readers never see a half-written file.
        """
        directory = os.path.dirname(path) or '.'
        os.makedirs(directory, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(prefix='.snapshot_', suffix='.json', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(mapping, f, indent=2, sort_keys=True, ensure_ascii=False)
            os.replace(temp_path, path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

        logger.debug(f"Wrote {len(mapping)} snapshot entries to {path}")

    def save_checkpoint(self, mapping: Dict[str, str]):
        """Write the mapping partitioned over the shard files."""
        shards = [{} for _ in range(self.shard_count)]
        for display_name, identifier in mapping.items():
            shards[shard_for(display_name, self.shard_count)][display_name] = identifier

        for index, shard in enumerate(shards):
            self.save(self.shard_path(index), shard)
        logger.info(f"Checkpoint written: {len(mapping)} entries in {self.shard_count} shards")

    def save_complete(self, mapping: Dict[str, str]):
        self.save(self.complete_path, mapping)
        logger.info(f"Complete snapshot written: {len(mapping)} entries to {self.complete_path}")

    def load_complete(self) -> Dict[str, str]:
        return self.load(self.complete_path)

    def load_shards(self) -> Dict[str, str]:
        """
        Merge all shard files present into one mapping.

        Raises:
            SnapshotNotFoundError: If no shard file exists
        """
        pattern = os.path.join(self.directory, f'{self.name}_shard_*.json')
        paths = sorted(glob.glob(pattern))
        if not paths:
            raise SnapshotNotFoundError(f"No snapshot shards matching {pattern}")

        merged = {}
        for path in paths:
            merged.update(self.load(path))
        return merged

    def load_latest(self, path: Optional[str] = None) -> Dict[str, str]:
        """
        Load ``path`` if given, else the complete file, else the merged shards.
        """
        if path:
            return self.load(path)
        try:
            return self.load_complete()
        except SnapshotNotFoundError:
            logger.info("No complete snapshot found, falling back to checkpoint shards")
            return self.load_shards()
