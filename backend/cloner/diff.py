"""
Diff generation: merges per-peer manifests into the canonical manifest.

Each per-peer manifest is named ``ip_port.json``. For every file path the
copy with the strictly newest timestamp wins; on an exact tie the first
record seen in scan order is kept.
"""

import logging
import threading
from pathlib import Path

from cloner.headers import parse_manifest
from cloner.models import CanonicalFileRecord, format_timestamp
from errors import MalformedMessage, PersistenceFailure
from peers.models import PeerAddress

logger = logging.getLogger(__name__)

ADDRESS_SEPARATOR = "_"

# One lock per output path, shared by every generator writing to it
_output_locks: dict[Path, threading.Lock] = {}
_output_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = path.resolve()
    with _output_locks_guard:
        lock = _output_locks.get(key)
        if lock is None:
            lock = _output_locks[key] = threading.Lock()
        return lock


def format_record(record: CanonicalFileRecord) -> str:
    """Render one canonical manifest line."""
    return (
        f'{{ "filePath": {record.relative_file_path}, '
        f"IP Address: {record.owner.host}, "
        f"Port: {record.owner.port}, "
        f"Timestamp: {format_timestamp(record.timestamp)}, "
        f'"fromWhichServer": "{record.owner}" }}'
    )


def read_summary(path: str | Path) -> list[str]:
    """Return the lines of a canonical manifest, or [] if there is none."""
    path = Path(path)
    if not path.exists():
        return []
    return [line for line in path.read_text(encoding="utf-8").splitlines() if line]


class DiffGenerator:
    """Reconciles per-peer manifest files into one canonical manifest."""

    def __init__(self, diff_file_path: str | Path) -> None:
        self._diff_file_path = Path(diff_file_path)
        self._lock = _lock_for(self._diff_file_path)

    @property
    def diff_file_path(self) -> Path:
        return self._diff_file_path

    def generate_summary(
        self, json_files: list[str | Path]
    ) -> dict[str, CanonicalFileRecord]:
        """Merge ``json_files`` and write the canonical manifest.

        Files that cannot be attributed to a peer or parsed are skipped;
        the remaining ones are still reconciled.
        """
        files: dict[str, CanonicalFileRecord] = {}

        for file in json_files:
            file = Path(file)
            stem = file.stem
            if ADDRESS_SEPARATOR not in stem:
                continue

            try:
                owner = PeerAddress.parse(stem)
            except ValueError as e:
                logger.warning(f"Skipping {file.name}: {e}")
                continue

            try:
                entries = parse_manifest(file.read_bytes())
            except (OSError, MalformedMessage) as e:
                logger.error(f"Error reading or deserializing file {file}: {e}")
                continue

            for entry in entries:
                existing = files.get(entry.file_path)
                if existing is None:
                    files[entry.file_path] = CanonicalFileRecord(
                        relative_file_path=entry.file_path,
                        owner=owner,
                        timestamp=entry.timestamp,
                    )
                    logger.debug(
                        f"Added new file {entry.file_path} from {owner} "
                        f"with timestamp {entry.timestamp}"
                    )
                elif entry.timestamp > existing.timestamp:
                    files[entry.file_path] = CanonicalFileRecord(
                        relative_file_path=entry.file_path,
                        owner=owner,
                        timestamp=entry.timestamp,
                    )
                    logger.debug(
                        f"Updated {entry.file_path} to {entry.timestamp} from {owner}"
                    )

        try:
            self.write_all_files(files)
        except PersistenceFailure as e:
            logger.error(str(e))

        return files

    def write_all_files(self, files: dict[str, CanonicalFileRecord]) -> None:
        """Write every record to the diff file, one line each."""
        with self._lock:
            try:
                with open(self._diff_file_path, "w", encoding="utf-8") as writer:
                    for record in files.values():
                        writer.write(format_record(record) + "\n")
            except OSError as e:
                raise PersistenceFailure(
                    f"Could not write {self._diff_file_path}: {e}"
                ) from e

        logger.info(
            f"File information for {len(files)} file(s) written to {self._diff_file_path}"
        )
