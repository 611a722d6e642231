"""
File Receiver, the requesting side of the file cloner.

Broadcasts the local request list to every connected peer, persists each
peer's acknowledgement to its own ``ip_port.json`` file, and reconciles the
collected files into the canonical manifest when asked to.
"""

import asyncio
import logging
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from cloner.diff import DiffGenerator
from cloner.headers import (
    MessageHeader,
    decode,
    encode,
    parse_manifest,
    serialize_request_list,
)
from cloner.models import CanonicalFileRecord, CollectorState, FileRequestEntry
from config import DIFF_DIR, MODULE_NAME, REQUEST_CONFIG_PATH, SUMMARY_FILE_PATH
from errors import ConfigReadFailure, MalformedMessage, PersistenceFailure
from peers.models import PeerAddress

logger = logging.getLogger(__name__)

_request_list_adapter = TypeAdapter(list[FileRequestEntry])


def create_and_close_file(path: Path, initial: str = "") -> bool:
    """Create ``path`` if it does not exist. Returns False on failure."""
    try:
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(initial, encoding="utf-8")
        return True
    except (OSError, ValueError) as e:
        logger.error(f"Not able to create file {path}: {e}")
        return False


def read_request_list(path: Path) -> list[FileRequestEntry]:
    """Parse the request list. Raises ConfigReadFailure."""
    try:
        text = path.read_text(encoding="utf-8")
        return _request_list_adapter.validate_json(text)
    except (OSError, ValidationError) as e:
        raise ConfigReadFailure(f"Could not read request list {path}: {e}") from e


def write_request_list(path: Path, entries: list[FileRequestEntry]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(_request_list_adapter.dump_json(entries, by_alias=True, indent=2))


class FileReceiver:
    """Collects per-peer manifests and turns them into the canonical diff."""

    def __init__(
        self,
        communicator,
        request_config_path: str | Path = REQUEST_CONFIG_PATH,
        diff_dir: str | Path = DIFF_DIR,
        summary_path: str | Path = SUMMARY_FILE_PATH,
    ) -> None:
        self._communicator = communicator
        self._request_config_path = Path(request_config_path)
        self._diff_dir = Path(diff_dir)
        self._diff_generator = DiffGenerator(summary_path)
        self._request_files_path: list[str] = []
        self._state = CollectorState.IDLE
        self._save_lock = asyncio.Lock()
        self._save_tasks: set[asyncio.Task] = set()
        self._event_callbacks: list = []  # async fn(event_type, data)

        communicator.subscribe(MODULE_NAME, self)
        create_and_close_file(self._request_config_path, "[]")

    @property
    def state(self) -> CollectorState:
        return self._state

    @property
    def my_address(self) -> str:
        return str(self._communicator.address)

    @property
    def requested_files(self) -> list[str]:
        return list(self._request_files_path)

    @property
    def request_config_path(self) -> Path:
        return self._request_config_path

    @property
    def summary_path(self) -> Path:
        return self._diff_generator.diff_file_path

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def load_file_requests(self) -> list[str]:
        """Re-read the request list. Missing or broken lists count as empty."""
        try:
            entries = read_request_list(self._request_config_path)
        except ConfigReadFailure as e:
            logger.warning(str(e))
            if not self._request_config_path.exists():
                create_and_close_file(self._request_config_path, "[]")
            entries = []
        self._request_files_path = [entry.file_path for entry in entries]
        return self._request_files_path

    async def request_files(self) -> int:
        """Broadcast the request list to all peers. Returns peers reached."""
        self._state = CollectorState.BROADCASTING
        paths = self.load_file_requests()
        message = encode(
            MessageHeader.FILE_REQUEST,
            self.my_address,
            serialize_request_list(paths),
        )
        sent = await self._communicator.send(message, MODULE_NAME, None)
        self._state = CollectorState.COLLECTING_ACKS
        logger.info(f"Requested {len(paths)} file(s) from {sent} peer(s)")
        return sent

    def on_data_received(self, data: str) -> None:
        """Transport callback for every inbound message."""
        try:
            message = decode(data)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed message: {e}")
            return

        header = message.known_header
        if header is None:
            logger.warning(f"Ignoring message with unknown header '{message.header}'")
            return
        if header != MessageHeader.ACK_FILE_REQUEST:
            logger.debug(f"FileReceiver ignores {header.value} from {message.sender}")
            return

        task = asyncio.create_task(self._save_response(message.payload, message.sender))
        self._save_tasks.add(task)
        task.add_done_callback(self._save_tasks.discard)

    async def pending_saves(self) -> None:
        """Wait for acknowledgements that are still being persisted."""
        if self._save_tasks:
            await asyncio.gather(*list(self._save_tasks), return_exceptions=True)

    def response_path(self, from_which_server: str) -> Path:
        """Where the manifest of ``from_which_server`` is stored."""
        address = PeerAddress.parse(from_which_server)
        name = str(address)
        if (
            Path(name).name != name
            or name.startswith(".")
            or "\\" in name
            or "\x00" in name
        ):
            raise ValueError(f"'{from_which_server}' is not a usable file name")
        return self._diff_dir / f"{name}.json"

    async def _save_response(self, data: str, from_which_server: str) -> None:
        """Persist one acknowledgement as ``{from_which_server}.json``."""
        try:
            entries = parse_manifest(data)
        except MalformedMessage as e:
            logger.warning(f"Dropping acknowledgement from {from_which_server}: {e}")
            return

        try:
            save_path = self.response_path(from_which_server)
        except ValueError as e:
            logger.warning(f"Dropping acknowledgement: {e}")
            return

        try:
            async with self._save_lock:
                await asyncio.to_thread(self._write_response, save_path, data)
        except PersistenceFailure as e:
            logger.error(str(e))
            return

        logger.info(f"Saved {len(entries)} manifest entries from {from_which_server} to {save_path.name}")
        await self._emit(
            "ack_received", {"peer": from_which_server, "files": len(entries)}
        )

    @staticmethod
    def _write_response(save_path: Path, data: str) -> None:
        if not create_and_close_file(save_path):
            raise PersistenceFailure(f"Not able to create file {save_path}")
        try:
            save_path.write_text(data, encoding="utf-8")
        except (OSError, ValueError) as e:
            raise PersistenceFailure(f"Not able to write file {save_path}: {e}") from e

    async def reconcile(self) -> dict[str, CanonicalFileRecord]:
        """Merge every collected manifest into the canonical diff file."""
        json_files = sorted(self._diff_dir.glob("*.json"))
        records = await asyncio.to_thread(
            self._diff_generator.generate_summary, json_files
        )
        self._state = CollectorState.RECONCILED
        await self._emit(
            "summary_generated",
            {"files": len(records), "path": str(self.summary_path)},
        )
        return records

    async def collect(self, window: float) -> dict[str, CanonicalFileRecord]:
        """Broadcast, wait ``window`` seconds for acknowledgements, reconcile."""
        await self.request_files()
        await asyncio.sleep(window)
        await self.pending_saves()
        return await self.reconcile()
