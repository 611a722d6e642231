"""
File Sender, the serving side of the file cloner.

Connects to other nodes' servers and answers their FILE_REQUEST broadcasts
with the timestamps of the requested files found under the shared directory.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from cloner.headers import (
    MessageHeader,
    decode,
    encode,
    parse_request_list,
    serialize_manifest,
)
from cloner.models import PeerManifestEntry
from config import MODULE_NAME, SHARED_DIR
from errors import MalformedMessage
from network.communicator import CommunicatorClient
from peers.models import PeerAddress

logger = logging.getLogger(__name__)


def _entry_for(path: Path, relative: str) -> PeerManifestEntry:
    mtime = path.stat().st_mtime
    return PeerManifestEntry(
        file_path=relative,
        timestamp=datetime.fromtimestamp(mtime, tz=timezone.utc),
    )


def build_manifest(shared_dir: Path, requested: list[str]) -> list[PeerManifestEntry]:
    """Timestamps for every requested path present under ``shared_dir``.

    A requested directory expands to every file below it. Paths that are
    missing or would leave ``shared_dir`` are skipped.
    """
    root = shared_dir.resolve()
    entries: list[PeerManifestEntry] = []
    seen: set[str] = set()

    for requested_path in requested:
        relative = PurePosixPath(requested_path.replace("\\", "/"))
        target = (root / relative).resolve()
        if not target.is_relative_to(root):
            logger.warning(f"Refusing request outside shared directory: {requested_path}")
            continue

        try:
            if target.is_file():
                candidates = [target]
            elif target.is_dir():
                candidates = sorted(p for p in target.rglob("*") if p.is_file())
            else:
                logger.debug(f"Requested file not found: {requested_path}")
                continue

            for path in candidates:
                name = path.relative_to(root).as_posix()
                if name in seen:
                    continue
                seen.add(name)
                entries.append(_entry_for(path, name))
        except OSError as e:
            logger.warning(f"Could not stat {requested_path}: {e}")

    return entries


class _ServerLink:
    """Handler bound to one client connection, so replies go back on it."""

    def __init__(self, sender: "FileSender", client: CommunicatorClient) -> None:
        self._sender = sender
        self._client = client

    def on_data_received(self, data: str) -> None:
        self._sender.handle_message(self._client, data)


class FileSender:
    """Answers file requests from the servers this node is connected to."""

    def __init__(self, my_address: str, shared_dir: str | Path = SHARED_DIR) -> None:
        self._my_address = my_address
        self._shared_dir = Path(shared_dir)
        self._clients: dict[PeerAddress, CommunicatorClient] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def shared_dir(self) -> Path:
        return self._shared_dir

    def servers(self) -> list[PeerAddress]:
        return [addr for addr, client in self._clients.items() if client.is_connected]

    async def connect(self, host: str, port: int) -> PeerAddress:
        """Connect to a requester's server. Raises TransportUnavailable."""
        address = PeerAddress(host=host, port=port)
        existing = self._clients.get(address)
        if existing is not None and existing.is_connected:
            logger.debug(f"Already connected to {address}")
            return address

        client = CommunicatorClient()
        await client.start(host, port)
        client.subscribe(MODULE_NAME, _ServerLink(self, client))
        self._clients[address] = client
        return address

    async def disconnect(self, address: PeerAddress) -> bool:
        client = self._clients.pop(address, None)
        if client is None:
            return False
        await client.stop()
        return True

    async def stop(self) -> None:
        for address in list(self._clients):
            await self.disconnect(address)
        for task in list(self._tasks):
            task.cancel()

    def handle_message(self, client: CommunicatorClient, data: str) -> None:
        try:
            message = decode(data)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed message: {e}")
            return

        header = message.known_header
        if header == MessageHeader.FILE_REQUEST:
            task = asyncio.create_task(self._answer(client, message.sender, message.payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif header == MessageHeader.CLONE_FILES:
            logger.info(f"CLONE_FILES from {message.sender} is not supported, ignoring")
        elif header is None:
            logger.warning(f"Ignoring message with unknown header '{message.header}'")
        else:
            logger.debug(f"FileSender ignores {header.value} from {message.sender}")

    async def _answer(self, client: CommunicatorClient, requester: str, payload: str) -> None:
        """Reply to one FILE_REQUEST with our manifest."""
        try:
            requested = parse_request_list(payload)
        except MalformedMessage as e:
            logger.warning(f"Dropping file request from {requester}: {e}")
            return

        entries = await asyncio.to_thread(build_manifest, self._shared_dir, requested)
        reply = encode(
            MessageHeader.ACK_FILE_REQUEST,
            self._my_address,
            serialize_manifest(entries),
        )
        await client.send(reply, MODULE_NAME)
        logger.info(
            f"Answered request from {requester}: {len(entries)} of {len(requested)} path(s) found"
        )

    async def pending_answers(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
