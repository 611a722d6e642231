"""
TCP transport for file cloner messages.

Every node runs a CommunicatorServer that peers connect to, and may open
CommunicatorClients towards other nodes' servers. Messages are routed to
subscribers by module name.

Frame layout: ``!HI`` header (module name length, data length), then the
module name and the data, both UTF-8.
"""

import asyncio
import logging
import struct

from config import CLONER_BIND_HOST, CLONER_HOST, CLONER_PORT, MAX_FRAME_SIZE
from errors import TransportUnavailable
from peers.models import PeerAddress
from peers.registry import PeerRegistry

logger = logging.getLogger(__name__)

# --- Wire protocol helpers ---

HEADER_FORMAT = "!HI"  # 2-byte module length + 4-byte data length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


def pack_frame(module: str, data: str) -> bytes:
    module_bytes = module.encode("utf-8")
    data_bytes = data.encode("utf-8")
    if len(data_bytes) > MAX_FRAME_SIZE:
        raise ValueError(f"Frame of {len(data_bytes)} bytes exceeds MAX_FRAME_SIZE")
    header = struct.pack(HEADER_FORMAT, len(module_bytes), len(data_bytes))
    return header + module_bytes + data_bytes


async def send_frame(writer: asyncio.StreamWriter, module: str, data: str) -> None:
    """Send one module-tagged frame."""
    writer.write(pack_frame(module, data))
    await writer.drain()


async def recv_frame(reader: asyncio.StreamReader) -> tuple[str, str]:
    """Receive one frame. Returns (module, data)."""
    header = await reader.readexactly(HEADER_SIZE)
    module_length, data_length = struct.unpack(HEADER_FORMAT, header)
    if data_length > MAX_FRAME_SIZE:
        raise ConnectionError(f"Frame of {data_length} bytes exceeds MAX_FRAME_SIZE")
    # Consume the whole frame before decoding so a bad one cannot desync the stream
    module_bytes = await reader.readexactly(module_length)
    data = b""
    if data_length > 0:
        data = await reader.readexactly(data_length)
    return module_bytes.decode("utf-8"), data.decode("utf-8")


class _Communicator:
    """Subscription and dispatch shared by server and client."""

    def __init__(self) -> None:
        self._handlers: dict[str, list] = {}

    def subscribe(self, module: str, handler) -> None:
        """Route frames for ``module`` to ``handler.on_data_received(data)``."""
        self._handlers.setdefault(module, []).append(handler)
        logger.debug(f"Subscribed {type(handler).__name__} to '{module}'")

    def unsubscribe(self, module: str, handler) -> None:
        handlers = self._handlers.get(module, [])
        if handler in handlers:
            handlers.remove(handler)

    def _dispatch(self, module: str, data: str) -> None:
        handlers = self._handlers.get(module)
        if not handlers:
            logger.debug(f"No subscriber for module '{module}', dropping frame")
            return
        for handler in handlers:
            try:
                handler.on_data_received(data)
            except Exception as e:
                logger.error(
                    f"Handler {type(handler).__name__} failed on '{module}' frame: {e}",
                    exc_info=True,
                )

    async def _read_frames(self, reader: asyncio.StreamReader, who) -> None:
        """Dispatch frames until the connection closes."""
        while True:
            try:
                module, data = await recv_frame(reader)
            except asyncio.IncompleteReadError:
                logger.debug(f"Connection to {who} closed")
                return
            except UnicodeDecodeError as e:
                logger.warning(f"Dropping undecodable frame from {who}: {e}")
                continue
            except (ConnectionError, OSError) as e:
                logger.info(f"Connection to {who} lost: {e}")
                return
            self._dispatch(module, data)


class CommunicatorServer(_Communicator):
    """Accepts peer connections and broadcasts to all of them."""

    def __init__(
        self,
        host: str = CLONER_BIND_HOST,
        port: int = CLONER_PORT,
        advertised_host: str = CLONER_HOST,
    ) -> None:
        super().__init__()
        self.registry = PeerRegistry()
        self._host = host
        self._port = port
        self._advertised_host = advertised_host
        self._server: asyncio.Server | None = None
        self._address: PeerAddress | None = None
        self._on_peer_change: list = []  # callbacks: async def fn(event, address)

    @property
    def address(self) -> PeerAddress | None:
        return self._address

    def on_peer_change(self, callback) -> None:
        """Register a callback for peer_joined/peer_left events."""
        self._on_peer_change.append(callback)

    async def start(self) -> str:
        """Start listening. Returns our address as ``host_port``."""
        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self._host, self._port
            )
        except OSError as e:
            raise TransportUnavailable(
                f"Could not listen on {self._host}:{self._port}: {e}"
            ) from e

        port = self._server.sockets[0].getsockname()[1]
        self._address = PeerAddress(host=self._advertised_host, port=port)
        logger.info(f"Communicator server listening on port {port} as {self._address}")
        return str(self._address)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            for _, writer in await self.registry.connections():
                writer.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Communicator server stopped")

    async def send(self, data: str, module: str, target: PeerAddress | str | None = None) -> int:
        """Send to ``target``, or broadcast when target is None.

        Fire-and-forget: delivery failures are logged. Returns the number of
        peers the frame was written to.
        """
        if target is None:
            recipients = await self.registry.connections()
        else:
            if isinstance(target, str):
                target = PeerAddress.parse(target)
            writer = await self.registry.lookup(target)
            if writer is None:
                logger.warning(f"Cannot send to unknown peer {target}")
                return 0
            recipients = [(target, writer)]

        sent = 0
        for address, writer in recipients:
            try:
                await send_frame(writer, module, data)
                sent += 1
            except (ConnectionError, OSError) as e:
                logger.warning(f"Send to {address} failed: {e}")
        logger.debug(f"Sent '{module}' frame to {sent}/{len(recipients)} peer(s)")
        return sent

    async def _emit(self, event: str, address: PeerAddress) -> None:
        for cb in self._on_peer_change:
            asyncio.ensure_future(cb(event, address))

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        address = await self.registry.on_peer_joined(writer)
        if address is None:
            writer.close()
            return

        await self._emit("peer_joined", address)
        try:
            await self._read_frames(reader, address)
        finally:
            await self.registry.on_peer_left(address)
            writer.close()
            await self._emit("peer_left", address)


class CommunicatorClient(_Communicator):
    """A single connection to another node's CommunicatorServer."""

    def __init__(self) -> None:
        super().__init__()
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._receive_task: asyncio.Task | None = None
        self._address: PeerAddress | None = None
        self._server_address: PeerAddress | None = None

    @property
    def address(self) -> PeerAddress | None:
        """Our local endpoint on this connection."""
        return self._address

    @property
    def server_address(self) -> PeerAddress | None:
        return self._server_address

    @property
    def is_connected(self) -> bool:
        return self._receive_task is not None and not self._receive_task.done()

    async def start(self, host: str, port: int) -> str:
        """Connect to a server. Returns our local address as ``host_port``."""
        try:
            self._reader, self._writer = await asyncio.open_connection(host, port)
        except OSError as e:
            raise TransportUnavailable(f"Could not connect to {host}:{port}: {e}") from e

        self._server_address = PeerAddress(host=host, port=port)
        self._address = PeerAddress.from_endpoint(self._writer.get_extra_info("sockname"))
        self._receive_task = asyncio.create_task(
            self._read_frames(self._reader, self._server_address)
        )
        logger.info(f"Connected to {self._server_address} from {self._address}")
        return str(self._address)

    async def stop(self) -> None:
        if self._receive_task:
            self._receive_task.cancel()
        if self._writer:
            self._writer.close()
        logger.info(f"Disconnected from {self._server_address}")

    async def send(self, data: str, module: str, target=None) -> int:
        """Send to the server. ``target`` is accepted for interface parity."""
        if self._writer is None or not self.is_connected:
            logger.warning(f"Cannot send to {self._server_address}: not connected")
            return 0
        try:
            await send_frame(self._writer, module, data)
        except (ConnectionError, OSError) as e:
            logger.warning(f"Send to {self._server_address} failed: {e}")
            return 0
        return 1
