"""
Registry of live peer connections.

The registry is the only owner of connection handles. Everything else
addresses a peer by its PeerAddress and looks the handle up here.
"""

import asyncio
import logging

from peers.models import PeerAddress

logger = logging.getLogger(__name__)


def address_of_connection(connection) -> PeerAddress | None:
    """Derive a peer's address from the connection's remote endpoint."""
    try:
        endpoint = connection.get_extra_info("peername")
    except Exception as e:
        logger.debug(f"Could not read remote endpoint: {e}")
        return None
    return PeerAddress.from_endpoint(endpoint)


class PeerRegistry:
    """Maps peer addresses to open connections."""

    def __init__(self) -> None:
        self._connections: dict[PeerAddress, object] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    async def on_peer_joined(self, connection) -> PeerAddress | None:
        """Register a new connection. Returns its address, or None if ignored."""
        address = address_of_connection(connection)
        if address is None:
            logger.warning("Ignoring peer join: no remote endpoint")
            return None

        async with self._lock:
            if address in self._connections:
                logger.warning(f"Peer {address} re-joined, replacing connection")
            self._connections[address] = connection
        logger.info(f"Client joined: {address}")
        return address

    async def on_peer_left(self, address: PeerAddress) -> bool:
        """Forget a peer. Unknown addresses are a no-op."""
        async with self._lock:
            removed = self._connections.pop(address, None) is not None
        if removed:
            logger.info(f"Client left: {address}")
        else:
            logger.debug(f"Leave for unknown peer {address} ignored")
        return removed

    async def lookup(self, address: PeerAddress):
        """Return the connection for ``address``, or None."""
        async with self._lock:
            return self._connections.get(address)

    async def address_of(self, connection) -> PeerAddress | None:
        """Reverse lookup by connection handle."""
        async with self._lock:
            for address, conn in self._connections.items():
                if conn is connection:
                    return address
        return None

    async def addresses(self) -> list[PeerAddress]:
        """Snapshot of all registered addresses."""
        async with self._lock:
            return list(self._connections.keys())

    async def connections(self) -> list[tuple[PeerAddress, object]]:
        """Snapshot of (address, connection) pairs, e.g. for broadcasting."""
        async with self._lock:
            return list(self._connections.items())
