"""Pydantic models for peer identity."""

from pydantic import BaseModel, ConfigDict


class PeerAddress(BaseModel):
    """Network identity of a peer, rendered as ``host_port``.

    The underscore form is used everywhere an address leaves memory (wire
    messages, per-peer file names) since ``:`` is the message delimiter.
    """
    model_config = ConfigDict(frozen=True)

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}_{self.port}"

    @classmethod
    def parse(cls, value: str) -> "PeerAddress":
        """Parse ``host_port``. Raises ValueError if it cannot be parsed."""
        host, sep, port = value.rpartition("_")
        if not sep or not host:
            raise ValueError(f"'{value}' does not contain both host and port")
        if not (port.isascii() and port.isdigit()) or not 0 < int(port) < 65536:
            raise ValueError(f"Invalid port number '{port}' in '{value}'")
        return cls(host=host, port=int(port))

    @classmethod
    def from_endpoint(cls, endpoint) -> "PeerAddress | None":
        """Build from a socket endpoint tuple, or None if there is none."""
        if not endpoint:
            return None
        return cls(host=str(endpoint[0]), port=int(endpoint[1]))
