"""
Wire codec for file cloner messages.

A message is UTF-8 text ``HEADER:SENDER_ADDRESS:PAYLOAD``. The payload is
usually JSON and may itself contain ``:``, so decoding splits at most twice.
"""

import json
import logging
from enum import Enum

from pydantic import BaseModel, TypeAdapter, ValidationError

from cloner.models import PeerManifestEntry
from errors import MalformedMessage

logger = logging.getLogger(__name__)

DELIMITER = ":"
MESSAGE_SPLIT_LENGTH = 3


class MessageHeader(str, Enum):
    FILE_REQUEST = "FILE_REQUEST"
    ACK_FILE_REQUEST = "ACK_FILE_REQUEST"
    CLONE_FILES = "CLONE_FILES"
    ACK_CLONE_FILES = "ACK_CLONE_FILES"


class Message(BaseModel):
    """A decoded wire message."""
    header: str
    sender: str
    payload: str

    @property
    def known_header(self) -> MessageHeader | None:
        """The header as a MessageHeader, or None if it is not one we know."""
        try:
            return MessageHeader(self.header)
        except ValueError:
            return None


def encode(header: MessageHeader | str, sender: str, payload: str) -> str:
    """Build ``header:sender:payload``."""
    if isinstance(header, MessageHeader):
        header = header.value
    if DELIMITER in header or DELIMITER in sender:
        raise ValueError("header and sender must not contain the delimiter")
    return f"{header}{DELIMITER}{sender}{DELIMITER}{payload}"


def decode(raw: str) -> Message:
    """Split a raw message into its three parts.

    Raises MalformedMessage if there are fewer than three segments.
    """
    parts = raw.split(DELIMITER, MESSAGE_SPLIT_LENGTH - 1)
    if len(parts) < MESSAGE_SPLIT_LENGTH:
        raise MalformedMessage(
            f"expected {MESSAGE_SPLIT_LENGTH} segments, got {len(parts)}"
        )
    header, sender, payload = parts
    return Message(header=header, sender=sender, payload=payload)


# --- Payloads ---

_request_list_adapter = TypeAdapter(list[str])
_manifest_adapter = TypeAdapter(list[PeerManifestEntry])


def serialize_request_list(paths: list[str]) -> str:
    return json.dumps(paths)


def parse_request_list(payload: str) -> list[str]:
    """Extract the requested file paths from a FILE_REQUEST payload."""
    try:
        return _request_list_adapter.validate_json(payload)
    except ValidationError as e:
        raise MalformedMessage(f"invalid request list: {e}") from e


def serialize_manifest(entries: list[PeerManifestEntry]) -> str:
    return json.dumps(
        [entry.model_dump(mode="json", by_alias=True) for entry in entries]
    )


def parse_manifest(payload: str | bytes) -> list[PeerManifestEntry]:
    """Parse a sequence of ``{FilePath, Timestamp}`` objects."""
    try:
        return _manifest_adapter.validate_json(payload)
    except ValidationError as e:
        raise MalformedMessage(f"invalid manifest: {e}") from e
