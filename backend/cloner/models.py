"""Pydantic models for file requests, peer manifests and the canonical diff."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from peers.models import PeerAddress


class CollectorState(str, Enum):
    """Lifecycle of a collection round on the requesting node."""
    IDLE = "idle"
    BROADCASTING = "broadcasting"
    COLLECTING_ACKS = "collecting_acks"
    RECONCILED = "reconciled"


class FileRequestEntry(BaseModel):
    """One row of the local request list: a file this node wants resolved."""
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath")


class PeerManifestEntry(BaseModel):
    """A file a peer reports having, with its last modification time."""
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="FilePath")
    timestamp: datetime = Field(alias="Timestamp")

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Naive and aware datetimes cannot be compared
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class CanonicalFileRecord(BaseModel):
    """The freshest known copy of one file and the peer that holds it."""
    relative_file_path: str
    owner: PeerAddress
    timestamp: datetime


def format_timestamp(value: datetime) -> str:
    """ISO-8601, with a ``Z`` suffix for UTC."""
    text = value.isoformat()
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text
