import asyncio
import json
from pathlib import Path

import pytest

from cloner.receiver import FileReceiver
from peers.models import PeerAddress
from peers.registry import PeerRegistry


class FakeCommunicator:
    """Stands in for CommunicatorServer: records every send."""

    def __init__(self, address: str = "10.0.0.9_50555", peers: int = 2) -> None:
        self.address = PeerAddress.parse(address)
        self.registry = PeerRegistry()
        self.handlers: dict[str, list] = {}
        self.sent: list[tuple[str, str, object]] = []
        self.peers = peers

    def subscribe(self, module, handler):
        self.handlers.setdefault(module, []).append(handler)

    async def send(self, data, module, target=None):
        self.sent.append((data, module, target))
        return self.peers if target is None else 1


class FakeConnection:
    """Anything with get_extra_info("peername") works as a connection handle."""

    def __init__(self, peername):
        self._peername = peername

    def get_extra_info(self, name, default=None):
        if name == "peername":
            return self._peername
        return default


async def wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def write_manifest(directory: Path, name: str, rows) -> Path:
    path = directory / name
    path.write_text(
        json.dumps([{"FilePath": p, "Timestamp": ts} for p, ts in rows]),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def communicator():
    return FakeCommunicator()


@pytest.fixture
def cloner_dirs(tmp_path):
    dirs = {
        "request": tmp_path / "user" / "requestConfig.json",
        "diff": tmp_path / "diff",
        "summary": tmp_path / "summary.txt",
        "shared": tmp_path / "shared",
    }
    dirs["diff"].mkdir()
    dirs["shared"].mkdir()
    return dirs


@pytest.fixture
def receiver(communicator, cloner_dirs):
    return FileReceiver(
        communicator,
        request_config_path=cloner_dirs["request"],
        diff_dir=cloner_dirs["diff"],
        summary_path=cloner_dirs["summary"],
    )
