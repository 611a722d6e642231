import pytest

from conftest import FakeConnection
from peers.models import PeerAddress
from peers.registry import PeerRegistry


def test_address_string_form():
    address = PeerAddress(host="10.0.0.1", port=9000)
    assert str(address) == "10.0.0.1_9000"
    assert PeerAddress.parse("10.0.0.1_9000") == address


@pytest.mark.parametrize(
    "value",
    [
        "10.0.0.1",
        "_9000",
        "10.0.0.1_port",
        "10.0.0.1_0",
        "10.0.0.1_-1",
        "10.0.0.1_ 9000",
        "10.0.0.1_65536",
    ],
)
def test_address_parse_errors(value):
    with pytest.raises(ValueError):
        PeerAddress.parse(value)


@pytest.mark.asyncio
async def test_join_lookup_and_reverse_lookup():
    registry = PeerRegistry()
    conn = FakeConnection(("10.0.0.1", 9000))

    address = await registry.on_peer_joined(conn)

    assert address == PeerAddress(host="10.0.0.1", port=9000)
    assert await registry.lookup(address) is conn
    assert await registry.address_of(conn) == address
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_join_without_remote_endpoint_is_ignored():
    registry = PeerRegistry()

    assert await registry.on_peer_joined(FakeConnection(None)) is None
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_leave_removes_peer():
    registry = PeerRegistry()
    conn = FakeConnection(("10.0.0.1", 9000))
    address = await registry.on_peer_joined(conn)

    assert await registry.on_peer_left(address) is True
    assert await registry.lookup(address) is None
    assert await registry.address_of(conn) is None


@pytest.mark.asyncio
async def test_leave_for_unknown_peer_is_noop():
    registry = PeerRegistry()
    await registry.on_peer_joined(FakeConnection(("10.0.0.1", 9000)))

    removed = await registry.on_peer_left(PeerAddress(host="10.0.0.2", port=9000))

    assert removed is False
    assert await registry.addresses() == [PeerAddress(host="10.0.0.1", port=9000)]
