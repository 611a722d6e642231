import json

import pytest

from cloner.diff import read_summary
from cloner.headers import MessageHeader, decode, encode
from cloner.models import CollectorState
from cloner.receiver import create_and_close_file
from config import MODULE_NAME

ACK_A = '[{"FilePath":"a.txt","Timestamp":"2024-01-01T00:00:00Z"}]'
ACK_B = '[{"FilePath":"a.txt","Timestamp":"2024-02-01T00:00:00Z"}]'


def ack(sender: str, payload: str) -> str:
    return encode(MessageHeader.ACK_FILE_REQUEST, sender, payload)


def test_subscribes_and_creates_request_list(receiver, communicator, cloner_dirs):
    assert communicator.handlers[MODULE_NAME] == [receiver]
    assert json.loads(cloner_dirs["request"].read_text()) == []
    assert receiver.state is CollectorState.IDLE


@pytest.mark.asyncio
async def test_request_files_broadcasts_request_list(receiver, communicator, cloner_dirs):
    cloner_dirs["request"].write_text(json.dumps([{"filePath": "a.txt"}, {"filePath": "b/c.txt"}]))

    sent = await receiver.request_files()

    assert sent == 2
    (data, module, target) = communicator.sent[-1]
    assert module == MODULE_NAME
    assert target is None
    message = decode(data)
    assert message.known_header is MessageHeader.FILE_REQUEST
    assert message.sender == "10.0.0.9_50555"
    assert json.loads(message.payload) == ["a.txt", "b/c.txt"]
    assert receiver.state is CollectorState.COLLECTING_ACKS


@pytest.mark.asyncio
async def test_request_list_is_reloaded_every_time(receiver, communicator, cloner_dirs):
    cloner_dirs["request"].write_text(json.dumps([{"filePath": "a.txt"}]))
    await receiver.request_files()
    cloner_dirs["request"].write_text(json.dumps([{"filePath": "z.txt"}]))

    await receiver.request_files()

    assert receiver.requested_files == ["z.txt"]
    assert json.loads(decode(communicator.sent[-1][0]).payload) == ["z.txt"]


@pytest.mark.asyncio
async def test_missing_request_list_counts_as_empty(receiver, communicator, cloner_dirs):
    cloner_dirs["request"].unlink()

    await receiver.request_files()

    assert json.loads(decode(communicator.sent[-1][0]).payload) == []
    assert cloner_dirs["request"].exists()


@pytest.mark.asyncio
async def test_broken_request_list_counts_as_empty(receiver, communicator, cloner_dirs):
    cloner_dirs["request"].write_text("{oops")

    await receiver.request_files()

    assert receiver.requested_files == []


@pytest.mark.asyncio
async def test_acknowledgement_is_saved_per_peer(receiver, cloner_dirs):
    events = []

    async def record(event, data):
        events.append((event, data))

    receiver.on_event(record)
    receiver.on_data_received(ack("10.0.0.1_9000", ACK_A))
    await receiver.pending_saves()

    saved = cloner_dirs["diff"] / "10.0.0.1_9000.json"
    assert saved.read_text() == ACK_A
    assert events == [("ack_received", {"peer": "10.0.0.1_9000", "files": 1})]


@pytest.mark.asyncio
async def test_second_acknowledgement_overwrites_first(receiver, cloner_dirs):
    receiver.on_data_received(ack("10.0.0.1_9000", ACK_A))
    await receiver.pending_saves()
    receiver.on_data_received(ack("10.0.0.1_9000", ACK_B))
    await receiver.pending_saves()

    assert (cloner_dirs["diff"] / "10.0.0.1_9000.json").read_text() == ACK_B


@pytest.mark.asyncio
async def test_unparseable_acknowledgement_is_dropped(receiver, cloner_dirs):
    receiver.on_data_received(ack("10.0.0.1_9000", "this is not a manifest"))
    await receiver.pending_saves()

    assert list(cloner_dirs["diff"].iterdir()) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("sender", ["../evil_9000", "no-port", "10.0.0.1_abc"])
async def test_acknowledgement_with_unusable_sender_is_dropped(receiver, cloner_dirs, sender):
    receiver.on_data_received(ack(sender, ACK_A))
    await receiver.pending_saves()

    assert list(cloner_dirs["diff"].iterdir()) == []
    assert not (cloner_dirs["diff"].parent / "evil_9000.json").exists()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        "garbage",
        "FILE_REQUEST:10.0.0.1_9000:[]",
        "CLONE_FILES:10.0.0.1_9000:[]",
        "MYSTERY:10.0.0.1_9000:" + ACK_A,
    ],
)
async def test_other_messages_are_ignored(receiver, cloner_dirs, raw):
    receiver.on_data_received(raw)
    await receiver.pending_saves()

    assert list(cloner_dirs["diff"].iterdir()) == []


@pytest.mark.asyncio
async def test_two_peers_reconcile_to_freshest(receiver, cloner_dirs):
    cloner_dirs["request"].write_text(json.dumps([{"filePath": "a.txt"}]))
    await receiver.request_files()

    receiver.on_data_received(ack("10.0.0.1_9000", ACK_A))
    receiver.on_data_received(ack("10.0.0.2_9000", ACK_B))
    await receiver.pending_saves()
    records = await receiver.reconcile()

    assert receiver.state is CollectorState.RECONCILED
    assert str(records["a.txt"].owner) == "10.0.0.2_9000"
    assert read_summary(cloner_dirs["summary"]) == [
        '{ "filePath": a.txt, IP Address: 10.0.0.2, Port: 9000, '
        'Timestamp: 2024-02-01T00:00:00Z, "fromWhichServer": "10.0.0.2_9000" }'
    ]


@pytest.mark.asyncio
async def test_collect_waits_then_reconciles(receiver, cloner_dirs):
    (cloner_dirs["diff"] / "10.0.0.1_9000.json").write_text(ACK_A)

    records = await receiver.collect(0)

    assert list(records) == ["a.txt"]
    assert receiver.state is CollectorState.RECONCILED


def test_null_byte_sender_has_no_response_path(receiver):
    with pytest.raises(ValueError):
        receiver.response_path("a\x00b_9000")


@pytest.mark.asyncio
async def test_null_byte_sender_is_dropped_quietly(receiver, cloner_dirs):
    assert await receiver._save_response(ACK_A, "a\x00b_9000") is None

    receiver.on_data_received(ack("a\x00b_9000", ACK_A))
    await receiver.pending_saves()

    assert list(cloner_dirs["diff"].iterdir()) == []


def test_create_and_close_file_reports_invalid_path(tmp_path):
    assert create_and_close_file(tmp_path / "bad\x00name.json") is False


@pytest.mark.asyncio
async def test_failed_save_does_not_affect_other_peers(receiver, cloner_dirs):
    blocked = cloner_dirs["diff"] / "10.0.0.1_9000.json"
    blocked.mkdir()
    events = []

    async def record(event, data):
        events.append(data["peer"])

    receiver.on_event(record)
    receiver.on_data_received(ack("10.0.0.1_9000", ACK_A))
    receiver.on_data_received(ack("10.0.0.2_9000", ACK_B))
    await receiver.pending_saves()

    assert blocked.is_dir()
    assert (cloner_dirs["diff"] / "10.0.0.2_9000.json").read_text() == ACK_B
    assert events == ["10.0.0.2_9000"]

    records = await receiver.reconcile()
    assert str(records["a.txt"].owner) == "10.0.0.2_9000"
