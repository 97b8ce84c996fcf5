import asyncio
import struct
from collections import deque

import pytest

from slothudp.packets import (
    calculate_checksum,
    deserialize_handshake,
    parse_packet_header,
)
from slothudp.receiver import SlothReceiver
from slothudp.sender import SlothSender
from slothudp.types import PacketHeader, PacketType

REQUEST_ID = 0x1234ABCD
DEST = ("127.0.0.1", 5000)


class RecordingTransport:
    def __init__(self):
        self.sent = []
        self.closed = False

    def sendto(self, data, addr=None):
        self.sent.append((bytes(data), addr))

    def close(self):
        self.closed = True


def _content(size):
    return bytes(i % 251 for i in range(size))


def _make_sender(tmp_path, size, **kwargs):
    path = tmp_path / "payload.bin"
    content = _content(size)
    path.write_bytes(content)
    sender = SlothSender(request_id_factory=lambda: REQUEST_ID, **kwargs)
    transport = RecordingTransport()
    sender.connection_made(transport)
    return sender, transport, path, content


def _handshake_ack(request_id):
    return PacketHeader(PacketType.HANDSHAKEACK, request_id, 0, 0).serialize()


def _ack(base, bitmap):
    payload = struct.pack(">IB", base, len(bitmap)) + struct.pack(">I", len(bitmap)) + bitmap
    header = PacketHeader(PacketType.ACK, 1, len(bitmap) + 1, calculate_checksum(payload))
    return header.serialize() + struct.pack(">I", len(payload)) + payload


def _parsed(transport):
    return [parse_packet_header(data) for data, _ in transport.sent]


@pytest.mark.asyncio
async def test_handshake_packet_contents(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 1000)
    request_id = sender.initiate_handshake(path, len(content), *DEST)
    sender.close()

    assert request_id == REQUEST_ID
    assert len(transport.sent) == 1
    data, addr = transport.sent[0]
    assert addr == DEST
    header, payload = parse_packet_header(data)
    assert header.type is PacketType.HANDSHAKE
    packet = deserialize_handshake(payload)
    assert packet.filename == path.name
    assert packet.total_size == len(content)
    assert packet.request_id == REQUEST_ID
    assert packet.protocol_version == sender.protocol_version


@pytest.mark.asyncio
async def test_invalid_destination_sends_nothing(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 10)
    sender.initiate_handshake(path, len(content), "not-an-address", 5000)
    sender.close()
    assert sender.destination is None
    assert transport.sent == []


@pytest.mark.asyncio
async def test_handshake_retried_until_limit(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 10, retry_interval=0.01)
    sender.initiate_handshake(path, len(content), *DEST)
    await asyncio.sleep(0.3)
    sender.close()

    assert len(transport.sent) == sender.handshake_retry_limit
    assert len({data for data, _ in transport.sent}) == 1
    assert sender.handshake_retry_count == sender.handshake_retry_limit


@pytest.mark.asyncio
async def test_handshake_ack_stops_retries(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 0, retry_interval=0.02)
    sender.initiate_handshake(path, len(content), *DEST)
    sender.datagram_received(_handshake_ack(REQUEST_ID), DEST)
    await asyncio.sleep(0.2)
    sender.close()

    types = [header.type for header, _ in _parsed(transport)]
    assert types.count(PacketType.HANDSHAKE) == 1


@pytest.mark.asyncio
async def test_small_file_sent_with_fin(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 1000)
    sender.initiate_handshake(path, len(content), *DEST)
    sender.datagram_received(_handshake_ack(REQUEST_ID), DEST)
    sender.close()

    packets = _parsed(transport)[1:]
    data = [(h, p) for h, p in packets if h.type is PacketType.DATA]
    assert b"".join(p for _, p in data) == content
    assert [h.sequence_number for h, _ in data] == list(range(len(data)))
    assert all(len(p) <= sender.chunk_size for _, p in data)
    assert transport.sent[-1][0] == PacketHeader(PacketType.FIN).serialize()


@pytest.mark.asyncio
async def test_wrong_request_id_ignored(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 1000)
    sender.initiate_handshake(path, len(content), *DEST)
    sender.datagram_received(_handshake_ack(REQUEST_ID + 1), DEST)
    sender.close()
    assert [h.type for h, _ in _parsed(transport)] == [PacketType.HANDSHAKE]


@pytest.mark.asyncio
async def test_window_limits_packets_in_flight(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 700 * 15)
    sender.initiate_handshake(path, len(content), *DEST)
    sender.datagram_received(_handshake_ack(REQUEST_ID), DEST)
    sender.close()

    types = [h.type for h, _ in _parsed(transport)[1:]]
    assert types == [PacketType.DATA] * sender.window_size
    assert sender.next_seq_num == sender.window_size
    assert set(sender.send_window) == set(range(sender.window_size))


@pytest.mark.asyncio
async def test_ack_slides_window(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 700 * 30)
    sender.initiate_handshake(path, len(content), *DEST)
    sender.datagram_received(_handshake_ack(REQUEST_ID), DEST)
    sender.datagram_received(_ack(0, b"\xff"), DEST)
    sender.close()

    assert sender.base_seq_num == 8
    assert set(sender.send_window) == set(range(8, 8 + sender.window_size))
    assert sender.next_seq_num == 8 + sender.window_size


@pytest.mark.asyncio
async def test_corrupted_ack_ignored(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 700 * 30)
    sender.initiate_handshake(path, len(content), *DEST)
    sender.datagram_received(_handshake_ack(REQUEST_ID), DEST)
    sent_before = len(transport.sent)
    corrupted = bytearray(_ack(0, b"\xff"))
    corrupted[-1] ^= 0x01
    sender.datagram_received(bytes(corrupted), DEST)
    sender.close()

    assert len(transport.sent) == sent_before
    assert sender.base_seq_num == 0


@pytest.mark.asyncio
async def test_duplicate_handshake_ack_does_not_restart(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 700 * 30)
    sender.initiate_handshake(path, len(content), *DEST)
    sender.datagram_received(_handshake_ack(REQUEST_ID), DEST)
    sent_before = len(transport.sent)
    sender.datagram_received(_handshake_ack(REQUEST_ID), DEST)
    sender.close()
    assert len(transport.sent) == sent_before


@pytest.mark.asyncio
async def test_missing_file_sends_no_data(tmp_path):
    sender = SlothSender(request_id_factory=lambda: REQUEST_ID)
    transport = RecordingTransport()
    sender.connection_made(transport)
    sender.initiate_handshake(tmp_path / "absent.bin", 100, *DEST)
    sender.datagram_received(_handshake_ack(REQUEST_ID), DEST)
    sender.close()
    assert [h.type for h, _ in _parsed(transport)] == [PacketType.HANDSHAKE]


@pytest.mark.asyncio
async def test_close_closes_transport(tmp_path):
    sender, transport, path, content = _make_sender(tmp_path, 10)
    sender.close()
    assert transport.closed


class _WireTransport:
    def __init__(self, queue, source_addr):
        self.queue = queue
        self.source_addr = source_addr
        self.target = None

    def sendto(self, data, addr=None):
        self.queue.append((self.target, bytes(data), self.source_addr))

    def close(self):
        pass


@pytest.mark.asyncio
async def test_transfer_to_receiver(tmp_path):
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    src = tmp_path / "data.bin"
    content = _content(15000)
    src.write_bytes(content)

    queue = deque()
    sender = SlothSender(request_id_factory=lambda: REQUEST_ID)
    receiver = SlothReceiver(output_dir=out_dir)
    tx = _WireTransport(queue, ("127.0.0.1", 4000))
    rx = _WireTransport(queue, DEST)
    tx.target = receiver
    rx.target = sender
    sender.connection_made(tx)
    receiver.connection_made(rx)

    sender.initiate_handshake(src, len(content), *DEST)
    while queue:
        target, data, addr = queue.popleft()
        target.datagram_received(data, addr)
    sender.close()
    receiver.close()

    assert (out_dir / "data.bin").read_bytes() == content
    assert sender.base_seq_num == sender.next_seq_num or sender.send_window