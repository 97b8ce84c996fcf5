"""Encoding, decoding and checking of Sloth UDP packets."""

from __future__ import annotations

import struct
from collections.abc import Iterable

from slothudp.types import (
    HEADER_SIZE,
    AckWindowPacket,
    DataPacket,
    HandshakePacket,
    PacketHeader,
    PacketType,
)

_NULL_LENGTH = 0xFFFFFFFF
_MAX_PAYLOAD = 0xFFFF
_HEADER_FORMAT = struct.Struct(">BIHI")


class PacketError(ValueError):
    """Raised when a packet cannot be encoded, decoded or verified."""


def _make_crc_table() -> tuple[int, ...]:
    table = []
    for value in range(256):
        crc = value
        for _ in range(8):
            crc = (crc >> 1) ^ 0x8408 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def calculate_checksum(data: bytes) -> int:
    """Return the 16-bit CRC (ISO 3309 / X.25) of ``data``."""
    crc = 0xFFFF
    for byte in bytes(data):
        crc = (crc >> 8) ^ _CRC_TABLE[(crc ^ byte) & 0xFF]
    return ~crc & 0xFFFF


def _length_prefixed(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + bytes(data)


class _Reader:
    """Sequential big-endian reader over a byte string."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def _take(self, count: int) -> bytes:
        end = self._pos + count
        if end > len(self._data):
            raise PacketError("packet is truncated")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def _unpack(self, fmt: str) -> int:
        size = struct.calcsize(fmt)
        return struct.unpack(fmt, self._take(size))[0]

    def u8(self) -> int:
        return self._unpack(">B")

    def u32(self) -> int:
        return self._unpack(">I")

    def u64(self) -> int:
        return self._unpack(">Q")

    def blob(self) -> bytes:
        length = self.u32()
        if length == _NULL_LENGTH:
            return b""
        return self._take(length)

    def text(self) -> str:
        length = self.u32()
        if length == _NULL_LENGTH:
            return ""
        if length % 2:
            raise PacketError("string has an odd byte length")
        return self._take(length).decode("utf-16-be", errors="surrogatepass")


def _encode_text(text: str) -> bytes:
    return _length_prefixed(text.encode("utf-16-be", errors="surrogatepass"))


def _read_payload(rest: bytes) -> bytes:
    """Read a length-prefixed payload; a missing or short one reads as empty."""
    if len(rest) < 4:
        return b""
    (length,) = struct.unpack(">I", rest[:4])
    if length == _NULL_LENGTH or len(rest) - 4 < length:
        return b""
    return rest[4:4 + length]


def parse_packet_header(buffer: bytes) -> tuple[PacketHeader, bytes]:
    """Split a datagram into its header and payload and verify the checksum.

    Raises :class:`PacketError` when the datagram is too short, its type is
    unknown, or the checksum does not match the payload.
    """
    data = bytes(buffer)
    if len(data) < HEADER_SIZE:
        raise PacketError(f"datagram of {len(data)} bytes is shorter than a header")

    type_byte, sequence_number, payload_size, checksum = _HEADER_FORMAT.unpack(
        data[:HEADER_SIZE]
    )
    try:
        packet_type = PacketType(type_byte)
    except ValueError as exc:
        raise PacketError(f"unknown packet type {type_byte}") from exc

    header = PacketHeader(packet_type, sequence_number, payload_size, checksum)
    payload = _read_payload(data[HEADER_SIZE:])

    if len(data) < HEADER_SIZE + payload_size:
        raise PacketError("datagram is shorter than its declared payload")
    if calculate_checksum(payload) != checksum:
        raise PacketError("checksum mismatch")
    return header, payload


def serialize_handshake(packet: HandshakePacket) -> bytes:
    """Encode a handshake packet, building its header from the payload."""
    payload = (
        _encode_text(packet.filename)
        + struct.pack(">QIB", packet.total_size, packet.request_id, packet.protocol_version)
    )
    if len(payload) > _MAX_PAYLOAD:
        raise PacketError("handshake payload does not fit the 16-bit size field")
    header = PacketHeader(
        PacketType.HANDSHAKE, 0, len(payload), calculate_checksum(payload)
    )
    return header.serialize() + _length_prefixed(payload)


def serialize_data(packet: DataPacket) -> bytes:
    """Encode a data packet using the header it carries."""
    return packet.header.serialize() + _length_prefixed(packet.chunk)


def deserialize_handshake(buffer: bytes) -> HandshakePacket:
    """Decode the payload of a handshake packet."""
    reader = _Reader(buffer)
    filename = reader.text()
    total_size = reader.u64()
    request_id = reader.u32()
    protocol_version = reader.u8()
    return HandshakePacket(filename, total_size, request_id, protocol_version)


def deserialize_data(buffer: bytes) -> DataPacket:
    """Wrap the payload of a data packet as its chunk."""
    return DataPacket(PacketHeader(PacketType.DATA), bytes(buffer))


def deserialize_ack_window(buffer: bytes) -> AckWindowPacket:
    """Decode the payload of a window acknowledgement."""
    reader = _Reader(buffer)
    base_seq_num = reader.u32()
    bitmap_length = reader.u8()
    bitmap = reader.blob()
    return AckWindowPacket(base_seq_num, bitmap_length, bitmap)


def generate_bitmap_from_set(base: int, window_size: int, seqs: Iterable[int]) -> bytes:
    """Return an MSB-first bitmap of ``window_size`` sequence numbers from ``base``.

    A bit is set when its sequence number is in ``seqs``. One byte is produced
    for every started group of eight.
    """
    wanted = set(seqs)
    bitmap = bytearray()
    for offset in range(0, window_size, 8):
        byte = 0
        for bit in range(8):
            if (base + offset + bit) & 0xFFFFFFFF in wanted:
                byte |= 1 << (7 - bit)
        bitmap.append(byte)
    return bytes(bitmap)