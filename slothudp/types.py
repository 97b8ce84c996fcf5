"""Packet types and wire structures of the Sloth UDP protocol.

Integers travel big-endian. Byte strings travel with a 32-bit length
prefix.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum

HEADER_SIZE = 11
"""Size in bytes of a serialized :class:`PacketHeader`."""

_HEADER_FORMAT = struct.Struct(">BIHI")


def _length_prefixed(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + bytes(data)


class PacketType(IntEnum):
    """Kind of a packet, stored in the first byte of every header."""

    DATA = 0
    ACK = 1
    NACK = 2
    HANDSHAKE = 3
    HANDSHAKEACK = 4
    FIN = 5
    BYE = 6


class SessionState(IntEnum):
    """State of a transfer session.

    ``REQPENDING`` shares its value with ``NOTACTIVE`` and is an alias of it.
    """

    NOTACTIVE = 0
    REQPENDING = 0
    ACTIVE = 1


@dataclass
class PacketHeader:
    """Fixed-size header that starts every packet."""

    type: PacketType
    sequence_number: int = 0
    payload_size: int = 0
    checksum: int = 0

    def serialize(self) -> bytes:
        """Return the 11-byte wire form of the header."""
        return _HEADER_FORMAT.pack(
            int(self.type), self.sequence_number, self.payload_size, self.checksum
        )

    def __str__(self) -> str:
        return (
            f"Packet Type: {PacketType(self.type).name}, Seq: {self.sequence_number}, "
            f"payloadSize: {self.payload_size}, checksum: {self.checksum}"
        )


@dataclass
class DataPacket:
    """A chunk of file content with its header."""

    header: PacketHeader
    chunk: bytes = b""


@dataclass
class HandshakePacket:
    """Request to start a transfer of one file."""

    filename: str
    total_size: int
    request_id: int
    protocol_version: int
    speed_hint: str = ""
    header: PacketHeader = field(
        default_factory=lambda: PacketHeader(PacketType.HANDSHAKE)
    )

    def __str__(self) -> str:
        return (
            f"HANDSHAKE:: fileName: {self.filename}, totalSize: {self.total_size}, "
            f"requestId: {self.request_id}, protocolVersion: {self.protocol_version}"
        )


@dataclass
class AckWindowPacket:
    """Acknowledgement of a window of data packets as a bitmap."""

    base_seq_num: int
    bitmap_length: int
    bitmap: bytes
    header: PacketHeader = field(default_factory=lambda: PacketHeader(PacketType.ACK))

    def serialize(self) -> bytes:
        """Return the wire form: prefixed header, base, bitmap length, prefixed bitmap."""
        return (
            _length_prefixed(self.header.serialize())
            + struct.pack(">IB", self.base_seq_num, self.bitmap_length)
            + _length_prefixed(self.bitmap)
        )

    def __str__(self) -> str:
        return (
            f"baseSeq: {self.base_seq_num}, bitMapLength: {self.bitmap_length}, "
            f"bitmap: {self.bitmap!r}"
        )


@dataclass
class NackPacket:
    """Report of missing packets; a set bit marks a missing sequence number."""

    base_seq_num: int
    bitmap_length: int
    bitmap: bytes
    header: PacketHeader = field(
        default_factory=lambda: PacketHeader(PacketType.NACK)
    )

    def serialize(self) -> bytes:
        """Return the wire form: prefixed header, base, bitmap length, prefixed bitmap."""
        return (
            _length_prefixed(self.header.serialize())
            + struct.pack(">IB", self.base_seq_num, self.bitmap_length)
            + _length_prefixed(self.bitmap)
        )