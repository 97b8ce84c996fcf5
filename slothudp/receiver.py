"""Receiving side of a Sloth UDP file transfer."""

from __future__ import annotations

import asyncio
import logging
import struct
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import BinaryIO

from slothudp.packets import (
    PacketError,
    deserialize_handshake,
    generate_bitmap_from_set,
    parse_packet_header,
)
from slothudp.types import NackPacket, PacketHeader, PacketType, SessionState

logger = logging.getLogger(__name__)

RX_PORT = 5000
"""Port the receiver listens on."""

ACK_WINDOW = 8
"""Number of packets received between two acknowledgements."""

NACK_INTERVAL = 0.5
"""Seconds between two scans for missing packets."""

NACK_DEBOUNCE = 0.1
"""Seconds a reported gap must persist before a NACK is sent for it."""

FileRequestCallback = Callable[[str, int, str], None]


class SlothReceiver(asyncio.DatagramProtocol):
    """Accepts a transfer request and writes incoming data packets to a file.

    ``on_file_request`` is called with the file name, its announced size and
    the sender's host whenever a handshake is accepted. Received files are
    written under ``output_dir``.
    """

    def __init__(
        self,
        on_file_request: FileRequestCallback | None = None,
        output_dir: str | Path = ".",
        window_size: int = ACK_WINDOW,
    ) -> None:
        self.on_file_request = on_file_request
        self.output_dir = Path(output_dir)
        self.window_size = window_size

        self.peer: tuple[str, int] | None = None
        self.file_path: Path | None = None
        self.base_ack_seq_num = 0
        self.base_write_seq_num = 0
        self.untracked_count = 0
        self.highest_seq_received = 0
        self.recv_window: dict[int, bytes] = {}
        self.received_seq_nums: set[int] = set()
        self.pending_missing: set[int] = set()
        self.active_session_id = 0
        self.session_state = SessionState.NOTACTIVE

        self._transport: asyncio.DatagramTransport | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._file: BinaryIO | None = None
        self._nack_timer: asyncio.TimerHandle | None = None
        self._debounce_timer: asyncio.TimerHandle | None = None

    # -- asyncio protocol -------------------------------------------------

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        """Remember the transport and the loop that drives the timers."""
        self._transport = transport  # type: ignore[assignment]
        self._loop = asyncio.get_running_loop()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        """Dispatch one datagram by its packet type."""
        try:
            header, payload = parse_packet_header(data)
        except PacketError as exc:
            logger.warning("SlothRX: dropping packet: %s", exc)
            return

        if header.type is PacketType.HANDSHAKE:
            self.peer = (addr[0], addr[1])
            self._handle_handshake(payload)
        elif header.type is PacketType.DATA:
            logger.debug("SlothRx: received data packet %d", header.sequence_number)
            self._handle_data(header, payload)
        elif header.type is PacketType.FIN:
            logger.debug("Received FIN packet, closing the file")
            self._close_file()
        else:
            logger.debug("SlothRx: packet type %s not handled", header.type.name)

    # -- handshake --------------------------------------------------------

    def _handle_handshake(self, payload: bytes) -> None:
        try:
            packet = deserialize_handshake(payload)
        except PacketError as exc:
            logger.warning("SlothRX: malformed handshake: %s", exc)
            return

        if self.session_state != SessionState.NOTACTIVE:
            if packet.request_id == self.active_session_id:
                logger.debug("Duplicate handshake packet received. Ignoring.")
            else:
                logger.debug("Another session is already active. Rejecting new handshake.")
            return

        logger.debug("%s", packet)
        self.active_session_id = packet.request_id
        self.session_state = SessionState.REQPENDING

        if self.on_file_request is not None:
            host = self.peer[0] if self.peer else ""
            self.on_file_request(packet.filename, packet.total_size, host)

        self.file_path = self.output_dir / packet.filename
        self.base_ack_seq_num = 0
        self.base_write_seq_num = 0
        self.untracked_count = 0

        self._acknowledge_request(packet.request_id)

    def _acknowledge_request(self, request_id: int) -> bool:
        # The request id travels as the sequence number; the payload size
        # field is written as a 32-bit zero.
        buffer = struct.pack(">BIiI", int(PacketType.HANDSHAKEACK), request_id, 0, 0)

        self._close_file()
        try:
            self._file = open(self.file_path, "wb")  # noqa: SIM115
        except OSError as exc:
            logger.debug("Could not open file %s: %s", self.file_path, exc)
        else:
            logger.debug("Opened file %s", self.file_path)

        self._start_nack_timer()
        return self._transmit(buffer)

    # -- data -------------------------------------------------------------

    def _handle_data(self, header: PacketHeader, payload: bytes) -> None:
        seq = header.sequence_number
        if seq < self.base_write_seq_num:
            logger.debug("Already written packet %d", seq)
            return
        self.highest_seq_received = max(self.highest_seq_received, seq)

        self.recv_window[seq] = payload
        self.received_seq_nums.add(seq)

        while self.base_write_seq_num in self.recv_window:
            chunk = self.recv_window.pop(self.base_write_seq_num)
            if self._file is not None and not self._file.closed:
                self._file.write(chunk)
            self.base_write_seq_num += 1

        self.untracked_count += 1
        if self.untracked_count >= self.window_size:
            self._send_acknowledgement()
            while self.base_ack_seq_num in self.received_seq_nums:
                self.base_ack_seq_num += 1
            self.untracked_count = 0
            self.base_ack_seq_num = self.base_write_seq_num

    def _send_acknowledgement(self) -> bool:
        bitmap = self.generate_ack_bitmap(self.base_ack_seq_num, self.window_size)
        payload = (
            struct.pack(">iB", self.base_ack_seq_num, len(bitmap))
            + struct.pack(">I", len(bitmap))
            + bitmap
        )
        from slothudp.packets import calculate_checksum

        header = PacketHeader(
            PacketType.ACK, 1, len(bitmap) + 1, calculate_checksum(payload)
        )
        full = header.serialize() + struct.pack(">I", len(payload)) + payload
        logger.debug(
            "ACK sent for base %d bitmap size %d", self.base_ack_seq_num, len(bitmap)
        )
        return self._transmit(full)

    def generate_ack_bitmap(self, base: int, window_size: int) -> bytes:
        """Return an MSB-first bitmap of received packets starting at ``base``.

        With packets 3, 4, 6 and 7 received and base 3, the bits read 11011.
        """
        return generate_bitmap_from_set(base, window_size, self.received_seq_nums)

    # -- loss detection ---------------------------------------------------

    def missing_sequence_numbers(self) -> set[int]:
        """Return the sequence numbers not yet received up to the highest seen."""
        return {
            seq
            for seq in range(self.base_ack_seq_num, self.highest_seq_received + 1)
            if seq not in self.received_seq_nums
        }

    def _start_nack_timer(self) -> None:
        if self._nack_timer is not None:
            self._nack_timer.cancel()
        if self._loop is not None:
            self._nack_timer = self._loop.call_later(NACK_INTERVAL, self._on_nack_timeout)

    def _on_nack_timeout(self) -> None:
        missing = self.missing_sequence_numbers()
        logger.debug("NACK scan: %d packets missing", len(missing))
        self._nack_timer = None
        self._start_nack_timer()

    def _schedule_nack_debounce(self) -> None:
        if self._debounce_timer is not None or self._loop is None:
            return
        self._debounce_timer = self._loop.call_later(
            NACK_DEBOUNCE, self._perform_nack_debounce
        )

    def _perform_nack_debounce(self) -> None:
        still_missing = self.pending_missing - self.received_seq_nums
        if still_missing:
            logger.debug("Sending debounced NACK for %s", sorted(still_missing))
            self.send_nack(still_missing)
        self._debounce_timer = None

    def send_nack(self, missing: Iterable[int]) -> None:
        """Report the given sequence numbers as missing to the peer."""
        missing_set = set(missing)
        if not missing_set:
            return
        base = min(missing_set)
        bitmap = generate_bitmap_from_set(base, self.window_size, missing_set)
        packet = NackPacket(base, len(bitmap), bitmap)
        packet.header.sequence_number = 0
        packet.header.payload_size = len(bitmap) + 4 + 1
        logger.debug("Sending NACK")
        self._transmit(packet.serialize())

    def say_bye_to_peer(self) -> None:
        """Tell the peer the session is over."""
        header = PacketHeader(PacketType.BYE, 0, 0, 0)
        self._transmit(header.serialize())

    # -- plumbing ---------------------------------------------------------

    def _transmit(self, buffer: bytes) -> bool:
        if self.peer is None:
            logger.warning("Destination address not set, cannot transmit buffer")
            return False
        if self._transport is None:
            logger.warning("No transport, cannot transmit buffer")
            return False
        self._transport.sendto(buffer, self.peer)
        return True

    def _close_file(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def close(self) -> None:
        """Stop the timers, close the output file and the transport."""
        for timer in (self._nack_timer, self._debounce_timer):
            if timer is not None:
                timer.cancel()
        self._nack_timer = None
        self._debounce_timer = None
        self._close_file()
        if self._transport is not None:
            self._transport.close()
            self._transport = None