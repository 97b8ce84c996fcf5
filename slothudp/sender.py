"""Sending side of a Sloth UDP file transfer."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import random
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO

from slothudp.packets import (
    PacketError,
    calculate_checksum,
    deserialize_ack_window,
    parse_packet_header,
    serialize_data,
    serialize_handshake,
)
from slothudp.types import (
    DataPacket,
    HandshakePacket,
    PacketHeader,
    PacketType,
    SessionState,
)

logger = logging.getLogger(__name__)

TX_PORT = 4000
"""Port the sender binds to."""

CHUNK_SIZE = 700
"""Bytes of file content carried by one data packet."""

WINDOW_SIZE = 10
"""Number of unacknowledged data packets allowed in flight."""

PROTOCOL_VERSION = 1
"""Protocol version announced in the handshake."""

HANDSHAKE_RETRY_LIMIT = 5
"""Number of retry ticks before the handshake is given up."""

HANDSHAKE_RETRY_INTERVAL = 0.5
"""Seconds between two handshake retransmissions."""


def _random_request_id() -> int:
    return random.getrandbits(32)


class SlothSender(asyncio.DatagramProtocol):
    """Offers a file to a receiver and streams it in a sliding window.

    ``request_id_factory`` produces the 32-bit id of each handshake request.
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        retry_interval: float = HANDSHAKE_RETRY_INTERVAL,
        request_id_factory: Callable[[], int] | None = None,
    ) -> None:
        self.chunk_size = chunk_size
        self.retry_interval = retry_interval
        self.protocol_version = PROTOCOL_VERSION
        self.handshake_retry_limit = HANDSHAKE_RETRY_LIMIT
        self.handshake_retry_count = 0

        self.file_path: Path | None = None
        self.file_size = 0
        self.destination: tuple[str, int] | None = None
        self.window_size = WINDOW_SIZE
        self.base_seq_num = 0
        self.next_seq_num = 0
        self.send_window: dict[int, bytes] = {}
        self.active_session_id = 0
        self.session_state = SessionState.NOTACTIVE

        self._request_id_factory = request_id_factory or _random_request_id
        self._transport: asyncio.DatagramTransport | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._file: BinaryIO | None = None
        self._handshake_buffer = b""
        self._retry_timer: asyncio.TimerHandle | None = None

    # -- asyncio protocol -------------------------------------------------

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        """Remember the transport and the loop that drives the retry timer."""
        self._transport = transport  # type: ignore[assignment]
        self._loop = asyncio.get_running_loop()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        """Dispatch one datagram by its packet type."""
        try:
            header, payload = parse_packet_header(data)
        except PacketError as exc:
            logger.warning("SlothTX: dropping packet: %s", exc)
            return

        if header.type is PacketType.HANDSHAKEACK:
            logger.debug("Received handshake acknowledgement")
            self._handle_handshake_ack(header.sequence_number)
        elif header.type is PacketType.ACK:
            self._handle_data_ack(payload)
        else:
            # BYE needs no action on this side yet.
            logger.debug("SlothTx: unexpected %s packet, dropping", header.type.name)

    # -- handshake --------------------------------------------------------

    def initiate_handshake(
        self, file_path: str | os.PathLike[str], file_size: int, destination: str, port: int
    ) -> int:
        """Offer ``file_path`` to the receiver at ``destination``:``port``.

        The handshake is retransmitted until acknowledged or until the retry
        limit is reached. Returns the request id of the new session.
        """
        logger.info(
            "Initiating handshake with %s:%d, sending file %s of size %d",
            destination, port, file_path, file_size,
        )
        self._cancel_retry()
        self._close_file()

        self.file_path = Path(file_path)
        self.file_size = file_size
        try:
            self.destination = (str(ipaddress.ip_address(destination)), port)
        except ValueError:
            logger.warning("Invalid destination address %r", destination)
            self.destination = None

        packet = HandshakePacket(
            filename=self.file_path.name,
            total_size=file_size,
            request_id=self._request_id_factory() & 0xFFFFFFFF,
            protocol_version=self.protocol_version,
        )
        logger.debug("SlothTX:: %s", packet)
        buffer = serialize_handshake(packet)

        self.active_session_id = packet.request_id
        self.session_state = SessionState.REQPENDING
        self._transmit(buffer)

        self._handshake_buffer = buffer
        self.handshake_retry_count = 0
        self._schedule_retry()
        return packet.request_id

    def _schedule_retry(self) -> None:
        if self._loop is not None:
            self._retry_timer = self._loop.call_later(self.retry_interval, self._on_retry)

    def _on_retry(self) -> None:
        self._retry_timer = None
        self.handshake_retry_count += 1
        if self.handshake_retry_count >= self.handshake_retry_limit:
            logger.warning("Handshake retry limit reached. Giving up.")
            return
        logger.debug("Retrying handshake... attempt %d", self.handshake_retry_count)
        self._transmit(self._handshake_buffer)
        self._schedule_retry()

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _handle_handshake_ack(self, request_id: int) -> None:
        if request_id != self.active_session_id:
            logger.debug("Handshake acknowledgement from invalid session id, dropping")
            return
        logger.debug("Received handshake ack for request id %d", request_id)
        self._cancel_retry()
        self._start_transfer()

    # -- data -------------------------------------------------------------

    def _start_transfer(self) -> bool:
        if self.file_path is None:
            logger.warning("No file to transfer")
            return False
        if self._file is not None:
            logger.warning("File %s is already open", self.file_path)
            return False
        try:
            self._file = open(self.file_path, "rb")  # noqa: SIM115
        except OSError as exc:
            logger.warning("Failed to open file for reading: %s", exc)
            return False

        self.next_seq_num = 0
        self.base_seq_num = 0
        self.window_size = WINDOW_SIZE
        self.send_window.clear()
        self._send_next_window()
        return True

    def _at_end(self) -> bool:
        assert self._file is not None
        return self._file.tell() >= os.fstat(self._file.fileno()).st_size

    def _send_next_window(self) -> None:
        if self._file is None or self._file.closed:
            logger.warning("File not open for reading")
            return

        while self.next_seq_num < self.base_seq_num + self.window_size and not self._at_end():
            chunk = self._file.read(self.chunk_size)
            header = PacketHeader(
                PacketType.DATA, self.next_seq_num, len(chunk), calculate_checksum(chunk)
            )
            buffer = serialize_data(DataPacket(header, chunk))
            logger.debug("Sending data packet: %s", header)
            self._transmit(buffer)
            self.send_window[self.next_seq_num] = buffer
            self.next_seq_num += 1

        if self._at_end():
            logger.debug("Reached end of file, sending FIN packet")
            self._transmit(PacketHeader(PacketType.FIN, 0, 0, 0).serialize())

    def _handle_data_ack(self, payload: bytes) -> None:
        try:
            packet = deserialize_ack_window(payload)
        except PacketError as exc:
            logger.warning("SlothTX: malformed acknowledgement: %s", exc)
            return
        logger.debug("Handling data acknowledgement: %s", packet)

        for index, byte in enumerate(packet.bitmap):
            for bit in range(8):
                if byte & (1 << (7 - bit)):
                    seq = (packet.base_seq_num + index * 8 + bit) & 0xFFFFFFFF
                    self.send_window.pop(seq, None)

        while (
            self.base_seq_num not in self.send_window
            and self.base_seq_num < self.next_seq_num
        ):
            self.base_seq_num += 1

        self._send_next_window()

    # -- plumbing ---------------------------------------------------------

    def _transmit(self, buffer: bytes) -> bool:
        if self.destination is None:
            logger.warning("Destination address not set, cannot transmit buffer")
            return False
        if self._transport is None:
            logger.warning("No transport, cannot transmit buffer")
            return False
        self._transport.sendto(buffer, self.destination)
        return True

    def _close_file(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def close(self) -> None:
        """Stop the retry timer, close the input file and the transport."""
        self._cancel_retry()
        self._close_file()
        if self._transport is not None:
            self._transport.close()
            self._transport = None