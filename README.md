# slothudp

A small file transfer protocol on top of UDP, built on `asyncio`. A sender
offers a file to a receiver with a handshake. The receiver acknowledges the
handshake, and the sender then streams the file in numbered chunks within a
sliding window. The receiver writes the chunks to disk in order and
acknowledges them with a bitmap.

It has no dependencies beyond the standard library.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Command line

The `slothudp` command starts a receiver and a sender in one process. It
then sends a file over the given address:

```
slothudp FILE [--host 127.0.0.1] [--port 5000] [--timeout 5.0] [-v]
```

- `--host` is the address both endpoints bind to. The default is `127.0.0.1`.
- `--port` is the receiver's port. The default is 5000. The sender always
  binds to port 4000.
- `--timeout` is how many seconds the transfer runs before both endpoints
  are closed. The default is 5.
- `-v` turns on debug logging.

The receiver writes the file, under the same name, into the current
directory. Run the command from a directory other than the one that holds
`FILE`: otherwise the receiver truncates the very file being sent. The
command exits with 0 if the received file exists afterwards, and with 1
otherwise or on a socket error.

## Library use

The two endpoints are `asyncio.DatagramProtocol` subclasses. You use them
with `loop.create_datagram_endpoint`.

### `slothudp.receiver.SlothReceiver`

`SlothReceiver(on_file_request=None, output_dir=".", window_size=8)`

- Every handshake it receives is acknowledged. The acknowledgement carries
  the request id as its sequence number. `on_file_request(filename, size,
  host)` is called first, if given. The receiver then opens
  `output_dir / filename` for writing.
- Data packets are buffered and written in sequence order. Packets below
  the next sequence number to write are ignored.
- After every `window_size` data packets, it sends an ACK with a bitmap of
  the received packets, counting from the acknowledgement base.
- A FIN packet closes the output file.
- `generate_ack_bitmap(base, window_size)` returns the MSB-first bitmap of
  received packets.
- `missing_sequence_numbers()` returns the sequence numbers not yet received
  up to the highest one seen.
- `send_nack(missing)` sends a NACK bitmap of the given sequence numbers.
- `say_bye_to_peer()` sends a BYE packet.
- `close()` stops the timers and closes the file and the transport.

The module constants are `RX_PORT` (5000), `ACK_WINDOW` (8),
`NACK_INTERVAL` (0.5 s) and `NACK_DEBOUNCE` (0.1 s).

### `slothudp.sender.SlothSender`

`SlothSender(chunk_size=700, retry_interval=0.5, request_id_factory=None)`

- `initiate_handshake(file_path, file_size, destination, port)` sends a
  handshake with a random 32-bit request id and returns that id.
  `destination` must be an IP address. The handshake is sent again every
  `retry_interval` seconds until it is acknowledged. It gives up on the
  fifth retry tick, so it is sent at most five times in all.
- On a handshake acknowledgement with the matching request id, the sender
  opens the file. It sends chunks while fewer than 10 packets are
  unacknowledged.
- Each ACK removes the acknowledged packets from the send window, slides
  the window base and sends the next chunks. Once the whole file has been
  read, a FIN packet is sent. This happens after each such step.
- `close()` stops the retry timer and closes the file and the transport.

The module constants are `TX_PORT` (4000), `CHUNK_SIZE` (700),
`WINDOW_SIZE` (10), `PROTOCOL_VERSION` (1), `HANDSHAKE_RETRY_LIMIT` (5) and
`HANDSHAKE_RETRY_INTERVAL` (0.5 s).

### `slothudp.main`

`await run(file_path, host="127.0.0.1", port=5000, timeout=5.0)` wires both
endpoints together and transfers the file for `timeout` seconds. It returns
the path the receiver wrote to, or `None`. `main(argv=None)` is the command
described above.

## Wire format

Every datagram starts with an 11-byte big-endian header
(`slothudp.types.PacketHeader`):

| field            | size    |
|------------------|---------|
| packet type      | 1 byte  |
| sequence number  | 4 bytes |
| payload size     | 2 bytes |
| checksum         | 4 bytes |

The packet types (`slothudp.types.PacketType`) are DATA, ACK, NACK,
HANDSHAKE, HANDSHAKEACK, FIN and BYE, numbered 0 to 6. A payload follows the
header. It is a byte string with a 32-bit length prefix. The checksum is
the CRC-16 (X.25) of that payload, from `calculate_checksum`.

`slothudp.packets` holds the encoders and decoders:

- `serialize_handshake` and `serialize_data`
- `parse_packet_header`, which returns `(header, payload)`
- `deserialize_handshake`, `deserialize_data` and `deserialize_ack_window`
- `generate_bitmap_from_set`

A short, truncated or corrupted datagram, or one of unknown type, raises
`slothudp.packets.PacketError`, a `ValueError`.

## What it does not do

- The sender never retransmits data packets. A lost chunk stays lost, and
  the receiver stops writing at the gap.
- The receiver scans for missing packets on a timer, but it does not send
  NACKs by itself. The sender does nothing with NACKs it receives.
- Nothing waits for the user to accept a request. Every handshake is
  acknowledged at once, and a new one restarts the output file.
- BYE packets are ignored by the sender, and no session is torn down by the
  protocol. Both endpoints stay open until `close()` is called.