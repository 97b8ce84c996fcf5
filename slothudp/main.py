"""Command that sends a file to a local receiver over Sloth UDP."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from slothudp.receiver import RX_PORT, SlothReceiver
from slothudp.sender import TX_PORT, SlothSender


async def run(
    file_path: str | os.PathLike[str],
    host: str = "127.0.0.1",
    port: int = RX_PORT,
    timeout: float = 5.0,
) -> Path | None:
    """Start a receiver and a sender on ``host`` and transfer ``file_path``.

    The receiver listens on ``port`` and writes into the current directory.
    Runs for ``timeout`` seconds and returns the path the receiver wrote to,
    or None if no transfer was accepted.
    """
    loop = asyncio.get_running_loop()
    path = Path(file_path)
    size = path.stat().st_size

    _, receiver = await loop.create_datagram_endpoint(
        SlothReceiver, local_addr=(host, port)
    )
    try:
        _, sender = await loop.create_datagram_endpoint(
            SlothSender, local_addr=(host, TX_PORT)
        )
        try:
            sender.initiate_handshake(path, size, host, port)
            await asyncio.sleep(timeout)
        finally:
            sender.close()
    finally:
        receiver.close()
        await asyncio.sleep(0)
    return receiver.file_path


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run one transfer and report the outcome."""
    parser = argparse.ArgumentParser(
        prog="slothudp", description="Reliable file transfer over UDP."
    )
    parser.add_argument("file", help="file to send")
    parser.add_argument("--host", default="127.0.0.1", help="address to use")
    parser.add_argument("--port", type=int, default=RX_PORT, help="receiver port")
    parser.add_argument(
        "--timeout", type=float, default=5.0, help="seconds to run the transfer"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    print("Hello I'm Sloth UDP, a reliable file transfer protocol")

    try:
        received = asyncio.run(run(args.file, args.host, args.port, args.timeout))
    except OSError as exc:
        print(f"slothudp: {exc}", file=sys.stderr)
        return 1

    if received is None or not received.exists():
        print("slothudp: no file was received", file=sys.stderr)
        return 1
    print(f"Received {received}")
    return 0


if __name__ == "__main__":
    sys.exit(main())