#! /usr/bin/env -S python3 -B

"""Exercise a PL2303 USB-to-serial bridge: open it, optionally send a message, and print what comes back.

With a loopback plug (TX connected to RX) on the serial side, everything that is sent should be received.
"""

import argparse
import asyncio
import logging
import time

from pl2303 import Pl2303Session, SessionConfig, wait_until_ready
from pl2303.device_behavior import decode_modem_status
from pl2303.utilities import initialize_libusb_library_path_environment_variable


async def run_terminal(config: SessionConfig, message: bytes, duration: float) -> None:
    """Open the device, send the message, and show incoming data and modem status for a while."""

    t_start = time.monotonic()

    def timestamp() -> str:
        return f"[{time.monotonic() - t_start:8.3f}]"

    session = await Pl2303Session.open(config)

    @session.status.subscribe
    def on_status(packet: bytes) -> None:
        print(f"{timestamp()} status: {packet.hex(' ')} -> {decode_modem_status(packet)}")

    @session.data.subscribe
    def on_data(data: bytes) -> None:
        print(f"{timestamp()} received {len(data)} bytes: {data!r}")

    @session.error.subscribe
    def on_error(exception: Exception) -> None:
        print(f"{timestamp()} error: {exception}")

    async with session:

        await wait_until_ready(session, timeout=5.0)

        print(f"{timestamp()} ready: {session.chip_type.value} chip at {session.negotiated_baud_rate} baud.")

        if message:
            print(f"{timestamp()} sending {len(message)} bytes: {message!r}")
            session.send(message)

        await asyncio.sleep(duration)

    print(f"{timestamp()} closed.")


def main():
    """Parse the command line and run the terminal."""

    parser = argparse.ArgumentParser(description="Exercise a PL2303 USB-to-serial bridge.")
    parser.add_argument("--port", type=int, default=0, help="index of the PL2303 device to use (default: 0)")
    parser.add_argument("--baud-rate", type=int, default=9600, help="baud rate (default: 9600)")
    parser.add_argument("--send", default="", help="text to send once the device is ready")
    parser.add_argument("--duration", type=float, default=2.0, help="seconds to listen before closing (default: 2)")
    parser.add_argument("--verbose", action="store_true", help="show the driver's debug logging")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    initialize_libusb_library_path_environment_variable()

    config = SessionConfig(port=args.port, baud_rate=args.baud_rate)
    message = args.send.encode("ascii").decode("unicode_escape").encode("latin-1")

    asyncio.run(run_terminal(config, message, args.duration))


if __name__ == "__main__":
    main()
