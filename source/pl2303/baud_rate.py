"""Baud rate selection and line coding for the PL2303.

The PL2303 only supports a fixed set of baud rates. A requested rate is replaced by the nearest supported
rate before it is programmed into the chip.

Line parameters are programmed using a 7-byte line coding block, as defined by the USB CDC ACM class:

    offset  size  field
    ------  ----  ---------------------------------------------------
       0      4   baud rate, little-endian
       4      1   stop bits (0: 1 stop bit, 1: 1.5 stop bits, 2: 2 stop bits)
       5      1   parity (0: none, 1: odd, 2: even, 3: mark, 4: space)
       6      1   data bits (5, 6, 7, 8)

The driver always uses 8 data bits, no parity, and 1 stop bit.
"""

import logging
import struct
from typing import NamedTuple

from .errors import PreconditionError, TransportError
from .vendor_registers import Request, RequestType, VendorRegisters

logger = logging.getLogger(__name__)

SUPPORTED_BAUD_RATES = (
    75, 150, 300, 600, 1200, 1800, 2400, 3600,
    4800, 7200, 9600, 14400, 19200, 28800, 38400,
    57600, 115200, 230400, 460800, 614400,
    921600, 1228800, 2457600, 3000000, 6000000
)

# Rates above this value need a different divisor-based programming method, which is not implemented.
MAX_REQUESTED_BAUD_RATE = 115200

LINE_CODING_SIZE = 7
LINE_CODING_FORMAT = "<IBBB"

ONE_STOP_BIT = 0
NO_PARITY = 0
EIGHT_DATA_BITS = 8


class LineCoding(NamedTuple):
    """The decoded contents of a line coding block."""
    baud_rate: int
    stop_bits: int
    parity: int
    data_bits: int


def check_requested_baud_rate(requested: int) -> None:
    """Verify that a requested baud rate can be negotiated."""
    if not 0 < requested <= MAX_REQUESTED_BAUD_RATE:
        raise PreconditionError(f"Unsupported baud rate {requested}"
                                f" (must be in the range 1 .. {MAX_REQUESTED_BAUD_RATE}).")


def nearest_baud_rate(requested: int) -> int:
    """Return the supported baud rate closest to the requested one.

    If two supported rates are equally close, the lower one is selected.
    """
    check_requested_baud_rate(requested)
    return min(SUPPORTED_BAUD_RATES, key=lambda rate: (abs(rate - requested), rate))


def encode_line_coding(template: bytes, baud_rate: int) -> bytes:
    """Make a line coding block for 8N1 at the given rate, starting from a block read from the device."""
    if len(template) != LINE_CODING_SIZE:
        raise ValueError(f"A line coding block has {LINE_CODING_SIZE} bytes, not {len(template)}.")
    block = bytearray(template)
    struct.pack_into(LINE_CODING_FORMAT, block, 0, baud_rate, ONE_STOP_BIT, NO_PARITY, EIGHT_DATA_BITS)
    return bytes(block)


def decode_line_coding(block: bytes) -> LineCoding:
    """Decode a line coding block."""
    return LineCoding(*struct.unpack(LINE_CODING_FORMAT, block))


async def set_line_coding(registers: VendorRegisters, requested: int) -> int:
    """Program the line coding for the requested baud rate, 8 data bits, no parity, 1 stop bit.

    The current line coding is read from the device first; the block is then updated and written back.
    Returns the baud rate that was actually programmed.
    """
    baud_rate = nearest_baud_rate(requested)

    template = await registers.control_transfer(RequestType.CLASS_IN, Request.GET_LINE_CODING, 0, 0, LINE_CODING_SIZE)
    if len(template) != LINE_CODING_SIZE:
        raise TransportError(f"get line coding: expected {LINE_CODING_SIZE} bytes, got {len(template)}")

    logger.debug("Line coding was %s; programming %d baud, 8N1.", decode_line_coding(template), baud_rate)

    block = encode_line_coding(template, baud_rate)
    await registers.control_transfer(RequestType.CLASS_OUT, Request.SET_LINE_CODING, 0, 0, block)

    return baud_rate
