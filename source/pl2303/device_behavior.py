"""PL2303 chip variants and the device behaviors that go with them.

Prolific sold several generations of the PL2303 under the same Vendor and Product ID. They can only be told
apart by looking at the device descriptor. This driver implements the register initialization sequence of the
HX variant; the other variants are recognized so that they can be rejected with a meaningful message.

This module also defines the timing behavior of the driver, and a decoder for the modem status that the chip
reports on its interrupt-in endpoint.
"""

from enum import Enum, Flag
from typing import NamedTuple, Optional

PROLIFIC_VENDOR_ID = 0x067b
PL2303_PRODUCT_ID = 0x2303

USB_CLASS_COMMUNICATIONS = 0x02  # Device class reported by the original (type 0) PL2303.
USB_CLASS_PER_INTERFACE = 0x00
USB_CLASS_VENDOR_SPECIFIC = 0xff

HX_MAX_PACKET_SIZE_0 = 0x40  # The HX variant has a 64-byte control endpoint; older variants have 8 bytes.

UART_STATE_OFFSET = 8  # Offset of the UART state byte in an interrupt-in status packet.


class ChipType(Enum):
    """PL2303 chip variants, as far as they can be distinguished from the device descriptor."""
    TYPE_0 = "type0"
    TYPE_1 = "type1"
    HX = "hx"
    UNKNOWN = "unknown"


def detect_chip_type(device_class: int, max_packet_size_0: int) -> ChipType:
    """Determine the chip variant from the bDeviceClass and bMaxPacketSize0 fields of the device descriptor."""
    if device_class == USB_CLASS_COMMUNICATIONS:
        return ChipType.TYPE_0
    if max_packet_size_0 == HX_MAX_PACKET_SIZE_0:
        return ChipType.HX
    if device_class in (USB_CLASS_PER_INTERFACE, USB_CLASS_VENDOR_SPECIFIC):
        return ChipType.TYPE_1
    return ChipType.UNKNOWN


class Pl2303Behavior(NamedTuple):
    """Timeouts and transfer sizes used when talking to a PL2303 device.

    All timeouts are in milliseconds. A transfer size of None means: use the wMaxPacketSize of the endpoint.
    """
    control_timeout: int = 100
    poll_timeout: int = 100
    bulk_out_timeout: int = 1000
    interrupt_in_transfer_size: Optional[int] = None
    bulk_in_transfer_size: Optional[int] = None


def get_pl2303_behavior(chip_type: ChipType) -> Pl2303Behavior:
    """Generate a Pl2303Behavior instance for the given chip variant."""
    match chip_type:
        case ChipType.HX:
            # Read up to 256 bytes per bulk-in transfer, like the Linux pl2303 driver does.
            return Pl2303Behavior(bulk_in_transfer_size=256)
        case _:
            return Pl2303Behavior()


class ModemStatus(Flag):
    """Bits of the UART state byte reported on the interrupt-in endpoint."""
    NONE          = 0x00
    DCD           = 0x01
    DSR           = 0x02
    BREAK_ERROR   = 0x04
    RING          = 0x08
    FRAME_ERROR   = 0x10
    PARITY_ERROR  = 0x20
    OVERRUN_ERROR = 0x40
    CTS           = 0x80


def decode_modem_status(status_packet: bytes) -> ModemStatus:
    """Interpret the UART state byte of a raw interrupt-in status packet.

    Packets too short to contain the UART state byte carry no modem status; ModemStatus.NONE is returned.
    """
    if len(status_packet) <= UART_STATE_OFFSET:
        return ModemStatus.NONE
    return ModemStatus(status_packet[UART_STATE_OFFSET])
