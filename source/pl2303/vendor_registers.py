"""Access to the vendor-specific registers of the PL2303.

The PL2303 exposes its internal configuration registers through a pair of vendor-defined control requests.
The register is addressed by the wValue field of the request; for writes, the value to be written is carried
in the wIndex field, and the request has no data stage.
"""

import logging

from .errors import TransportError
from .transport import BetterIntEnum, UsbTransport

logger = logging.getLogger(__name__)


class RequestType(BetterIntEnum):
    """bmRequestType values used by the PL2303 driver."""
    VENDOR_OUT = 0x40     # Host-to-device, vendor, device recipient.
    VENDOR_IN  = 0xc0     # Device-to-host, vendor, device recipient.
    CLASS_OUT  = 0x21     # Host-to-device, class, interface recipient.
    CLASS_IN   = 0xa1     # Device-to-host, class, interface recipient.


class Request(BetterIntEnum):
    """bRequest values used by the PL2303 driver."""
    VENDOR_REGISTER   = 0x01     # Both reads and writes; the direction is in the request type.
    SET_LINE_CODING   = 0x20
    GET_LINE_CODING   = 0x21


class VendorRegisters:
    """Vendor register read and write primitives for one opened PL2303 device.

    Transport errors are not handled here; they propagate as TransportError.
    """

    def __init__(self, transport: UsbTransport, device_handle, timeout: int):
        self._transport = transport
        self._device_handle = device_handle
        self._timeout = timeout

    async def control_transfer(self, request_type: RequestType, request: Request, value: int, index: int,
                               data_or_length: (bytes | int)) -> bytes:
        """Perform a control transfer on the device, with the configured timeout."""
        logger.debug("Control transfer: %s, %s, value 0x%04x, index 0x%04x, %r.",
                     request_type, request, value, index, data_or_length)
        return await self._transport.control_transfer(self._device_handle, request_type, request, value, index,
                                                      data_or_length, timeout=self._timeout)

    async def vendor_read(self, value: int, index: int = 0) -> int:
        """Read a single register byte."""
        response = await self.control_transfer(RequestType.VENDOR_IN, Request.VENDOR_REGISTER, value, index, 1)
        if len(response) != 1:
            raise TransportError(f"vendor read 0x{value:04x}: expected 1 byte, got {len(response)}")
        return response[0]

    async def vendor_write(self, value: int, index: int) -> None:
        """Write a register. There is no payload; `index` is the value written."""
        await self.control_transfer(RequestType.VENDOR_OUT, Request.VENDOR_REGISTER, value, index, b"")
