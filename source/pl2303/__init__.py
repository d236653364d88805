"""The pl2303 package provides a cross-platform user-space driver for Prolific PL2303 USB-to-serial bridges.

The driver talks to the chip through libusb-1.0, so no kernel driver is needed. It brings the chip into a usable
state, programs the line parameters (8 data bits, no parity, 1 stop bit at a selectable baud rate), and then
offers a byte-stream interface: received data and modem status are delivered through notifications, and data
is transmitted using the `send` method.

Only the HX variant of the PL2303 is supported. Baud rates up to 115200 are supported; a requested baud
rate is rounded to the nearest rate the chip supports.

The functionality of this package is implemented in the Pl2303Session class, which we import here to
make it available for import directly from the pl2303 package. A typical use looks like this:

    session = await Pl2303Session.open(SessionConfig(baud_rate=115200))
    async with session:
        session.data.subscribe(print)
        await wait_until_ready(session)
        session.send(b"hello\\r\\n")
        ...
"""

from .bringup import SessionState
from .errors import Pl2303Error, Pl2303GenericError, PreconditionError, SessionStateError, TransportError
from .session import Pl2303Session, SessionConfig
from .utilities import wait_until_ready
