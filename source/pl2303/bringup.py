"""The PL2303 bring-up sequence.

After the device has been opened and its interface claimed, the chip needs a fixed sequence of vendor register
accesses before it passes serial data. The sequence below is the one used for HX-type chips. The values read
back from the registers are not used; the reads themselves are part of the initialization ritual.

The sequence is executed as an explicit state machine: a cursor advances over the step table, one step at a
time, and each step is only started after the previous one has completed. The first failing step ends the
sequence in the FAILED state. Nothing is retried, and register writes that were already done are not undone.
"""

import logging
from enum import Enum
from typing import Callable, NamedTuple, Optional

from .baud_rate import set_line_coding
from .vendor_registers import VendorRegisters

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """States of a PL2303 session."""
    OPENING     = "opening"      # Opened; initializing the vendor registers.
    NEGOTIATING = "negotiating"  # Programming the line coding and flow control.
    READY       = "ready"        # Passing serial data.
    FAILED      = "failed"       # Bring-up failed; the session can only be closed.
    CLOSED      = "closed"       # Terminal.


class StepKind(Enum):
    """The different kinds of bring-up steps."""
    VENDOR_READ     = "vendor read"
    VENDOR_WRITE    = "vendor write"
    SET_LINE_CODING = "set line coding"
    START_RECEIVING = "start receiving"
    ANNOUNCE_READY  = "announce ready"


class BringUpStep(NamedTuple):
    """A single step of the bring-up sequence."""
    kind: StepKind
    value: int = 0
    index: int = 0
    purpose: str = ""

    def __str__(self):
        match self.kind:
            case StepKind.VENDOR_READ:
                text = f"vendor read 0x{self.value:04x}"
            case StepKind.VENDOR_WRITE:
                text = f"vendor write 0x{self.value:04x} <- 0x{self.index:02x}"
            case _:
                text = self.kind.value
        return f"{text} ({self.purpose})" if self.purpose else text


BRING_UP_STEPS = (
    BringUpStep(StepKind.VENDOR_READ, 0x8484),
    BringUpStep(StepKind.VENDOR_WRITE, 0x0404, 0),
    BringUpStep(StepKind.VENDOR_READ, 0x8484),
    BringUpStep(StepKind.VENDOR_READ, 0x8383),
    BringUpStep(StepKind.VENDOR_READ, 0x8484),
    BringUpStep(StepKind.VENDOR_WRITE, 0x0404, 1),
    BringUpStep(StepKind.VENDOR_READ, 0x8484),
    BringUpStep(StepKind.VENDOR_READ, 0x8383),
    BringUpStep(StepKind.VENDOR_WRITE, 0, 1),
    BringUpStep(StepKind.VENDOR_WRITE, 1, 0),
    BringUpStep(StepKind.VENDOR_WRITE, 2, 0x44),
    BringUpStep(StepKind.SET_LINE_CODING),
    BringUpStep(StepKind.VENDOR_WRITE, 0, 0, "no flow control"),
    BringUpStep(StepKind.VENDOR_WRITE, 8, 0, "reset upstream data pipe"),
    BringUpStep(StepKind.VENDOR_WRITE, 9, 0, "reset downstream data pipe"),
    BringUpStep(StepKind.START_RECEIVING),
    BringUpStep(StepKind.ANNOUNCE_READY),
)


class BringUp:
    """Runs the bring-up sequence for one device.

    The `start_receiving` and `announce_ready` callbacks are invoked by the last two steps.
    """

    def __init__(self, registers: VendorRegisters, baud_rate: int,
                 start_receiving: Callable[[], None], announce_ready: Callable[[], None]):
        self._registers = registers
        self._baud_rate = baud_rate
        self._start_receiving = start_receiving
        self._announce_ready = announce_ready

        self.cursor = 0
        self.state = SessionState.OPENING
        self.negotiated_baud_rate: Optional[int] = None
        self.failure: Optional[Exception] = None
        self._abandoned = False

    def abandon(self) -> None:
        """Do not start any further steps. A step that is in progress still runs to completion."""
        self._abandoned = True

    async def run(self) -> None:
        """Execute the remaining steps in order. The first exception puts the state machine in the FAILED state."""

        if self.state is not SessionState.OPENING:
            raise RuntimeError(f"Bring-up cannot be started in state {self.state}.")

        try:
            while self.cursor < len(BRING_UP_STEPS) and not self._abandoned:
                step = BRING_UP_STEPS[self.cursor]
                logger.debug("Bring-up step %d of %d: %s.", self.cursor + 1, len(BRING_UP_STEPS), step)
                await self._execute(step)
                self.cursor += 1
        except Exception as exception:
            logger.debug("Bring-up failed at step %d: %s.", self.cursor + 1, exception)
            self.state = SessionState.FAILED
            self.failure = exception
            raise

    async def _execute(self, step: BringUpStep) -> None:
        match step.kind:
            case StepKind.VENDOR_READ:
                await self._registers.vendor_read(step.value, step.index)
            case StepKind.VENDOR_WRITE:
                await self._registers.vendor_write(step.value, step.index)
            case StepKind.SET_LINE_CODING:
                self.state = SessionState.NEGOTIATING
                self.negotiated_baud_rate = await set_line_coding(self._registers, self._baud_rate)
            case StepKind.START_RECEIVING:
                self._start_receiving()
            case StepKind.ANNOUNCE_READY:
                self.state = SessionState.READY
                self._announce_ready()
