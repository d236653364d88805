"""This module provides the Pl2303Session class."""

import asyncio
import logging
from typing import Callable, NamedTuple, Optional

from .bringup import BringUp, SessionState
from .baud_rate import check_requested_baud_rate
from .device_behavior import (ChipType, Pl2303Behavior, detect_chip_type, get_pl2303_behavior,
                              PROLIFIC_VENDOR_ID, PL2303_PRODUCT_ID, USB_CLASS_COMMUNICATIONS, HX_MAX_PACKET_SIZE_0)
from .errors import PreconditionError, SessionStateError, TransportError
from .notifications import Notification
from .transport import (EndpointDirection, EndpointInfo, InterfaceClaim, LibUsbTransport, TransferType, UsbTransport,
                        find_endpoint)
from .vendor_registers import VendorRegisters

logger = logging.getLogger(__name__)

PL2303_INTERFACE_NUMBER = 0


class SessionConfig(NamedTuple):
    """Parameters for opening a session."""
    port: int = 0          # Selects the n-th PL2303 device, in enumeration order.
    baud_rate: int = 9600  # Rounded to the nearest supported rate.


class EndpointTriple(NamedTuple):
    """The three endpoints of the PL2303 interface."""
    interrupt_in: EndpointInfo  # Modem status.
    bulk_in: EndpointInfo       # Received data.
    bulk_out: EndpointInfo      # Transmitted data.


class Pl2303Session:
    """A serial session on a PL2303 USB-to-serial bridge.

    Sessions are created by the `open` class method. The session reports what happens on the device through
    four notification channels:

    * status -- the raw modem status packet of each interrupt-in transfer (see device_behavior.decode_modem_status);
    * data   -- the bytes of each bulk-in transfer;
    * ready  -- fired once, when the bring-up sequence has completed; from then on, data can be sent;
    * error  -- a TransportError (or other Pl2303Error) from any transfer. Errors do not close the session.
    * closed -- fired once, when `close` starts; a session that is closed can no longer become ready.

    Status notifications start right after opening, so they may arrive before the session is ready.
    """

    def __init__(self, transport: UsbTransport, device_handle, claim: InterfaceClaim, endpoints: EndpointTriple,
                 chip_type: ChipType, behavior: Pl2303Behavior, config: SessionConfig):

        self.status: Notification[bytes] = Notification("status")
        self.data: Notification[bytes] = Notification("data")
        self.ready: Notification[None] = Notification("ready")
        self.error: Notification[Exception] = Notification("error")
        self.closed: Notification[None] = Notification("closed")

        self._transport = transport
        self._device_handle = device_handle
        self._claim = claim
        self._endpoints = endpoints
        self._chip_type = chip_type
        self._behavior = behavior
        self._config = config

        registers = VendorRegisters(transport, device_handle, behavior.control_timeout)
        self._bring_up = BringUp(registers, config.baud_rate, self._start_receiving, self._announce_ready)
        self._bring_up_task: Optional[asyncio.Task] = None

        self._send_lock = asyncio.Lock()
        self._send_tasks: set[asyncio.Task] = set()
        self._closed = False

    @classmethod
    async def open(cls, config: SessionConfig = SessionConfig(), *, transport: Optional[UsbTransport] = None,
                   behavior: Optional[Pl2303Behavior] = None) -> "Pl2303Session":
        """Open a PL2303 device and start bringing it up.

        The session is returned as soon as the device is opened and its interface is claimed; the bring-up
        sequence continues in the background. Subscribe to `ready` and `error` to learn how it ends.

        If the device cannot be used, PreconditionError is raised and nothing is left open.
        """

        if config.port < 0:
            raise PreconditionError(f"Bad port index {config.port}.")

        check_requested_baud_rate(config.baud_rate)

        if transport is None:
            transport = LibUsbTransport()

        devices = transport.enumerate(PROLIFIC_VENDOR_ID, PL2303_PRODUCT_ID)
        try:
            if len(devices) <= config.port:
                raise PreconditionError(f"Cannot open port {config.port}: found {len(devices)} PL2303 device(s)."
                                        " Make sure the device is connected and user permissions allow I/O access to the device.")

            device = devices[config.port]
            descriptor = transport.get_device_descriptor(device)
            chip_type = detect_chip_type(descriptor.device_class, descriptor.max_packet_size_0)

            if descriptor.device_class == USB_CLASS_COMMUNICATIONS:
                raise PreconditionError(f"Unsupported PL2303 variant ({chip_type.value}, device class 0x{descriptor.device_class:02x}).")

            if descriptor.max_packet_size_0 != HX_MAX_PACKET_SIZE_0:
                raise PreconditionError(f"Unsupported PL2303 variant ({chip_type.value},"
                                        f" control packet size {descriptor.max_packet_size_0}).")

            device_handle = transport.open(device)
        finally:
            # The opened device handle keeps its own reference to the device.
            transport.free_devices(devices)

        if behavior is None:
            behavior = get_pl2303_behavior(chip_type)

        try:
            interface_count = transport.count_interfaces(device_handle)
            if interface_count != 1:
                raise PreconditionError(f"Expected a single interface, found {interface_count}.")

            claim = transport.claim_interface(device_handle, PL2303_INTERFACE_NUMBER)
            try:
                endpoint_list = transport.list_endpoints(claim)
                endpoints = EndpointTriple(
                    find_endpoint(endpoint_list, TransferType.INTERRUPT, EndpointDirection.IN),
                    find_endpoint(endpoint_list, TransferType.BULK, EndpointDirection.IN),
                    find_endpoint(endpoint_list, TransferType.BULK, EndpointDirection.OUT)
                )
            except Exception:
                await transport.release_interface(claim, close_endpoints=True)
                raise
        except Exception:
            # If anything went wrong after the device was opened, we close it again before re-raising.
            transport.close(device_handle)
            raise

        session = cls(transport, device_handle, claim, endpoints, chip_type, behavior, config)
        session._start()

        logger.info("Opened PL2303 port %d (%s chip); bringing it up at %d baud.",
                    config.port, chip_type.value, config.baud_rate)

        return session

    def _start(self) -> None:
        """Start polling the interrupt-in endpoint, and start the bring-up sequence."""
        endpoint = self._endpoints.interrupt_in
        self._transport.start_polling(
            self._claim, endpoint, self.status.emit, self._report_error,
            transfer_size=self._behavior.interrupt_in_transfer_size or endpoint.max_packet_size,
            timeout=self._behavior.poll_timeout
        )
        self._bring_up_task = asyncio.get_running_loop().create_task(self._run_bring_up(), name="pl2303 bring-up")

    async def _run_bring_up(self) -> None:
        try:
            await self._bring_up.run()
        except Exception as exception:
            self._report_error(exception)

    def _start_receiving(self) -> None:
        endpoint = self._endpoints.bulk_in
        self._transport.start_polling(
            self._claim, endpoint, self.data.emit, self._report_error,
            transfer_size=self._behavior.bulk_in_transfer_size or endpoint.max_packet_size,
            timeout=self._behavior.poll_timeout
        )

    def _announce_ready(self) -> None:
        logger.info("PL2303 port %d is ready (%d baud, 8N1).", self._config.port, self._bring_up.negotiated_baud_rate)
        self.ready.emit()

    def _report_error(self, exception: Exception) -> None:
        logger.warning("PL2303 port %d: %s", self._config.port, exception)
        self.error.emit(exception)

    @property
    def state(self) -> SessionState:
        if self._closed:
            return SessionState.CLOSED
        return self._bring_up.state

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def chip_type(self) -> ChipType:
        return self._chip_type

    @property
    def endpoints(self) -> EndpointTriple:
        return self._endpoints

    @property
    def negotiated_baud_rate(self) -> Optional[int]:
        """The baud rate programmed into the chip; None until the line coding has been set."""
        return self._bring_up.negotiated_baud_rate

    @property
    def bring_up_failure(self) -> Optional[Exception]:
        return self._bring_up.failure

    def send(self, data: bytes) -> None:
        """Queue data for transmission on the bulk-out endpoint.

        The data is sent as a single bulk transfer, in the order in which `send` was called. Completion is not
        reported; a failed transfer is reported through the `error` notification.

        Sending is only allowed once the session is ready.
        """
        if self.state is not SessionState.READY:
            raise SessionStateError("send", self.state)

        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"Expected bytes, bytearray or memoryview, got {type(data).__name__}.")

        task = asyncio.get_running_loop().create_task(self._transfer_out(bytes(data)))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _transfer_out(self, data: bytes) -> None:
        # asyncio.Lock wakes up waiters in FIFO order, which keeps the transfers in order.
        async with self._send_lock:
            try:
                await self._transport.bulk_transfer(self._device_handle, self._endpoints.bulk_out, data,
                                                    timeout=self._behavior.bulk_out_timeout)
            except TransportError as exception:
                self._report_error(exception)

    async def close(self, callback: Optional[Callable[[], None]] = None) -> None:
        """Close the session.

        The `closed` notification is emitted first. Then all notification subscribers are removed, so no other
        notifications are delivered once closing has started. Next, the interface is released (stopping the
        endpoint pollers) and the device is closed. Finally, the callback (if given) is invoked without arguments.

        Closing a session that is already closed does nothing, except invoking the callback.
        """

        if not self._closed:
            self._closed = True
            self.closed.emit()

            for notification in (self.status, self.data, self.ready, self.error, self.closed):
                notification.unsubscribe_all()

            # Let a control transfer that is in progress finish, but don't start new bring-up steps.
            self._bring_up.abandon()
            pending = list(self._send_tasks)
            if self._bring_up_task is not None:
                pending.append(self._bring_up_task)
            await asyncio.gather(*pending, return_exceptions=True)

            try:
                await self._transport.release_interface(self._claim, close_endpoints=True)
            finally:
                self._transport.close(self._device_handle)

            logger.info("Closed PL2303 port %d.", self._config.port)

        if callback is not None:
            callback()

    async def __aenter__(self):
        return self

    async def __aexit__(self, _exception_type, _exception_value, _exception_traceback):
        await self.close()
