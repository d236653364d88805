"""The USB transport capability that the PL2303 driver is built on.

The driver itself only needs a handful of USB operations: find devices, open them, claim an interface, list its
endpoints, and perform control, bulk and interrupt transfers. The UsbTransport abstract base class describes
exactly that capability; LibUsbTransport implements it on top of our ctypes-based libusb binding.

LibUsbTransport performs the blocking libusb calls in the event loop's default executor. All callbacks
(received data, polling errors) are invoked on the event loop thread, so users of a transport never see
concurrent callbacks.
"""

import abc
import asyncio
import ctypes.util
import logging
import os
from enum import IntEnum
from typing import Any, Callable, NamedTuple

from .errors import Pl2303GenericError, PreconditionError, TransportError
from .libusb_library import (LibUsbLibrary, LibUsbLibraryError, LibUsbDevicePtr, LibUsbDeviceHandlePtr,
                             LIBUSB_ENDPOINT_DIR_MASK, LIBUSB_TRANSFER_TYPE_MASK)

logger = logging.getLogger(__name__)


class BetterIntEnum(IntEnum):
    """An IntEnum type that prints as its qualified name, followed by its hexadecimal value."""
    def __repr__(self):
        return f"{self.__class__.__name__}.{self.name}"

    def __str__(self):
        return f"{self.__class__.__name__}.{self.name} (0x{self.value:02x})"


class TransferType(BetterIntEnum):
    """USB transfer types, as encoded in the bmAttributes field of an endpoint descriptor."""
    CONTROL     = 0
    ISOCHRONOUS = 1
    BULK        = 2
    INTERRUPT   = 3


class EndpointDirection(BetterIntEnum):
    """USB endpoint directions, as encoded in bit 7 of an endpoint address."""
    OUT = 0x00
    IN  = 0x80


class EndpointInfo(NamedTuple):
    """An endpoint of a USB interface."""
    address: int
    transfer_type: TransferType
    direction: EndpointDirection
    max_packet_size: int

    def __str__(self):
        return f"endpoint 0x{self.address:02x} ({self.transfer_type.name.lower()}-{self.direction.name.lower()})"


class UsbDeviceDescriptor(NamedTuple):
    """The fields of a USB device descriptor that the driver looks at."""
    vid: int
    pid: int
    device_class: int
    max_packet_size_0: int
    num_configurations: int


class InterfaceClaim:
    """Exclusive ownership of one interface of an opened USB device.

    The claim keeps track of the endpoint pollers started on the interface, so they can be stopped
    when the interface is released.
    """

    def __init__(self, device_handle: Any, interface_number: int):
        self.device_handle = device_handle
        self.interface_number = interface_number
        self.pollers: list[asyncio.Task] = []
        self.stopping = False

    def __repr__(self):
        return f"InterfaceClaim(interface_number={self.interface_number}, pollers={len(self.pollers)})"


def find_endpoint(endpoints: list[EndpointInfo], transfer_type: TransferType,
                  direction: EndpointDirection) -> EndpointInfo:
    """Find the one endpoint with the given transfer type and direction.

    Both the absence of such an endpoint and the presence of more than one are configuration errors.
    """
    matches = [endpoint for endpoint in endpoints
               if endpoint.transfer_type == transfer_type and endpoint.direction == direction]
    if len(matches) != 1:
        raise PreconditionError(f"Expected exactly one {transfer_type.name.lower()}-{direction.name.lower()} endpoint,"
                                f" found {len(matches)}.")
    return matches[0]


DataCallback = Callable[[bytes], None]
ErrorCallback = Callable[[TransportError], None]


class UsbTransport(abc.ABC):
    """The USB host capabilities needed by the PL2303 driver."""

    @abc.abstractmethod
    def enumerate(self, vid: int, pid: int) -> list:
        """Return the devices with the given Vendor and Product ID, in a stable order."""

    def free_devices(self, devices: list) -> None:
        """Let go of devices returned by `enumerate`. Opened devices remain usable."""

    @abc.abstractmethod
    def get_device_descriptor(self, device) -> UsbDeviceDescriptor:
        """Read the device descriptor of an enumerated device."""

    @abc.abstractmethod
    def open(self, device):
        """Open an enumerated device, returning a device handle."""

    @abc.abstractmethod
    def close(self, device_handle) -> None:
        """Close a device handle."""

    @abc.abstractmethod
    def count_interfaces(self, device_handle) -> int:
        """Return the number of interfaces in the device's configuration."""

    @abc.abstractmethod
    def claim_interface(self, device_handle, interface_number: int) -> InterfaceClaim:
        """Take exclusive control of an interface."""

    @abc.abstractmethod
    async def release_interface(self, claim: InterfaceClaim, close_endpoints: bool) -> None:
        """Give up control of an interface; stop its endpoint pollers first if `close_endpoints` is set."""

    @abc.abstractmethod
    def list_endpoints(self, claim: InterfaceClaim) -> list[EndpointInfo]:
        """List the endpoints of a claimed interface."""

    @abc.abstractmethod
    async def control_transfer(self, device_handle, request_type: int, request: int, value: int, index: int,
                               data_or_length: (bytes | int), *, timeout: int) -> bytes:
        """Perform a control transfer.

        For host-to-device requests `data_or_length` is the payload; for device-to-host requests it
        is the expected response length and the response bytes are returned.
        Failures are reported by raising TransportError.
        """

    @abc.abstractmethod
    def start_polling(self, claim: InterfaceClaim, endpoint: EndpointInfo, on_data: DataCallback,
                      on_error: ErrorCallback, *, transfer_size: int, timeout: int) -> None:
        """Start reading an IN endpoint continuously, delivering each non-empty transfer to `on_data`."""

    @abc.abstractmethod
    async def bulk_transfer(self, device_handle, endpoint: EndpointInfo, data: bytes, *, timeout: int) -> None:
        """Send data on a bulk-out endpoint. Failures are reported by raising TransportError."""


class LibUsbLibraryManager:
    """This class manages a LibUsbLibrary instance and a LibUsbContextPtr obtained from it.

    An instance is shared by all LibUsbTransport instances to gain access to libusb functionality.
    """
    def __init__(self):
        self._libusb = None
        self._ctx = None

    def __del__(self):
        if self._ctx is not None:
            # Discard libusb context.
            self._libusb.exit(self._ctx)

    def get_libusb(self) -> LibUsbLibrary:
        """Get the libusb library instance; instantiate it if necessary."""
        if self._libusb is None:
            # Dynamically load the libusb library.
            if "LIBUSB_LIBRARY_PATH" in os.environ:
                filename = os.environ["LIBUSB_LIBRARY_PATH"]
            else:
                # This returns None if the library is not found.
                filename = ctypes.util.find_library("usb-1.0")
            if filename is None:
                raise Pl2303GenericError("Don't know where to find libusb. Set the LIBUSB_LIBRARY_PATH environment variable.")
            logger.debug("Loading libusb from %r.", filename)
            self._libusb = LibUsbLibrary(filename)
        return self._libusb

    def get_libusb_context(self):
        """Get the libusb context instance; initialize one if necessary."""
        if self._ctx is None:
            self._ctx = self.get_libusb().init()
        return self._ctx


class LibUsbTransport(UsbTransport):
    """UsbTransport implementation on top of libusb-1.0."""

    # All LibUsbTransport instances use the same managed instance of libusb and a libusb context.
    _libusb_manager = LibUsbLibraryManager()

    def __init__(self):
        self._libusb = LibUsbTransport._libusb_manager.get_libusb()
        self._ctx = LibUsbTransport._libusb_manager.get_libusb_context()

    def enumerate(self, vid: int, pid: int) -> list[LibUsbDevicePtr]:
        return self._libusb.find_devices(self._ctx, vid, pid)

    def free_devices(self, devices: list[LibUsbDevicePtr]) -> None:
        self._libusb.unref_devices(devices)

    def get_device_descriptor(self, device: LibUsbDevicePtr) -> UsbDeviceDescriptor:
        descriptor = self._libusb.get_device_descriptor(device)
        return UsbDeviceDescriptor(descriptor.idVendor, descriptor.idProduct, descriptor.bDeviceClass,
                                   descriptor.bMaxPacketSize0, descriptor.bNumConfigurations)

    def open(self, device: LibUsbDevicePtr) -> LibUsbDeviceHandlePtr:
        device_handle = self._libusb.open(device)
        try:
            # Let libusb take care of detaching the pl2303 kernel driver when we claim the interface.
            self._libusb.set_auto_detach_kernel_driver(device_handle, True)
        except LibUsbLibraryError:
            self._libusb.close(device_handle)
            raise
        return device_handle

    def close(self, device_handle: LibUsbDeviceHandlePtr) -> None:
        self._libusb.close(device_handle)

    def count_interfaces(self, device_handle: LibUsbDeviceHandlePtr) -> int:
        device = self._libusb.get_device(device_handle)
        config_descriptor = self._libusb.get_config_descriptor(device, 0)
        try:
            return config_descriptor.contents.bNumInterfaces
        finally:
            self._libusb.free_config_descriptor(config_descriptor)

    def claim_interface(self, device_handle: LibUsbDeviceHandlePtr, interface_number: int) -> InterfaceClaim:
        self._libusb.claim_interface(device_handle, interface_number)
        return InterfaceClaim(device_handle, interface_number)

    async def release_interface(self, claim: InterfaceClaim, close_endpoints: bool) -> None:
        if close_endpoints:
            # Pollers notice the flag when their current read returns, which takes at most one poll timeout.
            claim.stopping = True
            await asyncio.gather(*claim.pollers, return_exceptions=True)
            claim.pollers.clear()
        try:
            self._libusb.release_interface(claim.device_handle, claim.interface_number)
        except LibUsbLibraryError as exception:
            raise TransportError(f"release interface {claim.interface_number}", exception) from exception

    def list_endpoints(self, claim: InterfaceClaim) -> list[EndpointInfo]:
        device = self._libusb.get_device(claim.device_handle)
        config_descriptor = self._libusb.get_config_descriptor(device, 0)
        try:
            interface = config_descriptor.contents.interface[claim.interface_number]
            altsetting = interface.altsetting[0]
            endpoints = []
            for endpoint_index in range(altsetting.bNumEndpoints):
                endpoint = altsetting.endpoint[endpoint_index]
                endpoints.append(EndpointInfo(
                    endpoint.bEndpointAddress,
                    TransferType(endpoint.bmAttributes & LIBUSB_TRANSFER_TYPE_MASK),
                    EndpointDirection(endpoint.bEndpointAddress & LIBUSB_ENDPOINT_DIR_MASK),
                    endpoint.wMaxPacketSize
                ))
            return endpoints
        finally:
            self._libusb.free_config_descriptor(config_descriptor)

    async def control_transfer(self, device_handle: LibUsbDeviceHandlePtr, request_type: int, request: int,
                               value: int, index: int, data_or_length: (bytes | int), *, timeout: int) -> bytes:
        try:
            return await asyncio.to_thread(self._libusb.control_transfer, device_handle, request_type, request,
                                           value, index, data_or_length, timeout)
        except LibUsbLibraryError as exception:
            operation = (f"control transfer (request type 0x{request_type:02x}, request 0x{request:02x},"
                         f" value 0x{value:04x}, index 0x{index:04x})")
            raise TransportError(operation, exception) from exception

    def start_polling(self, claim: InterfaceClaim, endpoint: EndpointInfo, on_data: DataCallback,
                      on_error: ErrorCallback, *, transfer_size: int, timeout: int) -> None:
        match endpoint.transfer_type:
            case TransferType.BULK:
                read = self._libusb.bulk_transfer_in
            case TransferType.INTERRUPT:
                read = self._libusb.interrupt_transfer_in
            case _:
                raise Pl2303GenericError(f"Cannot poll {endpoint}.")

        task = asyncio.get_running_loop().create_task(
            self._poll(claim, endpoint, read, on_data, on_error, transfer_size, timeout), name=f"poll {endpoint}")
        claim.pollers.append(task)

    @staticmethod
    async def _poll(claim: InterfaceClaim, endpoint: EndpointInfo, read, on_data: DataCallback,
                    on_error: ErrorCallback, transfer_size: int, timeout: int) -> None:
        logger.debug("Started polling %s.", endpoint)
        while not claim.stopping:
            try:
                data = await asyncio.to_thread(read, claim.device_handle, endpoint.address, transfer_size, timeout)
            except LibUsbLibraryError as exception:
                # The poller ends here; the session decides what to do about it.
                on_error(TransportError(f"poll {endpoint}", exception))
                break
            if data and not claim.stopping:
                on_data(data)
        logger.debug("Stopped polling %s.", endpoint)

    async def bulk_transfer(self, device_handle: LibUsbDeviceHandlePtr, endpoint: EndpointInfo, data: bytes, *,
                            timeout: int) -> None:
        try:
            await asyncio.to_thread(self._libusb.bulk_transfer_out, device_handle, endpoint.address, data, timeout)
        except LibUsbLibraryError as exception:
            raise TransportError(f"bulk transfer on {endpoint}", exception) from exception
