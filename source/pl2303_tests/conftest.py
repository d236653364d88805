"""Shared pytest fixtures for the pl2303 test suite.

The tests run against FakeTransport, an in-memory implementation of the UsbTransport interface that records
every operation and lets tests inject failures and drive the endpoint pollers by hand.
"""

import asyncio
from typing import Callable, NamedTuple, Optional

import pytest

from pl2303.errors import TransportError
from pl2303.transport import (EndpointDirection, EndpointInfo, InterfaceClaim, TransferType, UsbDeviceDescriptor,
                              UsbTransport)

INTERRUPT_IN = EndpointInfo(0x81, TransferType.INTERRUPT, EndpointDirection.IN, 10)
BULK_OUT = EndpointInfo(0x02, TransferType.BULK, EndpointDirection.OUT, 64)
BULK_IN = EndpointInfo(0x83, TransferType.BULK, EndpointDirection.IN, 64)

PL2303_ENDPOINTS = (INTERRUPT_IN, BULK_OUT, BULK_IN)

# 9600 baud, 1 stop bit, no parity, 8 data bits.
INITIAL_LINE_CODING = bytes.fromhex("80250000000008")


class FakeDevice(NamedTuple):
    name: str
    descriptor: UsbDeviceDescriptor
    interface_count: int = 1
    endpoints: tuple = PL2303_ENDPOINTS


def make_device(name: str, *, device_class: int = 0x00, max_packet_size_0: int = 0x40,
                interface_count: int = 1, endpoints: tuple = PL2303_ENDPOINTS) -> FakeDevice:
    """Make a fake PL2303 device; by default an HX chip."""
    descriptor = UsbDeviceDescriptor(0x067b, 0x2303, device_class, max_packet_size_0, 1)
    return FakeDevice(name, descriptor, interface_count, endpoints)


class FakeTransport(UsbTransport):
    """A scripted UsbTransport that records what is done to it."""

    def __init__(self, devices: list[FakeDevice]):
        self.devices = devices
        self.log: list[tuple] = []
        self.control_transfers: list[tuple] = []
        self.bulk_transfers: list[tuple] = []
        self.pollers: dict[int, tuple] = {}
        self.freed: list[FakeDevice] = []
        self.open_handles: list[FakeDevice] = []

        self.fail_control_at: Optional[int] = None  # Zero-based number of the control transfer that fails.
        self.fail_bulk: bool = False
        self.line_coding = INITIAL_LINE_CODING
        self.register_value = 0x02
        self.control_hook: Optional[Callable[[tuple], None]] = None

    def enumerate(self, vid: int, pid: int) -> list[FakeDevice]:
        self.log.append(("enumerate", vid, pid))
        return [device for device in self.devices
                if device.descriptor.vid == vid and device.descriptor.pid == pid]

    def free_devices(self, devices: list[FakeDevice]) -> None:
        self.freed.extend(devices)

    def get_device_descriptor(self, device: FakeDevice) -> UsbDeviceDescriptor:
        return device.descriptor

    def open(self, device: FakeDevice) -> FakeDevice:
        self.log.append(("open", device.name))
        self.open_handles.append(device)
        return device

    def close(self, device_handle: FakeDevice) -> None:
        self.log.append(("close", device_handle.name))
        self.open_handles.remove(device_handle)

    def count_interfaces(self, device_handle: FakeDevice) -> int:
        return device_handle.interface_count

    def claim_interface(self, device_handle: FakeDevice, interface_number: int) -> InterfaceClaim:
        self.log.append(("claim", device_handle.name, interface_number))
        return InterfaceClaim(device_handle, interface_number)

    async def release_interface(self, claim: InterfaceClaim, close_endpoints: bool) -> None:
        self.log.append(("release", claim.device_handle.name, close_endpoints))
        if close_endpoints:
            self.pollers.clear()

    def list_endpoints(self, claim: InterfaceClaim) -> list[EndpointInfo]:
        return list(claim.device_handle.endpoints)

    async def control_transfer(self, device_handle, request_type: int, request: int, value: int, index: int,
                               data_or_length: (bytes | int), *, timeout: int) -> bytes:
        transfer = (int(request_type), int(request), value, index, data_or_length)
        number = len(self.control_transfers)
        self.control_transfers.append(transfer)
        self.log.append(("control",) + transfer)
        if self.control_hook is not None:
            self.control_hook(transfer)
        # Give other tasks a chance to run, like a real transfer would.
        await asyncio.sleep(0)
        if number == self.fail_control_at:
            raise TransportError("control transfer", OSError("stalled"))
        if request_type & 0x80:
            if request == 0x21:
                return self.line_coding
            return bytes([self.register_value])
        return b""

    def start_polling(self, claim: InterfaceClaim, endpoint: EndpointInfo, on_data, on_error, *,
                      transfer_size: int, timeout: int) -> None:
        self.log.append(("poll", endpoint.address, transfer_size))
        self.pollers[endpoint.address] = (on_data, on_error)

    async def bulk_transfer(self, device_handle, endpoint: EndpointInfo, data: bytes, *, timeout: int) -> None:
        self.bulk_transfers.append((endpoint.address, data))
        self.log.append(("bulk", endpoint.address, data))
        await asyncio.sleep(0)
        if self.fail_bulk:
            raise TransportError("bulk transfer", OSError("pipe error"))

    # Test helpers.

    def deliver(self, address: int, data: bytes) -> None:
        """Complete a transfer on a polled endpoint."""
        on_data, _on_error = self.pollers[address]
        on_data(data)

    def fail_poll(self, address: int, exception: TransportError) -> None:
        """Report a polling error on a polled endpoint."""
        _on_data, on_error = self.pollers.pop(address)
        on_error(exception)


@pytest.fixture
def transport() -> FakeTransport:
    """A fake transport with two connected PL2303 HX devices."""
    return FakeTransport([make_device("first"), make_device("second")])
