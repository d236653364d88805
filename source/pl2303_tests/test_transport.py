"""Tests for the transport module: endpoint lookup, and LibUsbTransport on top of a scripted libusb."""

import asyncio
import threading
import time

import pytest

from pl2303.errors import PreconditionError, TransportError
from pl2303.libusb_library import LibUsbLibraryFunctionCallError
from pl2303.transport import (EndpointDirection, EndpointInfo, InterfaceClaim, LibUsbTransport, TransferType,
                              find_endpoint)

from conftest import BULK_IN, BULK_OUT, INTERRUPT_IN, PL2303_ENDPOINTS


def test_find_endpoint():
    assert find_endpoint(list(PL2303_ENDPOINTS), TransferType.INTERRUPT, EndpointDirection.IN) == INTERRUPT_IN
    assert find_endpoint(list(PL2303_ENDPOINTS), TransferType.BULK, EndpointDirection.IN) == BULK_IN
    assert find_endpoint(list(PL2303_ENDPOINTS), TransferType.BULK, EndpointDirection.OUT) == BULK_OUT


def test_find_missing_endpoint():
    with pytest.raises(PreconditionError, match="found 0"):
        find_endpoint([BULK_IN, BULK_OUT], TransferType.INTERRUPT, EndpointDirection.IN)


def test_find_duplicate_endpoint():
    second_bulk_in = EndpointInfo(0x85, TransferType.BULK, EndpointDirection.IN, 64)
    with pytest.raises(PreconditionError, match="found 2"):
        find_endpoint([BULK_IN, second_bulk_in, BULK_OUT], TransferType.BULK, EndpointDirection.IN)


def test_endpoint_description():
    assert str(INTERRUPT_IN) == "endpoint 0x81 (interrupt-in)"
    assert str(BULK_OUT) == "endpoint 0x02 (bulk-out)"


def test_enum_printing():
    assert str(TransferType.BULK) == "TransferType.BULK (0x02)"
    assert repr(EndpointDirection.IN) == "EndpointDirection.IN"


def test_new_claim_has_no_pollers():
    claim = InterfaceClaim(object(), 0)
    assert claim.pollers == []
    assert not claim.stopping


class ScriptedLibUsb:
    """Stands in for LibUsbLibrary, replaying scripted results for IN transfers.

    A script entry is either the bytes returned by a read or an exception to raise. An exhausted script
    behaves like a read that times out without data.
    """

    def __init__(self):
        self.reads: dict[int, list] = {}
        self.read_counts: dict[int, int] = {}
        self.failure = None
        self.watched_pollers: list[asyncio.Task] = []
        self.log = []
        self._lock = threading.Lock()

    def _read(self, device_handle, endpoint: int, length: int, timeout: int) -> bytes:
        with self._lock:
            self.read_counts[endpoint] = self.read_counts.get(endpoint, 0) + 1
            script = self.reads.get(endpoint, [])
            outcome = script.pop(0) if script else b""
        if isinstance(outcome, Exception):
            raise outcome
        if not outcome:
            time.sleep(0.001)
        return outcome

    bulk_transfer_in = _read
    interrupt_transfer_in = _read

    def claim_interface(self, device_handle, interface_number: int) -> None:
        self.log.append(("claim", interface_number))

    def release_interface(self, device_handle, interface_number: int) -> None:
        pollers_done = all(task.done() for task in self.watched_pollers)
        self.log.append(("release", interface_number, pollers_done))

    def control_transfer(self, device_handle, request_type, request, value, index, data_or_length, timeout):
        if self.failure is not None:
            raise self.failure
        return b"\x02"

    def bulk_transfer_out(self, device_handle, endpoint: int, data: bytes, timeout: int) -> None:
        if self.failure is not None:
            raise self.failure
        self.log.append(("bulk", endpoint, data))


def make_libusb_transport() -> tuple[LibUsbTransport, ScriptedLibUsb]:
    library = ScriptedLibUsb()
    transport = object.__new__(LibUsbTransport)
    transport._libusb = library
    transport._ctx = None
    return transport, library


def test_polling_skips_empty_reads_and_stops_at_first_error():
    transport, library = make_libusb_transport()
    failure = LibUsbLibraryFunctionCallError(-1, "LIBUSB_ERROR_IO")
    library.reads[INTERRUPT_IN.address] = [b"", b"\x00" * 8 + b"\x80\x00", b"", failure, b"never read"]
    received = []
    errors = []

    async def exercise():
        claim = transport.claim_interface("handle", 0)
        transport.start_polling(claim, INTERRUPT_IN, received.append, errors.append, transfer_size=10, timeout=100)
        await asyncio.wait(claim.pollers, timeout=5.0)
        assert all(task.done() for task in claim.pollers)
        await transport.release_interface(claim, close_endpoints=True)

    asyncio.run(exercise())
    assert received == [b"\x00" * 8 + b"\x80\x00"]
    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)
    assert errors[0].cause is failure
    assert library.read_counts[INTERRUPT_IN.address] == 4
    assert library.reads[INTERRUPT_IN.address] == [b"never read"]


def test_release_stops_pollers_before_releasing_the_interface():
    transport, library = make_libusb_transport()
    received = []

    async def exercise():
        claim = transport.claim_interface("handle", 0)
        transport.start_polling(claim, INTERRUPT_IN, received.append, received.append, transfer_size=10, timeout=100)
        transport.start_polling(claim, BULK_IN, received.append, received.append, transfer_size=64, timeout=100)
        await asyncio.sleep(0.01)
        library.watched_pollers = list(claim.pollers)
        await transport.release_interface(claim, close_endpoints=True)
        return claim

    claim = asyncio.run(exercise())
    assert library.log == [("claim", 0), ("release", 0, True)]
    assert claim.stopping
    assert claim.pollers == []
    assert received == []


def test_control_transfer_result_is_returned():
    transport, _library = make_libusb_transport()
    response = asyncio.run(transport.control_transfer("handle", 0xc0, 0x01, 0x8484, 0, 1, timeout=100))
    assert response == b"\x02"


def test_control_transfer_failure_becomes_transport_error():
    transport, library = make_libusb_transport()
    library.failure = LibUsbLibraryFunctionCallError(-9, "LIBUSB_ERROR_PIPE")

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(transport.control_transfer("handle", 0x40, 0x01, 0x0404, 0, b"", timeout=100))

    assert excinfo.value.cause is library.failure
    assert "0x0404" in excinfo.value.operation


def test_bulk_transfer_failure_becomes_transport_error():
    transport, library = make_libusb_transport()
    library.failure = LibUsbLibraryFunctionCallError(-4, "LIBUSB_ERROR_NO_DEVICE")

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(transport.bulk_transfer("handle", BULK_OUT, b"lost", timeout=1000))

    assert excinfo.value.cause is library.failure
    assert library.log == []


def test_bulk_transfer_sends_on_the_endpoint_address():
    transport, library = make_libusb_transport()
    asyncio.run(transport.bulk_transfer("handle", BULK_OUT, b"ping", timeout=1000))
    assert library.log == [("bulk", BULK_OUT.address, b"ping")]
