"""Tests for the vendor register primitives."""

import asyncio

import pytest

from pl2303.errors import TransportError
from pl2303.vendor_registers import Request, RequestType, VendorRegisters


def test_request_codes():
    assert RequestType.VENDOR_IN == 0xc0
    assert RequestType.VENDOR_OUT == 0x40
    assert RequestType.CLASS_IN == 0xa1
    assert RequestType.CLASS_OUT == 0x21
    assert Request.VENDOR_REGISTER == 0x01
    assert Request.GET_LINE_CODING == 0x21
    assert Request.SET_LINE_CODING == 0x20


def test_request_codes_print_with_their_value():
    assert str(RequestType.VENDOR_IN) == "RequestType.VENDOR_IN (0xc0)"
    assert repr(Request.SET_LINE_CODING) == "Request.SET_LINE_CODING"


def test_vendor_read(transport):
    transport.register_value = 0x5a

    async def exercise():
        registers = VendorRegisters(transport, transport.devices[0], 100)
        return await registers.vendor_read(0x8484)

    assert asyncio.run(exercise()) == 0x5a
    assert transport.control_transfers == [(0xc0, 0x01, 0x8484, 0, 1)]


def test_vendor_write_has_no_payload(transport):

    async def exercise():
        registers = VendorRegisters(transport, transport.devices[0], 100)
        await registers.vendor_write(0x0404, 1)
        await registers.vendor_write(2, 0x44)

    asyncio.run(exercise())
    assert transport.control_transfers == [
        (0x40, 0x01, 0x0404, 1, b""),
        (0x40, 0x01, 2, 0x44, b""),
    ]


def test_transport_errors_propagate(transport):
    transport.fail_control_at = 0

    async def exercise():
        registers = VendorRegisters(transport, transport.devices[0], 100)
        await registers.vendor_write(8, 0)

    with pytest.raises(TransportError):
        asyncio.run(exercise())


def test_vendor_read_without_response_byte(transport, monkeypatch):

    async def empty_response(*args, **kwargs):
        return b""

    monkeypatch.setattr(transport, "control_transfer", empty_response)

    async def exercise():
        registers = VendorRegisters(transport, transport.devices[0], 100)
        await registers.vendor_read(0x8383)

    with pytest.raises(TransportError):
        asyncio.run(exercise())
