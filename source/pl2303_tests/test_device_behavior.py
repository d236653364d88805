"""Tests for chip variant detection, device behaviors and modem status decoding."""

import pytest

from pl2303.device_behavior import (ChipType, ModemStatus, Pl2303Behavior, decode_modem_status, detect_chip_type,
                                    get_pl2303_behavior)


@pytest.mark.parametrize("device_class, max_packet_size_0, expected", [
    (0x02, 0x40, ChipType.TYPE_0),
    (0x02, 0x08, ChipType.TYPE_0),
    (0x00, 0x40, ChipType.HX),
    (0xff, 0x40, ChipType.HX),
    (0x00, 0x08, ChipType.TYPE_1),
    (0xff, 0x08, ChipType.TYPE_1),
    (0x09, 0x08, ChipType.UNKNOWN),
])
def test_detect_chip_type(device_class, max_packet_size_0, expected):
    assert detect_chip_type(device_class, max_packet_size_0) is expected


def test_behavior_defaults():
    behavior = Pl2303Behavior()
    assert behavior.control_timeout == 100
    assert behavior.poll_timeout == 100
    assert behavior.interrupt_in_transfer_size is None


def test_hx_behavior_reads_larger_bulk_transfers():
    assert get_pl2303_behavior(ChipType.HX).bulk_in_transfer_size == 256
    assert get_pl2303_behavior(ChipType.TYPE_1) == Pl2303Behavior()


def test_decode_modem_status():
    packet = bytes([0xa1, 0x20, 0x00, 0x00, 0x00, 0x00, 0x02, 0x00, 0x83, 0x00])
    status = decode_modem_status(packet)
    assert status == ModemStatus.DCD | ModemStatus.DSR | ModemStatus.CTS
    assert ModemStatus.RING not in status


def test_decode_modem_status_errors():
    packet = bytes(8) + bytes([0x74, 0x00])
    status = decode_modem_status(packet)
    assert status == ModemStatus.BREAK_ERROR | ModemStatus.FRAME_ERROR | ModemStatus.PARITY_ERROR | ModemStatus.OVERRUN_ERROR


def test_decode_short_status_packet():
    assert decode_modem_status(b"\xa1\x20") == ModemStatus.NONE
