from unittest import mock

import pytest

from dbimport.utils import memory_monitor
from dbimport.utils.memory_monitor import UNLIMITED, check_memory_headroom, parse_memory_value


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("512M", 512 * 1024**2),
        ("1G", 1024**3),
        ("800MB", 800 * 1024**2),
        ("64k", 64 * 1024),
        ("1048576", 1048576),
        ("-1", UNLIMITED),
    ],
)
def test_parse_memory_value(raw, expected):
    assert parse_memory_value(raw) == expected


def test_unlimited_memory_always_has_headroom():
    with mock.patch.object(memory_monitor, "get_memory_limit", return_value=UNLIMITED):
        ok, _ = check_memory_headroom(10**12)
    assert ok


def test_headroom_below_floor_is_refused():
    mb = 1024 * 1024
    with mock.patch.object(memory_monitor, "get_memory_limit", return_value=128 * mb), \
            mock.patch.object(memory_monitor, "get_memory_usage", return_value=100 * mb):
        ok, message = check_memory_headroom(32 * mb)
    assert not ok
    assert message.startswith("Insufficient memory available. Required: 32.00MB, Available: 28.00MB")


def test_headroom_above_floor_passes():
    mb = 1024 * 1024
    with mock.patch.object(memory_monitor, "get_memory_limit", return_value=512 * mb), \
            mock.patch.object(memory_monitor, "get_memory_usage", return_value=100 * mb):
        ok, _ = check_memory_headroom(32 * mb)
    assert ok
