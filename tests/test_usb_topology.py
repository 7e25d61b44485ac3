"""
Port identity resolution against fake sysfs trees.
"""

from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from rtspmic.usb_device import Confidence, UsbDevice
from rtspmic.usb_monitor import UdevRecord
from rtspmic.usb_topology import ResolutionFailure, TopologyResolver


def _node(root: Path, name: str, **attrs) -> Path:
    node = root / name
    node.mkdir(parents=True)
    for key, value in attrs.items():
        (node / key).write_text(f"{value}\n")
    return node


def _no_udev(bus, dev):
    return None


def _resolver(root, udev=_no_udev, clock=None):
    ticks = iter(range(1000, 2000))
    return TopologyResolver(sysfs_root=root, udev_query=udev,
                            clock=clock or (lambda: next(ticks)))


def test_devpath_gives_high_confidence(tmp_path):
    _node(tmp_path, "1-4", busnum=1, devnum=4, devpath="1.4",
          serial="ABCDEF123456", product="USB Audio Device")

    identity = _resolver(tmp_path).resolve_port(1, 4)

    assert identity.port_path == "1-1.4"
    assert identity.confidence == Confidence.HIGH
    assert identity.uniqueness_token == "ABCDEF12"
    assert identity.identifier == "1-1.4-ABCDEF12"
    assert identity.product_name == "USB Audio Device"


def test_serial_captured_without_devpath(tmp_path):
    _node(tmp_path, "2-3", serial="SN0001", product="Mic")

    identity = _resolver(tmp_path).resolve_port("2", "3")

    assert identity.serial == "SN0001"
    assert identity.uniqueness_token == "SN0001"
    # trailing fragment of the canonical node path
    assert identity.port_path == "2-3"
    assert identity.confidence == Confidence.MEDIUM


def test_scan_finds_node_by_bus_and_device(tmp_path):
    _node(tmp_path, "usb1", busnum=1, devnum=1)
    _node(tmp_path, "1-1.4", busnum=1, devnum=7, product="X1 MINI")

    identity = _resolver(tmp_path).resolve_port(1, 7)

    assert identity.port_path == "1-1.4"
    assert identity.confidence == Confidence.MEDIUM
    assert identity.product_name == "X1 MINI"


def test_direct_node_for_another_device_is_ignored(tmp_path):
    _node(tmp_path, "1-4", busnum=1, devnum=9, devpath="2")

    identity = _resolver(tmp_path).resolve_port(1, 4)

    assert identity.port_path == "usb-bus1-port4"
    assert identity.confidence == Confidence.NONE


def test_udev_fallback(tmp_path):
    def udev(bus, dev):
        assert (bus, dev) == (3, 5)
        return UdevRecord(
            device_path="/devices/pci0000:00/0000:00:14.0/usb3/3-2",
            properties={'DEVPATH': '/devices/pci0000:00/0000:00:14.0/usb3/3-2',
                        'ID_SERIAL': 'Foo_Bar_123', 'ID_MODEL': 'Bar'},
        )

    identity = _resolver(tmp_path, udev=udev).resolve_port(3, 5)

    assert identity.port_path == "3-2"
    assert identity.confidence == Confidence.LOW
    assert identity.serial == "Foo_Bar_123"
    assert identity.uniqueness_token == "Foo_Bar_"


def test_udev_errors_are_signal_unavailable(tmp_path):
    def broken(bus, dev):
        raise OSError("udev database unavailable")

    identity = _resolver(tmp_path, udev=broken).resolve_port(3, 5)
    assert identity.port_path == "usb-bus3-port5"


def test_nothing_resolvable_still_returns_identity(tmp_path):
    identity = _resolver(tmp_path / "missing").resolve_port(3, 7)

    assert identity.port_path == "usb-bus3-port7"
    assert identity.confidence == Confidence.NONE
    assert identity.is_synthetic
    assert len(identity.uniqueness_token) == 8
    assert identity.identifier.startswith("usb-bus3-port7-")


def test_identical_devices_without_serial_get_distinct_tokens(tmp_path):
    resolver = _resolver(tmp_path / "missing")
    left = UsbDevice(bus_num=1, dev_num=5, vendor_id="2e88", product_id="4610", product_name="X1 MINI")
    right = UsbDevice(bus_num=1, dev_num=6, vendor_id="2e88", product_id="4610", product_name="X1 MINI")

    a = resolver.resolve_device(left)
    b = resolver.resolve_device(right)

    assert a.uniqueness_token != b.uniqueness_token
    assert a.identifier != b.identifier


def test_same_port_path_twice_gets_distinct_tokens(tmp_path):
    resolver = _resolver(tmp_path / "missing")

    a = resolver.resolve_port(1, 5)
    b = resolver.resolve_port(1, 5)

    assert a.port_path == b.port_path
    assert a.uniqueness_token != b.uniqueness_token


@pytest.mark.parametrize("bus, dev", [(None, 4), (1, None), ("", 4), ("abc", 4)])
def test_missing_numbers_raise(tmp_path, bus, dev):
    with pytest.raises(ResolutionFailure):
        _resolver(tmp_path).resolve_port(bus, dev)
