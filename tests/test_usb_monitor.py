"""
Tests for the udev helpers, using dict-like stand-ins for pyudev devices.
"""

from pathlib import Path
import sys
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from rtspmic.usb_monitor import SoundMonitor, UdevQuery, _device_from_udev, list_usb_devices


class FakeUdevDevice(dict):
    def __init__(self, action=None, sys_name=None, **properties):
        super().__init__(properties)
        self.action = action
        self.sys_name = sys_name


MOVO_PROPS = dict(ID_VENDOR_ID='2e88', ID_MODEL_ID='4610', BUSNUM='001', DEVNUM='004',
                  ID_MODEL='MOVO_X1_MINI', ID_VENDOR='MOVO', ID_SERIAL_SHORT='AB12 CD34')


def test_device_from_udev():
    device = _device_from_udev(FakeUdevDevice(**MOVO_PROPS))

    assert (device.bus_num, device.dev_num) == (1, 4)
    assert device.model_id == '2e88:4610'
    assert device.product_name == 'MOVO X1 MINI'
    assert device.serial == 'AB12CD34'


@pytest.mark.parametrize("drop, extra", [
    ('ID_VENDOR_ID', {}),
    ('BUSNUM', {}),
    (None, {'DEVNUM': 'x'}),
    (None, {'DEVNUM': '0'}),
])
def test_device_from_udev_rejects_incomplete(drop, extra):
    props = dict(MOVO_PROPS, **extra)
    if drop:
        del props[drop]
    assert _device_from_udev(FakeUdevDevice(**props)) is None


def test_list_usb_devices_sorted():
    context = MagicMock()
    context.list_devices.return_value = [
        FakeUdevDevice(**dict(MOVO_PROPS, BUSNUM='002', DEVNUM='003')),
        FakeUdevDevice(ID_VENDOR_ID='1d6b', ID_MODEL_ID='0002'),
        FakeUdevDevice(**MOVO_PROPS),
    ]
    devices = list_usb_devices(context)

    assert [(d.bus_num, d.dev_num) for d in devices] == [(1, 4), (2, 3)]
    context.list_devices.assert_called_once_with(subsystem='usb', DEVTYPE='usb_device')


def test_list_usb_devices_udev_error():
    context = MagicMock()
    context.list_devices.side_effect = OSError("no udev")
    assert list_usb_devices(context) == []


@patch('rtspmic.usb_monitor.pyudev.Devices.from_device_file')
def test_udev_query(mock_from_file):
    udev_device = MagicMock()
    udev_device.device_path = '/devices/pci0000:00/0000:00:14.0/usb1/1-1/1-1.4'
    udev_device.properties = {'DEVPATH': udev_device.device_path, 'ID_PATH': 'pci-0000:00:14.0-usb-0:1.4'}
    mock_from_file.return_value = udev_device

    record = UdevQuery(context=MagicMock())(1, 4)

    assert mock_from_file.call_args[0][1] == '/dev/bus/usb/001/004'
    assert record.device_path.endswith('1-1.4')
    assert record.get('ID_PATH') == 'pci-0000:00:14.0-usb-0:1.4'
    assert record.get('ID_SERIAL') is None


@patch('rtspmic.usb_monitor.pyudev.Devices.from_device_file', side_effect=OSError("gone"))
def test_udev_query_missing_node(_mock_from_file):
    assert UdevQuery(context=MagicMock())(1, 9) is None


@pytest.mark.parametrize("action, sys_name, forwarded", [
    ('add', 'card1', True),
    ('remove', 'card1', True),
    ('change', 'card2', True),
    ('add', 'pcmC1D0c', False),
    ('add', 'controlC1', False),
    ('bind', 'card1', False),
])
def test_sound_monitor_filters_events(action, sys_name, forwarded):
    callback = MagicMock()
    SoundMonitor(callback)._handle_event(FakeUdevDevice(action=action, sys_name=sys_name))

    if forwarded:
        callback.assert_called_once_with(action, sys_name)
    else:
        callback.assert_not_called()


def test_sound_monitor_callback_errors_are_contained():
    callback = MagicMock(side_effect=RuntimeError("boom"))
    SoundMonitor(callback)._handle_event(FakeUdevDevice(action='add', sys_name='card1'))
    callback.assert_called_once()


@patch('rtspmic.usb_monitor.pyudev')
def test_sound_monitor_start_stop(mock_pyudev):
    monitor = SoundMonitor(MagicMock())

    assert monitor.start()
    assert monitor.is_running
    mock_pyudev.Monitor.from_netlink.return_value.filter_by.assert_called_once_with(subsystem='sound')
    assert monitor.start()

    observer = mock_pyudev.MonitorObserver.return_value
    monitor.stop()
    observer.stop.assert_called_once()
    assert not monitor.is_running


@patch('rtspmic.usb_monitor.pyudev.Context', side_effect=OSError("no netlink"))
def test_sound_monitor_start_failure(_mock_context):
    assert SoundMonitor(MagicMock()).start() is False
