"""
udev access via pyudev.

- UdevQuery: resolved device path and property set for a USB device
  node (the `udevadm info` equivalent used by the topology resolver)
- list_usb_devices(): currently connected USB devices
- SoundMonitor: hot-plug events on the sound subsystem, used by the
  daemon to trigger a reconciliation pass
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import pyudev

from rtspmic.usb_device import UsbDevice
from rtspmic.usb_validation import USBValidation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UdevRecord:
    """What udev knows about one device node."""
    device_path: str                              # "/devices/platform/.../usb1/1-1/1-1.4"
    properties: Dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> Optional[str]:
        value = self.properties.get(key)
        return value or None


class UdevQuery:
    """
    Looks up /dev/bus/usb/BBB/DDD in the udev database.

    Usable as the `udev_query` collaborator of TopologyResolver: calling
    the instance with (bus, dev) returns a UdevRecord, or None when udev
    has nothing for that node.
    """

    def __init__(self, context: Optional['pyudev.Context'] = None):
        self._context = context

    @property
    def context(self) -> 'pyudev.Context':
        if self._context is None:
            self._context = pyudev.Context()
        return self._context

    def __call__(self, bus_num: int, dev_num: int) -> Optional[UdevRecord]:
        node = f"/dev/bus/usb/{bus_num:03d}/{dev_num:03d}"
        try:
            device = pyudev.Devices.from_device_file(self.context, node)
        except (pyudev.DeviceNotFoundError, ValueError, OSError) as e:
            logger.debug(f"udev has no record for {node}: {e}")
            return None

        properties = {str(k): str(v) for k, v in device.properties.items()}
        return UdevRecord(device_path=device.device_path, properties=properties)


def _device_from_udev(device: 'pyudev.Device') -> Optional[UsbDevice]:
    """Build a UsbDevice from a udev usb_device entry, None for hubs ports and oddities."""
    vendor_id = device.get('ID_VENDOR_ID', '') or ''
    product_id = device.get('ID_MODEL_ID', '') or ''
    if not vendor_id or not product_id:
        return None

    try:
        bus_num = int(device.get('BUSNUM', 0))
        dev_num = int(device.get('DEVNUM', 0))
    except ValueError:
        return None
    if not bus_num or not dev_num:
        return None

    vendor_name = device.get('ID_VENDOR_FROM_DATABASE', '') or device.get('ID_VENDOR', '') or ''
    product_name = device.get('ID_MODEL_FROM_DATABASE', '') or device.get('ID_MODEL', '') or ''

    return UsbDevice(
        bus_num=bus_num,
        dev_num=dev_num,
        vendor_id=USBValidation.sanitize_hex_id(vendor_id),
        product_id=USBValidation.sanitize_hex_id(product_id),
        serial=USBValidation.sanitize_serial(device.get('ID_SERIAL_SHORT')),
        product_name=USBValidation.sanitize_string(product_name.replace('_', ' ')) or None,
        vendor_name=USBValidation.sanitize_string(vendor_name.replace('_', ' ')) or None,
    )


def list_usb_devices(context: Optional['pyudev.Context'] = None) -> List[UsbDevice]:
    """
    List all connected USB devices, ordered by bus and device number.

    Returns an empty list if udev cannot be enumerated.
    """
    devices = []
    try:
        context = context or pyudev.Context()
        for udev_device in context.list_devices(subsystem='usb', DEVTYPE='usb_device'):
            info = _device_from_udev(udev_device)
            if info:
                devices.append(info)
    except (OSError, pyudev.DeviceNotFoundError) as e:
        logger.error(f"Failed to enumerate USB devices: {e}")

    return sorted(devices, key=lambda d: (d.bus_num, d.dev_num))


class SoundMonitor:
    """
    Monitor sound card insertion/removal using pyudev.

    Usage:
        monitor = SoundMonitor(lambda action, name: daemon.request_rescan())
        monitor.start()
        # ... later ...
        monitor.stop()
    """

    def __init__(self, callback: Callable[[str, str], None]):
        """
        Args:
            callback: Called with (action, sys_name), e.g. ('add', 'card1').
        """
        self.callback = callback
        self._observer: Optional['pyudev.MonitorObserver'] = None
        self._running = False

    def start(self) -> bool:
        """
        Start monitoring sound events.

        Returns:
            True if monitoring started, False otherwise. The daemon keeps
            working on its periodic rescan when this fails.
        """
        if self._running:
            logger.warning("Sound monitor already running")
            return True

        try:
            context = pyudev.Context()
            monitor = pyudev.Monitor.from_netlink(context)
            monitor.filter_by(subsystem='sound')

            self._observer = pyudev.MonitorObserver(
                monitor,
                callback=self._handle_event,
                name='audio-rtsp-sound-monitor'
            )
            self._observer.daemon = True
            self._observer.start()
            self._running = True

            logger.info("Sound monitor started")
            return True

        except (OSError, ValueError) as e:
            logger.error(f"Failed to start sound monitor: {e}")
            return False

    def stop(self):
        """Stop monitoring sound events."""
        if self._observer:
            self._observer.stop()
            self._observer = None
        if self._running:
            logger.info("Sound monitor stopped")
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _handle_event(self, device: 'pyudev.Device'):
        """Forward card-level add/remove/change events."""
        action = device.action
        if action not in ('add', 'remove', 'change'):
            return

        # pcmC1D0c, controlC1 etc. follow their card; one event per card is enough
        sys_name = device.sys_name or ''
        if not sys_name.startswith('card'):
            return

        logger.info(f"Sound {action}: {sys_name}")
        try:
            self.callback(action, sys_name)
        except Exception as e:
            logger.error(f"Error handling sound event: {e}")
