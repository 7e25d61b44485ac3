"""
USB Topology Resolver

Turns a volatile (bus, device) pair into a durable physical-port
identity. Strategies are tried in order, first success wins:

1. `devpath` attribute of the device's sysfs node (confidence: high)
2. `serial` / `product` attributes of the same node (always collected)
3. canonical sysfs node path, found directly or by scanning every node
   for matching busnum/devnum
4. port fragment at the end of the canonical path, else the leaf
   directory name if it contains a hyphen (confidence: medium)
5. udev database: DEVPATH / device path and ID_SERIAL / ID_MODEL
   (confidence: low)
6. synthesized "usb-bus<N>-port<M>" (confidence: none)

A uniqueness token (serial prefix, else a hash including a high
resolution timestamp) is attached so two physically distinct devices
that land on the same port path still get distinct identifiers.
"""

import hashlib
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Union

from rtspmic.parsers import PortPathParser, UsbAttrParser
from rtspmic.usb_device import Confidence, PortIdentity, UsbDevice
from rtspmic.usb_monitor import UdevQuery, UdevRecord
from rtspmic.usb_validation import USBValidation
from rtspmic.utils import read_attr

logger = logging.getLogger(__name__)

UdevLookup = Callable[[int, int], Optional[UdevRecord]]

TOKEN_LEN = 8


class ResolutionFailure(Exception):
    """Raised when the bus or device number needed for a lookup is absent."""
    pass


class TopologyResolver:
    """
    Resolves USB port identities from sysfs and udev.

    Args:
        sysfs_root: USB device directory, /sys/bus/usb/devices by default.
        udev_query: Callable (bus, dev) -> UdevRecord or None. Defaults to
            a pyudev backed UdevQuery.
        clock: High-resolution timestamp source for the fallback token.
    """

    SYSFS_USB_PATH = Path('/sys/bus/usb/devices')

    def __init__(self,
                 sysfs_root: Optional[Path] = None,
                 udev_query: Optional[UdevLookup] = None,
                 clock: Callable[[], int] = time.time_ns):
        self.sysfs_root = Path(sysfs_root) if sysfs_root else self.SYSFS_USB_PATH
        self.udev_query = udev_query if udev_query is not None else UdevQuery()
        self.clock = clock

    def resolve_device(self, device: UsbDevice) -> PortIdentity:
        return self.resolve_port(device.bus_num, device.dev_num)

    def resolve_port(self,
                     bus_num: Union[int, str, None],
                     dev_num: Union[int, str, None]) -> PortIdentity:
        """
        Resolve the physical port identity of a USB device.

        Never fails once bus and device numbers are known: when every
        topology lookup comes back empty the synthesized form is used.

        Raises:
            ResolutionFailure: If bus_num or dev_num is missing or not numeric.
        """
        bus = self._as_number(bus_num, 'bus')
        dev = self._as_number(dev_num, 'device')

        port_path: Optional[str] = None
        confidence = Confidence.NONE
        serial: Optional[str] = None
        product: Optional[str] = None

        node = self._direct_node(bus, dev)
        if node is not None:
            logger.debug(f"Checking sysfs node: {node}")

            devpath = read_attr(node / 'devpath')
            if devpath:
                port_path = f"{bus}-{devpath}"
                confidence = Confidence.HIGH
                logger.debug(f"Found devpath {devpath} -> {port_path} (confidence: high)")

            serial = read_attr(node / 'serial')
            product = read_attr(node / 'product')
            if serial:
                logger.debug(f"Found serial from sysfs: {serial}")
            if product:
                logger.debug(f"Found product name: {product}")

            canonical = self._canonical(node)
        else:
            scanned = self._scan_for_node(bus, dev)
            canonical = self._canonical(scanned) if scanned is not None else None
            if scanned is not None:
                logger.debug(f"Found device through scan: {canonical}")
                serial = serial or read_attr(scanned / 'serial')
                product = product or read_attr(scanned / 'product')

        if port_path is None and canonical:
            port_path = (PortPathParser.trailing_fragment(canonical)
                         or PortPathParser.leaf_with_hyphen(canonical))
            if port_path:
                confidence = Confidence.MEDIUM
                logger.debug(f"Extracted port path {port_path} from {canonical} (confidence: medium)")

        if port_path is None:
            record = self._query_udev(bus, dev)
            if record is not None:
                serial = serial or record.get('ID_SERIAL')
                product = product or record.get('ID_MODEL')
                port_path = self._port_from_udev(record)
                if port_path:
                    confidence = Confidence.LOW
                    logger.debug(f"Extracted port path {port_path} from udev (confidence: low)")

        if port_path is None:
            port_path = f"usb-bus{bus}-port{dev}"
            confidence = Confidence.NONE
            logger.debug(f"Using synthetic port identifier {port_path} (confidence: none)")

        serial = USBValidation.sanitize_serial(serial)
        token = self._uniqueness_token(bus, dev, serial, product)

        identity = PortIdentity(
            port_path=port_path,
            uniqueness_token=token,
            confidence=confidence,
            serial=serial,
            product_name=USBValidation.sanitize_string(product) if product else None,
        )
        logger.debug(f"Bus {bus} device {dev} resolved to {identity.identifier}")
        return identity

    @staticmethod
    def _as_number(value, label: str) -> int:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ResolutionFailure(f"Missing {label} number for port detection")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ResolutionFailure(f"Invalid {label} number: {value!r}")

    def _matches(self, node: Path, bus: int, dev: int) -> bool:
        """A node matches unless its busnum/devnum attributes say otherwise."""
        node_bus = UsbAttrParser.parse_int(read_attr(node / 'busnum'))
        node_dev = UsbAttrParser.parse_int(read_attr(node / 'devnum'))
        if node_bus is None or node_dev is None:
            return True
        return node_bus == bus and node_dev == dev

    def _direct_node(self, bus: int, dev: int) -> Optional[Path]:
        for name in (f"{bus}-{dev}", f"{bus}-{bus}.{dev}"):
            node = self.sysfs_root / name
            if node.is_dir() and self._matches(node, bus, dev):
                return node
        return None

    def _scan_for_node(self, bus: int, dev: int) -> Optional[Path]:
        """Linear scan of every sysfs USB node for matching busnum/devnum."""
        try:
            candidates = sorted(self.sysfs_root.iterdir())
        except OSError as e:
            logger.debug(f"Cannot scan {self.sysfs_root}: {e}")
            return None

        for node in candidates:
            node_bus = UsbAttrParser.parse_int(read_attr(node / 'busnum'))
            node_dev = UsbAttrParser.parse_int(read_attr(node / 'devnum'))
            if node_bus == bus and node_dev == dev:
                return node
        logger.debug(f"No sysfs node for bus {bus} device {dev}")
        return None

    @staticmethod
    def _canonical(node: Path) -> Optional[str]:
        try:
            return str(node.resolve())
        except (OSError, RuntimeError) as e:
            logger.debug(f"Cannot resolve {node}: {e}")
            return None

    def _query_udev(self, bus: int, dev: int) -> Optional[UdevRecord]:
        logger.debug("Trying udev as last resort")
        try:
            return self.udev_query(bus, dev)
        except Exception as e:
            logger.debug(f"udev query failed for bus {bus} device {dev}: {e}")
            return None

    @staticmethod
    def _port_from_udev(record: UdevRecord) -> Optional[str]:
        devpath = record.get('DEVPATH')
        if devpath:
            port = (PortPathParser.trailing_fragment(devpath)
                    or PortPathParser.leaf_with_hyphen(devpath))
            if port:
                return port
        return PortPathParser.find_fragment(record.device_path)

    def _uniqueness_token(self, bus: int, dev: int,
                          serial: Optional[str], product: Optional[str]) -> str:
        if serial:
            return serial[:TOKEN_LEN]
        hash_input = f"bus{bus}dev{dev}{product or ''}{self.clock()}"
        return hashlib.md5(hash_input.encode('utf-8')).hexdigest()[:TOKEN_LEN]
