"""
USB Device Information

Represents USB device metadata and the durable port identity derived
from the USB topology. Both are transient values: they are rediscovered
on every enumeration and never persisted directly.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Confidence(str, Enum):
    """How trustworthy a resolved port path is."""
    HIGH = 'high'        # devpath attribute read straight from sysfs
    MEDIUM = 'medium'    # derived from the canonical sysfs node path
    LOW = 'low'          # derived from udev properties
    NONE = 'none'        # synthesized from bus/device numbers


@dataclass(frozen=True)
class UsbDevice:
    """
    A USB device as seen on the bus.

    Bus and device numbers are reassigned by the kernel on every
    reconnect, so they are only good for locating the device right now.
    """
    bus_num: int
    dev_num: int
    vendor_id: str                   # e.g. "2e88"
    product_id: str                  # e.g. "4610"
    serial: Optional[str] = None
    product_name: Optional[str] = None
    vendor_name: Optional[str] = None

    @property
    def model_id(self) -> str:
        """Vendor and product IDs joined by ':' (e.g. "2e88:4610")."""
        return f"{self.vendor_id}:{self.product_id}"

    def __str__(self) -> str:
        name = self.product_name or 'Unknown Device'
        return f"{name} ({self.model_id}) on bus {self.bus_num} device {self.dev_num}"


@dataclass(frozen=True)
class PortIdentity:
    """
    Durable identity of a USB device derived from its physical position.

    `port_path` alone is not guaranteed unique when the resolver had to
    fall back to the bus/device form; the pair (port_path,
    uniqueness_token) is the durable key.
    """
    port_path: str                   # e.g. "3-1.4" or "usb-bus3-port7"
    uniqueness_token: str            # 8 chars, from serial or hash
    confidence: Confidence = Confidence.NONE
    serial: Optional[str] = None
    product_name: Optional[str] = None

    @property
    def identifier(self) -> str:
        """Informational identifier: port path plus uniqueness token."""
        return f"{self.port_path}-{self.uniqueness_token}"

    @property
    def is_synthetic(self) -> bool:
        """True when no real topology signal was found."""
        return self.confidence == Confidence.NONE

    def __str__(self) -> str:
        return self.identifier
