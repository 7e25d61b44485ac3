"""
Parsers for the text formats exposed by ALSA, sysfs and arecord.

Every parser returns typed values, or None / an empty list when the
signal is absent, so callers never re-match raw strings themselves.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AsoundCard:
    """One entry of /proc/asound/cards."""
    number: int
    card_id: str             # short id, e.g. "USBAudio"
    description: str         # text after the colon on the first line
    long_name: str = ''      # indented continuation line
    usb_path: Optional[str] = None  # "usb-3f980000.usb-1.2" from "... at usb-..., full speed"

    @property
    def driver(self) -> str:
        """Driver part of the description ("USB-Audio" in "USB-Audio - USB Audio Device")."""
        return self.description.split(' - ', 1)[0].strip()

    @property
    def name(self) -> str:
        """Card name (text after the last ' - '), or the description."""
        if ' - ' in self.description:
            return self.description.rsplit(' - ', 1)[1].strip()
        return self.description.strip()

    @property
    def usb_info(self) -> Optional[str]:
        """USB description for cards whose description mentions USB."""
        if 'USB' not in self.description:
            return None
        return self.name or None


@dataclass(frozen=True)
class CaptureEntry:
    """One 'card N: ID [name], device M: ...' line of `arecord -l`."""
    card_number: int
    card_id: str
    card_name: str
    device_number: int


class AsoundCardsParser:
    """Parses /proc/asound/cards."""

    # " 1 [USBAudio       ]: USB-Audio - USB Audio Device"
    CARD_PATTERN = re.compile(r'^\s*(\d+)\s*\[([^\]]+)\]\s*:\s*(.*)$')
    USB_PATH_PATTERN = re.compile(r'\bat (usb-[^ ,]+)')

    @classmethod
    def parse(cls, text: Optional[str]) -> List[AsoundCard]:
        """
        Parse the card list.

        Args:
            text: Contents of /proc/asound/cards, or None if unreadable.

        Returns:
            Cards in file order. Empty if the text is missing or has no cards.
        """
        if not text:
            return []

        cards: List[AsoundCard] = []
        pending = None  # (number, card_id, description)
        long_name = ''

        def flush():
            if pending is None:
                return
            number, card_id, description = pending
            match = cls.USB_PATH_PATTERN.search(long_name) or cls.USB_PATH_PATTERN.search(description)
            cards.append(AsoundCard(
                number=number,
                card_id=card_id,
                description=description,
                long_name=long_name,
                usb_path=match.group(1) if match else None,
            ))

        for line in text.splitlines():
            match = cls.CARD_PATTERN.match(line)
            if match:
                flush()
                pending = (int(match.group(1)), match.group(2).strip(), match.group(3).strip())
                long_name = ''
            elif pending is not None and line.strip() and not long_name:
                long_name = line.strip()
        flush()
        return cards

    @staticmethod
    def find(cards: List[AsoundCard], number: int) -> Optional[AsoundCard]:
        for card in cards:
            if card.number == number:
                return card
        return None


class CaptureListParser:
    """Parses the output of `arecord -l`."""

    LINE_PATTERN = re.compile(
        r'^card (\d+): (\S+) \[([^\]]*)\], device (\d+):'
    )

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional[List[CaptureEntry]]:
        """
        Returns:
            List of capture entries, or None when no listing was available
            (command missing or failed). An empty list means the command ran
            and reported no capture hardware.
        """
        if text is None:
            return None
        entries: List[CaptureEntry] = []
        for line in text.splitlines():
            match = cls.LINE_PATTERN.match(line.strip())
            if match:
                entries.append(CaptureEntry(
                    card_number=int(match.group(1)),
                    card_id=match.group(2),
                    card_name=match.group(3).strip(),
                    device_number=int(match.group(4)),
                ))
        return entries


class UsbAttrParser:
    """Parses single-value attribute files from /proc/asound/cardN and sysfs."""

    USBID_PATTERN = re.compile(r'([0-9a-f]{4}):([0-9a-f]{4})')
    USBBUS_PATTERN = re.compile(r'^(\d+)/(\d+)$')
    PCM_CAPTURE_PATTERN = re.compile(r'^pcm(\d+)c$')

    @classmethod
    def parse_usbid(cls, text: Optional[str]) -> Optional[Tuple[str, str]]:
        """"2e88:4610" -> ("2e88", "4610")."""
        if not text:
            return None
        match = cls.USBID_PATTERN.search(text.strip().lower())
        if not match:
            return None
        return match.group(1), match.group(2)

    @classmethod
    def parse_usbbus(cls, text: Optional[str]) -> Optional[Tuple[int, int]]:
        """"001/004" -> (1, 4). ALSA writes bus and device as one value."""
        if not text:
            return None
        match = cls.USBBUS_PATTERN.match(text.strip())
        if not match:
            return None
        return int(match.group(1)), int(match.group(2))

    @staticmethod
    def parse_int(text: Optional[str]) -> Optional[int]:
        """Decimal integer attribute (busnum, devnum); leading zeros allowed."""
        if text is None:
            return None
        try:
            return int(text.strip(), 10)
        except ValueError:
            return None

    @classmethod
    def parse_capture_dir(cls, name: str) -> Optional[int]:
        """"pcm2c" -> 2; playback directories and anything else -> None."""
        match = cls.PCM_CAPTURE_PATTERN.match(name)
        return int(match.group(1)) if match else None


class PortPathParser:
    """Extracts USB port-path fragments such as "3-1.4" from paths and strings."""

    FRAGMENT = r'\d+-\d+(?:\.\d+)*'
    TRAILING_PATTERN = re.compile(r'(?:^|/)(' + FRAGMENT + r')$')
    ANY_PATTERN = re.compile(r'(' + FRAGMENT + r')')
    CARD_PORT_NUMBERS_PATTERN = re.compile(r'usb-[0-9a-f:.]+-([0-9]+\.[0-9]+)')
    CARD_PORT_PATTERN = re.compile(r'(usb-[0-9]+:[0-9]+\.[0-9]+-[0-9]+(?:\.[0-9]+)*)')

    @classmethod
    def trailing_fragment(cls, path: Optional[str]) -> Optional[str]:
        """Fragment forming the last path component: ".../usb3/3-1/3-1.4" -> "3-1.4"."""
        if not path:
            return None
        match = cls.TRAILING_PATTERN.search(path.rstrip('/'))
        return match.group(1) if match else None

    @staticmethod
    def leaf_with_hyphen(path: Optional[str]) -> Optional[str]:
        """Last path component if it contains a hyphen."""
        if not path:
            return None
        leaf = path.rstrip('/').rsplit('/', 1)[-1]
        return leaf if '-' in leaf else None

    @classmethod
    def find_fragment(cls, text: Optional[str]) -> Optional[str]:
        """First fragment anywhere in the text: "usb-0000:00:14.0-1.4" -> "0-1.4"."""
        if not text:
            return None
        match = cls.ANY_PATTERN.search(text)
        return match.group(1) if match else None

    @classmethod
    def card_port_numbers(cls, usb_path: Optional[str]) -> Optional[str]:
        """Trailing port numbers of an ALSA card path: "usb-0000:00:14.0-1.4" -> "1.4"."""
        if not usb_path:
            return None
        match = cls.CARD_PORT_NUMBERS_PATTERN.search(usb_path)
        return match.group(1) if match else None

    @classmethod
    def card_port_pattern(cls, usb_path: Optional[str]) -> Optional[str]:
        """Controller-plus-port part of a card path: "usb-1:2.0-1.4" -> "usb-1:2.0-1.4"."""
        if not usb_path:
            return None
        match = cls.CARD_PORT_PATTERN.search(usb_path)
        return match.group(1) if match else None
