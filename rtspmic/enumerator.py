"""
Capture Device Enumerator

Lists the sound cards that can be streamed right now. Sources are
read-only: /proc/asound (card list, capture directories, USB ids),
/sys/class/sound (runtime device path) and `arecord -l`.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from rtspmic.parsers import AsoundCard, AsoundCardsParser, CaptureEntry, CaptureListParser, UsbAttrParser
from rtspmic.sound_rules import SoundRuleStore
from rtspmic.usb_validation import USBValidation
from rtspmic.utils import read_attr, run_command

logger = logging.getLogger(__name__)

DEFAULT_DENYLIST = ('bcm2835_headpho', 'vc4-hdmi', 'HDMI')


@dataclass(frozen=True)
class CaptureDevice:
    """
    A sound card with a capture stream, as seen in one enumeration pass.

    Recomputed every pass and never persisted.
    """
    card_number: int
    card_id: str
    description: str
    usb_info: Optional[str]
    capture_device_index: int
    resolved_stream_name: str
    endpoint_url: str
    vendor_id: Optional[str] = None
    product_id: Optional[str] = None
    friendly_name: Optional[str] = None   # set when a stored rule matches

    @property
    def is_mapped(self) -> bool:
        return self.friendly_name is not None

    @property
    def alsa_input(self) -> str:
        """ALSA input spec for ffmpeg."""
        return f"plughw:CARD={self.card_id},DEV={self.capture_device_index}"

    def __str__(self) -> str:
        return f"card {self.card_number} [{self.card_id}] device {self.capture_device_index}"


def _arecord_listing() -> Optional[str]:
    return run_command(['arecord', '-l'])


class CaptureEnumerator:
    """
    Enumerates capture-capable sound cards.

    Args:
        rule_store: Consulted read-only to attach friendly names.
        proc_root: /proc/asound by default.
        sysfs_sound_root: /sys/class/sound by default.
        denylist: Card ids excluded outright (on-board audio).
        capture_lister: Returns `arecord -l` output, or None if unavailable.
    """

    PROC_ASOUND = Path('/proc/asound')
    SYSFS_SOUND = Path('/sys/class/sound')

    def __init__(self,
                 rule_store: Optional[SoundRuleStore] = None,
                 proc_root: Optional[Path] = None,
                 sysfs_sound_root: Optional[Path] = None,
                 denylist: Iterable[str] = DEFAULT_DENYLIST,
                 rtsp_host: str = 'localhost',
                 rtsp_port: int = 8554,
                 capture_lister: Callable[[], Optional[str]] = _arecord_listing):
        self.rule_store = rule_store
        self.proc_root = Path(proc_root) if proc_root else self.PROC_ASOUND
        self.sysfs_sound_root = Path(sysfs_sound_root) if sysfs_sound_root else self.SYSFS_SOUND
        self.denylist = set(denylist)
        self.rtsp_host = rtsp_host
        self.rtsp_port = rtsp_port
        self.capture_lister = capture_lister

    def endpoint_for(self, stream_name: str) -> str:
        return f"rtsp://{self.rtsp_host}:{self.rtsp_port}/{stream_name}"

    def list_cards(self) -> List[AsoundCard]:
        return AsoundCardsParser.parse(read_attr(self.proc_root / 'cards'))

    def list_capture_devices(self) -> List[CaptureDevice]:
        """
        Capture devices in card order.

        Never raises: a card that cannot be fully classified is still
        reported (unmapped), only denylisted and playback-only cards are
        left out.
        """
        cards = self.list_cards()
        if not cards:
            logger.warning("No sound cards found. Check if you have audio capture devices connected.")
            return []

        listing = CaptureListParser.parse(self.capture_lister())
        if listing is None:
            logger.debug("arecord listing unavailable, relying on /proc capture directories")

        devices = []
        for card in cards:
            if card.card_id in self.denylist:
                logger.info(f"Skipping system audio device: {card.card_id}")
                continue
            try:
                device = self._classify(card, listing)
            except (OSError, ValueError) as e:
                logger.error(f"Could not classify card {card.number} [{card.card_id}]: {e}")
                device = self._build(card, capture_index=0, usb_ids=None, device_path=None)
            if device is not None:
                devices.append(device)
        return devices

    def _card_dir(self, card: AsoundCard) -> Path:
        return self.proc_root / f"card{card.number}"

    def _capture_dirs(self, card: AsoundCard) -> List[int]:
        card_dir = self._card_dir(card)
        if not card_dir.is_dir():
            return []
        indexes = []
        for entry in card_dir.iterdir():
            index = UsbAttrParser.parse_capture_dir(entry.name)
            if index is not None and entry.is_dir():
                indexes.append(index)
        return sorted(indexes)

    def has_capture(self, card: AsoundCard,
                    listing: Optional[List[CaptureEntry]]) -> Optional[bool]:
        """
        Whether the card exposes a capture stream.

        Returns:
            True/False, or None when neither signal is available.
        """
        if listing is not None:
            if any(e.card_number == card.number or e.card_id == card.card_id for e in listing):
                return True
        if self._capture_dirs(card):
            return True
        if listing is None and not self._card_dir(card).is_dir():
            return None
        return False

    def _classify(self, card: AsoundCard,
                  listing: Optional[List[CaptureEntry]]) -> Optional[CaptureDevice]:
        capture = self.has_capture(card, listing)
        if capture is False:
            logger.info(f"Skipping card {card.number} [{card.card_id}] - no capture device found")
            return None
        if capture is None:
            logger.warning(
                f"Cannot tell whether card {card.number} [{card.card_id}] can capture; "
                f"reporting it unmapped"
            )

        indexes = self._capture_dirs(card)
        capture_index = indexes[0] if indexes else 0

        usb_ids = UsbAttrParser.parse_usbid(read_attr(self._card_dir(card) / 'usbid'))
        return self._build(card, capture_index, usb_ids, self._device_path(card))

    def _device_path(self, card: AsoundCard) -> Optional[str]:
        node = self.sysfs_sound_root / f"card{card.number}"
        if not node.exists():
            return None
        try:
            return str(node.resolve())
        except (OSError, RuntimeError):
            return None

    def _build(self, card: AsoundCard, capture_index: int, usb_ids, device_path) -> CaptureDevice:
        stream_name = USBValidation.sanitize_stream_name(card.card_id) or f"card{card.number}"
        vendor_id, product_id = usb_ids if usb_ids else (None, None)

        friendly_name = None
        if usb_ids is None:
            logger.debug(f"Card {card.number} [{card.card_id}] has no USB ids, unmapped")
        elif self.rule_store is not None:
            rule = self.rule_store.match(vendor_id, product_id, device_path)
            if rule is not None:
                friendly_name = rule.friendly_name
                if rule.friendly_name != card.card_id:
                    logger.warning(
                        f"Card {card.number} [{card.card_id}] matches rule for "
                        f"'{rule.friendly_name}' but still has its old id; "
                        f"reload udev rules or replug the device"
                    )
            else:
                logger.debug(f"Card {card.number} [{card.card_id}] ({vendor_id}:{product_id}) unmapped")

        return CaptureDevice(
            card_number=card.number,
            card_id=card.card_id,
            description=card.description,
            usb_info=card.usb_info,
            capture_device_index=capture_index,
            resolved_stream_name=stream_name,
            endpoint_url=self.endpoint_for(stream_name),
            vendor_id=vendor_id,
            product_id=product_id,
            friendly_name=friendly_name,
        )
