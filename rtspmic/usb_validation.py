"""
USB Device Validation Utilities

Centralized validation and sanitization for USB device data and the
operator input that ends up in udev rules.

Two kinds of helpers live here:
- validate_* functions raise ValidationError on malformed operator input
  (nothing may be written to the rules file from such input)
- sanitize_* functions never raise; they strip what does not belong and
  are used on data read back from sysfs, udev or the rules file
"""

import logging
import re
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

HEX_ID_PATTERN = re.compile(r'^[0-9a-f]{4}$')
FRIENDLY_NAME_PATTERN = re.compile(r'^[a-z0-9-]+$')
# Port patterns land inside a quoted KERNELS=="..." match; no quotes, globs or spaces
PORT_PATTERN_PATTERN = re.compile(r'^[A-Za-z0-9._:/-]+$')

SERIAL_SAFE_CHARS = re.compile(r'[^0-9A-Za-z._-]')
HEX_CHARS = re.compile(r'[^0-9a-fA-F]')
STREAM_NAME_UNSAFE = re.compile(r'[^a-z0-9]')


class ValidationError(ValueError):
    """Raised when operator input fails its format invariant."""
    pass


class USBValidation:
    """Centralized USB validation and sanitization."""

    MAX_SERIAL_LEN = 128
    MAX_STRING_LEN = 256
    MAX_NAME_LEN = 64
    MAX_PORT_LEN = 128

    @staticmethod
    def validate_hex_id(value: str, label: str = 'ID') -> str:
        """
        Check a vendor or product ID against ^[0-9a-f]{4}$.

        Raises:
            ValidationError: If the value is not exactly four lowercase hex digits.
        """
        if not isinstance(value, str) or not HEX_ID_PATTERN.fullmatch(value):
            raise ValidationError(f"Invalid {label}: {value!r}. Must be a 4-digit hex value.")
        return value

    @staticmethod
    def validate_friendly_name(value: str) -> str:
        """
        Check a friendly name against ^[a-z0-9-]+$.

        Raises:
            ValidationError: On uppercase, spaces, symbols or empty names.
        """
        if not isinstance(value, str) or not FRIENDLY_NAME_PATTERN.fullmatch(value):
            raise ValidationError(
                f"Invalid friendly name: {value!r}. "
                f"Use only lowercase letters, numbers, and hyphens."
            )
        return value

    @staticmethod
    def validate_port_pattern(value: Optional[str]) -> Optional[str]:
        """
        Check a port pattern before it is embedded in a rule.

        None and empty strings mean "no port information" and are passed
        through as None.

        Raises:
            ValidationError: If the pattern contains characters that would
                break or widen the udev match.
        """
        if value is None or value == '':
            return None
        if not isinstance(value, str) or not PORT_PATTERN_PATTERN.fullmatch(value):
            raise ValidationError(f"Invalid USB port pattern: {value!r}")
        if len(value) > USBValidation.MAX_PORT_LEN:
            raise ValidationError(f"USB port pattern too long ({len(value)} chars)")
        return value

    @staticmethod
    def is_valid_usb_path(path: Optional[str]) -> bool:
        """
        Loose check that an operator-supplied port looks like a USB path.

        It must mention "usb" and contain a ':' or '-' separator.
        """
        if not path:
            return False
        return 'usb' in path and (':' in path or '-' in path)

    @staticmethod
    def sanitize_hex_id(hex_id: str) -> str:
        """
        Normalize a vendor or product identifier to 4 lowercase hex characters.

        Returns "0000" when no hex digits remain.
        """
        if not isinstance(hex_id, str):
            hex_id = str(hex_id) if hex_id is not None else ''
        clean = HEX_CHARS.sub('', hex_id)[:4].lower()
        return clean.zfill(4) if clean else '0000'

    @staticmethod
    def sanitize_serial(serial: Optional[str], max_len: int = 128) -> Optional[str]:
        """
        Sanitize a USB serial number read from sysfs or udev.

        Keeps letters, digits, '.', '_' and '-'. Returns None if nothing is left.
        """
        if serial is None or not isinstance(serial, str):
            return None
        original = serial
        clean = SERIAL_SAFE_CHARS.sub('', serial.strip())
        clean = clean[:min(max_len, USBValidation.MAX_SERIAL_LEN)]
        if clean != original.strip() and original:
            logger.debug(f"Sanitized serial: '{original[:20]}' -> '{clean[:20]}'")
        return clean or None

    @staticmethod
    def sanitize_string(value: str, max_len: int = 256) -> str:
        """Remove control characters (newlines included) and enforce length limits."""
        if not isinstance(value, str):
            value = str(value) if value is not None else ''
        clean = re.sub(r'[\x00-\x1f\x7f-\x9f]', '', value)
        return clean[:min(max_len, USBValidation.MAX_STRING_LEN)]

    @staticmethod
    def sanitize_stream_name(card_id: str) -> str:
        """Lowercase a card id and strip every non-alphanumeric character."""
        if not isinstance(card_id, str):
            card_id = str(card_id) if card_id is not None else ''
        return STREAM_NAME_UNSAFE.sub('', card_id.lower())

    @staticmethod
    def default_friendly_name(card_name: str) -> str:
        """
        Derive a friendly name from a card name: lowercase, spaces to hyphens,
        anything else outside [a-z0-9-] dropped.
        """
        name = (card_name or '').strip().lower().replace(' ', '-')
        return re.sub(r'[^a-z0-9-]', '', name)[:USBValidation.MAX_NAME_LEN]

    @staticmethod
    def sanitize_timestamp(ts: str) -> str:
        """Return `ts` if it is valid ISO 8601, otherwise the current time."""
        try:
            datetime.fromisoformat(ts)
            return ts
        except (ValueError, TypeError):
            return datetime.now().isoformat()
