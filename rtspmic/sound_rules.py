"""
USB Sound Card Rules Store

Persists (vendor, product, port pattern) -> friendly name mappings as an
ordered udev rules file. udev applies the rules first-match-wins and
renames the ALSA card id (ATTR{id}) to the friendly name.

File format, one block per rule:

    # USB Sound Card: MOVO X1 MINI
    # Port pattern: 1-1.4
    # Uniqueness tag: 3fa9c1
    # Created: 2024-05-01T10:00:00
    SUBSYSTEM=="sound", KERNELS=="*1-1.4*", ATTRS{idVendor}=="2e88", ATTRS{idProduct}=="4610", ATTR{id}="movo-x1-mini"

Storage features:
- Append-only from this tool's point of view; existing lines, including
  rules written by hand, are preserved verbatim
- Atomic writes (temp file + rename) so udev never sees a torn file
- Symlinked rules file or directory is refused
- All operator input is validated before anything is written
"""

import hashlib
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from rtspmic.usb_device import PortIdentity, UsbDevice
from rtspmic.usb_validation import USBValidation, ValidationError
from rtspmic.utils import run_command

logger = logging.getLogger(__name__)


class RuleStoreError(Exception):
    """Raised when the rules file cannot be written safely."""
    pass


class MatchMode(str, Enum):
    """How strictly a rule pins a device to a physical port."""
    BASIC = 'basic'                  # vendor + product only
    PORT_PATTERN = 'port-pattern'    # KERNELS=="*<pattern>*"
    EXACT_PORT = 'exact-port'        # KERNELS=="<pattern>"


@dataclass(frozen=True)
class MappingRule:
    """A stored sound card naming rule."""
    vendor_id: str
    product_id: str
    match_mode: MatchMode
    friendly_name: str
    port_pattern: Optional[str] = None
    created_at: str = ''             # ISO timestamp
    uniqueness_tag: str = ''
    device_name: str = ''
    degraded: bool = False           # requested port match fell back to basic
    note: Optional[str] = None       # free comment line, e.g. "Backup rule ..."
    port_identity: Optional[str] = None  # resolver identifier the pattern came from

    @property
    def model_id(self) -> str:
        return f"{self.vendor_id}:{self.product_id}"

    @property
    def rule_line(self) -> str:
        """The udev rule line for this mapping."""
        parts = ['SUBSYSTEM=="sound"']
        if self.match_mode == MatchMode.PORT_PATTERN:
            parts.append(f'KERNELS=="*{self.port_pattern}*"')
        elif self.match_mode == MatchMode.EXACT_PORT:
            parts.append(f'KERNELS=="{self.port_pattern}"')
        parts.append(f'ATTRS{{idVendor}}=="{self.vendor_id}"')
        parts.append(f'ATTRS{{idProduct}}=="{self.product_id}"')
        parts.append(f'ATTR{{id}}="{self.friendly_name}"')
        return ', '.join(parts)

    def to_lines(self) -> List[str]:
        """Annotation comments followed by the rule line."""
        lines = []
        if self.note:
            lines.append(f"# {self.note}")
        lines.append(f"# USB Sound Card: {self.device_name or self.friendly_name}")
        if self.port_pattern:
            lines.append(f"# Port pattern: {self.port_pattern}")
        if self.port_identity:
            lines.append(f"# Port identity: {self.port_identity}")
        if self.degraded:
            lines.append("# Degraded: no port pattern resolved, matching by vendor/product only")
        if self.uniqueness_tag:
            lines.append(f"# Uniqueness tag: {self.uniqueness_tag}")
        if self.created_at:
            lines.append(f"# Created: {self.created_at}")
        lines.append(self.rule_line)
        return lines

    def matches(self, vendor_id: str, product_id: str, device_path: Optional[str] = None) -> bool:
        """
        Evaluate this rule against a device the way udev would.

        Args:
            device_path: Runtime sysfs path of the sound card (any ancestor
                kernel name may satisfy a KERNELS match). Port rules never
                match when it is unknown.
        """
        if vendor_id != self.vendor_id or product_id != self.product_id:
            return False
        if self.match_mode == MatchMode.BASIC:
            return True
        if not device_path or not self.port_pattern:
            return False
        if self.match_mode == MatchMode.PORT_PATTERN:
            return self.port_pattern in device_path
        return self.port_pattern in device_path.strip('/').split('/')


class RuleFileParser:
    """Reads MappingRules back out of a rules file."""

    SUBSYSTEM_PATTERN = re.compile(r'SUBSYSTEM=="sound"')
    KERNELS_PATTERN = re.compile(r'KERNELS=="([^"]*)"')
    VENDOR_PATTERN = re.compile(r'ATTRS\{idVendor\}=="([^"]*)"')
    PRODUCT_PATTERN = re.compile(r'ATTRS\{idProduct\}=="([^"]*)"')
    NAME_PATTERN = re.compile(r'ATTR\{id\}="([^"]*)"')
    ANNOTATION_PATTERN = re.compile(r'^#\s*([A-Za-z ]+):\s*(.*)$')

    @classmethod
    def parse(cls, text: str) -> List[MappingRule]:
        rules: List[MappingRule] = []
        annotations: dict = {}
        notes: List[str] = []

        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                annotations, notes = {}, []
                continue
            if line.startswith('#'):
                match = cls.ANNOTATION_PATTERN.match(line)
                if match:
                    annotations[match.group(1).strip().lower()] = match.group(2).strip()
                else:
                    notes.append(line.lstrip('#').strip())
                continue

            rule = cls.parse_rule_line(line, annotations, notes)
            if rule is not None:
                rules.append(rule)
            annotations, notes = {}, []
        return rules

    @classmethod
    def parse_rule_line(cls, line: str, annotations: Optional[dict] = None,
                        notes: Optional[List[str]] = None) -> Optional[MappingRule]:
        """Parse one rule line; lines that are not sound naming rules give None."""
        annotations = annotations or {}
        if not cls.SUBSYSTEM_PATTERN.search(line):
            return None
        vendor = cls.VENDOR_PATTERN.search(line)
        product = cls.PRODUCT_PATTERN.search(line)
        name = cls.NAME_PATTERN.search(line)
        if not (vendor and product and name):
            return None

        kernels = cls.KERNELS_PATTERN.search(line)
        port_pattern = None
        mode = MatchMode.BASIC
        if kernels:
            value = kernels.group(1)
            if len(value) > 2 and value.startswith('*') and value.endswith('*'):
                mode, port_pattern = MatchMode.PORT_PATTERN, value[1:-1]
            elif value:
                mode, port_pattern = MatchMode.EXACT_PORT, value

        created = annotations.get('created', '')
        return MappingRule(
            vendor_id=USBValidation.sanitize_hex_id(vendor.group(1)),
            product_id=USBValidation.sanitize_hex_id(product.group(1)),
            match_mode=mode,
            friendly_name=name.group(1),
            port_pattern=port_pattern,
            created_at=USBValidation.sanitize_timestamp(created) if created else '',
            uniqueness_tag=annotations.get('uniqueness tag', ''),
            device_name=annotations.get('usb sound card', ''),
            degraded='degraded' in annotations,
            note=notes[0] if notes else None,
            port_identity=annotations.get('port identity') or None,
        )


class SoundRuleStore:
    """
    Ordered store of sound card naming rules backed by a udev rules file.

    Single writer (the rule-authoring CLI); the daemon only reads.
    """

    DEFAULT_PATH = Path('/etc/udev/rules.d/99-usb-soundcards.rules')

    # udev rules are world-readable configuration
    FILE_MODE = 0o644

    def __init__(self, rules_path: Optional[Path] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Args:
            rules_path: Override path for testing or configuration.
            clock: Source of creation timestamps.
        """
        self.rules_path = Path(rules_path) if rules_path else self.DEFAULT_PATH
        self.clock = clock
        self._rules: List[MappingRule] = []
        self.reload()

    @property
    def rules(self) -> List[MappingRule]:
        """All rules in file order."""
        return list(self._rules)

    def reload(self):
        """Re-read the rules file. A missing or unreadable file gives no rules."""
        self._rules = []
        if self.rules_path.is_symlink():
            logger.error(f"Rules file {self.rules_path} is a symlink, refusing to load")
            return
        if not self.rules_path.exists():
            logger.debug(f"Rules file does not exist: {self.rules_path}")
            return
        try:
            text = self.rules_path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read rules file {self.rules_path}: {e}")
            return
        self._rules = RuleFileParser.parse(text)
        logger.debug(f"Loaded {len(self._rules)} sound card rules")

    def find_duplicates(self, vendor_id: str, product_id: str) -> List[MappingRule]:
        """Existing rules for the same vendor/product, in file order."""
        return [r for r in self._rules
                if r.vendor_id == vendor_id and r.product_id == product_id]

    def add_rule(self,
                 vendor_id: str,
                 product_id: str,
                 port_pattern: Optional[str],
                 match_mode: MatchMode,
                 friendly_name: str,
                 device_name: str = '',
                 note: Optional[str] = None,
                 identity: Optional[PortIdentity] = None) -> MappingRule:
        """
        Validate and append a rule.

        A port match requested without a port pattern degrades to BASIC,
        with a warning and a "Degraded" annotation in the file.

        When the resolved PortIdentity is given, its uniqueness token
        becomes the rule's uniqueness tag and its identifier is recorded
        next to the pattern; otherwise a fresh tag is generated.

        Raises:
            ValidationError: Malformed input; nothing is written.
            RuleStoreError: The rules file could not be written.
        """
        USBValidation.validate_hex_id(vendor_id, 'vendor ID')
        USBValidation.validate_hex_id(product_id, 'product ID')
        USBValidation.validate_friendly_name(friendly_name)
        port_pattern = USBValidation.validate_port_pattern(port_pattern)
        try:
            match_mode = MatchMode(match_mode)
        except ValueError:
            raise ValidationError(f"Invalid match mode: {match_mode!r}")

        degraded = False
        if match_mode != MatchMode.BASIC and not port_pattern:
            logger.warning(
                f"No port pattern resolved for {vendor_id}:{product_id}; "
                f"falling back from {match_mode.value} to basic matching. "
                f"Identical devices on other ports will get the same name."
            )
            match_mode = MatchMode.BASIC
            degraded = True
        if match_mode == MatchMode.BASIC:
            port_pattern = None

        duplicates = self.find_duplicates(vendor_id, product_id)
        if duplicates:
            names = ', '.join(r.friendly_name for r in duplicates)
            logger.warning(
                f"{len(duplicates)} existing rule(s) for {vendor_id}:{product_id} ({names}); "
                f"udev applies the first match, an earlier broader rule can shadow this one"
            )

        now = self.clock()
        rule = MappingRule(
            vendor_id=vendor_id,
            product_id=product_id,
            match_mode=match_mode,
            friendly_name=friendly_name,
            port_pattern=port_pattern,
            created_at=now.isoformat(),
            uniqueness_tag=identity.uniqueness_token if identity else self._uniqueness_tag(),
            device_name=USBValidation.sanitize_string(device_name, max_len=80),
            degraded=degraded,
            note=USBValidation.sanitize_string(note, max_len=120) if note else None,
            port_identity=identity.identifier if identity else None,
        )

        self._append(rule.to_lines())
        self._rules.append(rule)
        logger.info(f"Added sound card rule: {rule.model_id} -> {friendly_name} ({match_mode.value})")
        return rule

    def match(self, vendor_id: str, product_id: str,
              device_path: Optional[str] = None) -> Optional[MappingRule]:
        """First rule matching the device, in file order."""
        for rule in self._rules:
            if rule.matches(vendor_id, product_id, device_path):
                return rule
        return None

    def match_device(self, device: UsbDevice, device_path: Optional[str] = None) -> Optional[MappingRule]:
        return self.match(device.vendor_id, device.product_id, device_path)

    @staticmethod
    def _uniqueness_tag() -> str:
        return hashlib.md5(str(time.time_ns()).encode()).hexdigest()[:6]

    def _ensure_dir(self):
        parent = self.rules_path.parent
        if parent.is_symlink():
            logger.error(f"Directory {parent} is a symlink, refusing to use")
            raise RuleStoreError(f"Directory {parent} is a symlink")
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RuleStoreError(f"Cannot create {parent}: {e}") from e

    def _append(self, lines: List[str]):
        """
        Append lines to the rules file atomically.

        The whole file is rewritten through a temp file + rename, so a
        crash leaves either the old or the new file, never a partial rule.
        """
        self._ensure_dir()

        if self.rules_path.is_symlink():
            raise RuleStoreError(f"Rules file is a symlink: {self.rules_path}")

        try:
            existing = self.rules_path.read_text(encoding='utf-8') if self.rules_path.exists() else ''
        except (OSError, UnicodeDecodeError) as e:
            raise RuleStoreError(f"Cannot read {self.rules_path}: {e}") from e

        if existing and not existing.endswith('\n'):
            existing += '\n'
        content = existing + '\n'.join(lines) + '\n'

        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=self.rules_path.parent,
                prefix='.99-usb-soundcards_',
                suffix='.tmp'
            )
        except OSError as e:
            raise RuleStoreError(f"Cannot write to {self.rules_path.parent}: {e}") from e

        try:
            os.fchmod(fd, self.FILE_MODE)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)

            if self.rules_path.is_symlink():
                raise RuleStoreError(f"Rules file became a symlink: {self.rules_path}")

            os.replace(tmp_path, self.rules_path)
            logger.debug(f"Wrote {len(lines)} lines to {self.rules_path}")
        except Exception as e:
            # Close fd if os.fdopen hasn't taken ownership yet
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(e, RuleStoreError):
                raise
            raise RuleStoreError(f"Failed to write {self.rules_path}: {e}") from e


def reload_udev_rules() -> bool:
    """Ask udev to re-read its rules. Returns False if udevadm failed."""
    logger.info("Reloading udev rules...")
    if run_command(['udevadm', 'control', '--reload-rules']) is None:
        logger.error("Failed to reload udev rules")
        return False
    logger.info("Rules reloaded successfully")
    return True
