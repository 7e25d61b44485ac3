#!/usr/bin/env python3
"""
USB Sound Card Mapper - persistent names for USB sound devices

Writes udev rules that give a USB sound card a fixed ALSA id, optionally
tied to the physical USB port so identical devices can be told apart.

Modes:
    usb-soundcard-mapper                      interactive wizard (default)
    usb-soundcard-mapper -n -d "MOVO X1 MINI" -v 2e88 -p 4610 -f movo-x1-mini
    usb-soundcard-mapper -n -d "MOVO X1 MINI" -v 2e88 -p 4610 -u usb-3.4 -f movo-x1-mini
    usb-soundcard-mapper -t                   test port detection, writes nothing

Every rule written is logged to syslog.
"""

import argparse
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from tabulate import tabulate

from rtspmic.config import ConfigManager
from rtspmic.parsers import AsoundCard, AsoundCardsParser, PortPathParser, UsbAttrParser
from rtspmic.sound_rules import MatchMode, RuleStoreError, SoundRuleStore, reload_udev_rules
from rtspmic.usb_device import Confidence, PortIdentity, UsbDevice
from rtspmic.usb_monitor import list_usb_devices
from rtspmic.usb_topology import ResolutionFailure, TopologyResolver
from rtspmic.usb_validation import USBValidation, ValidationError
from rtspmic.utils import read_attr, require_root, run_command

logger = logging.getLogger(__name__)

PROC_ASOUND = Path('/proc/asound')
SYSFS_SOUND = Path('/sys/class/sound')

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 2


def setup_logging(debug: bool = False) -> logging.Logger:
    """Syslog (audit trail of rule writes) plus stderr for the rtspmic loggers."""
    package_logger = logging.getLogger('rtspmic')
    package_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if package_logger.handlers:
        return package_logger

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    package_logger.addHandler(stderr_handler)

    try:
        syslog_handler = logging.handlers.SysLogHandler(
            address='/dev/log',
            facility=logging.handlers.SysLogHandler.LOG_USER
        )
        syslog_handler.setFormatter(
            logging.Formatter('usb-soundcard-mapper[%(process)d]: %(message)s')
        )
        package_logger.addHandler(syslog_handler)
    except OSError as e:
        package_logger.debug(f"Syslog unavailable, logging to stderr only: {e}")

    return package_logger


# =============================================================================
# Helpers
# =============================================================================

def load_cards(proc_root: Path = PROC_ASOUND) -> List[AsoundCard]:
    return AsoundCardsParser.parse(read_attr(proc_root / 'cards'))


def find_card_by_name(cards: List[AsoundCard], device_name: str) -> Optional[AsoundCard]:
    """First card whose id or description contains device_name (case-insensitive)."""
    needle = device_name.lower()
    for card in cards:
        if needle in card.card_id.lower() or needle in card.description.lower():
            return card
    return None


def derive_port_pattern(usb_port: Optional[str], card_device_info: Optional[str]) -> Optional[str]:
    """
    Port pattern for a non-interactive rule.

    An operator-supplied port wins when it looks like a USB path; its
    "<bus>-<port>[.<port>]*" fragment is used when present. Otherwise
    the card's own "at usb-..." path is used.
    """
    if usb_port:
        if USBValidation.is_valid_usb_path(usb_port):
            pattern = PortPathParser.find_fragment(usb_port)
            if pattern:
                logger.info(f"Extracted simple port pattern from provided port: {pattern}")
                return pattern
            logger.info(f"Using provided port as pattern: {usb_port}")
            return usb_port
        logger.warning(f"Provided USB port path '{usb_port}' appears invalid. Looking for alternatives.")

    if card_device_info:
        pattern = PortPathParser.card_port_pattern(card_device_info)
        if pattern:
            logger.info(f"Using port pattern from found card: {pattern}")
            return pattern
        logger.info(f"Using device info as port pattern: {card_device_info}")
        return card_device_info

    return None


def _usb_node_for_card(card_number: int, sysfs_sound_root: Path) -> Optional[Path]:
    """Walk up from /sys/class/sound/cardN to the USB device carrying busnum/devnum."""
    node = sysfs_sound_root / f"card{card_number}"
    try:
        current = node.resolve()
    except (OSError, RuntimeError):
        return None
    for candidate in [current, *current.parents]:
        if (candidate / 'busnum').exists() and (candidate / 'devnum').exists():
            return candidate
    return None


def card_usb_details(card_number: int,
                     proc_root: Path = PROC_ASOUND,
                     sysfs_sound_root: Path = SYSFS_SOUND) -> Tuple[Optional[Tuple[int, int]],
                                                                   Optional[Tuple[str, str]]]:
    """
    (bus, dev) and (vendor, product) of a sound card, each None when unknown.

    /proc/asound/cardN/usbbus and usbid first, then the card's sysfs
    ancestry.
    """
    card_dir = proc_root / f"card{card_number}"
    bus_dev = UsbAttrParser.parse_usbbus(read_attr(card_dir / 'usbbus'))
    ids = UsbAttrParser.parse_usbid(read_attr(card_dir / 'usbid'))
    if bus_dev and ids:
        return bus_dev, ids

    node = _usb_node_for_card(card_number, sysfs_sound_root)
    if node is not None:
        logger.debug(f"Card {card_number} USB node: {node}")
        if bus_dev is None:
            bus = UsbAttrParser.parse_int(read_attr(node / 'busnum'))
            dev = UsbAttrParser.parse_int(read_attr(node / 'devnum'))
            if bus is not None and dev is not None:
                bus_dev = (bus, dev)
        if ids is None:
            vendor = read_attr(node / 'idVendor')
            product = read_attr(node / 'idProduct')
            if vendor and product:
                ids = UsbAttrParser.parse_usbid(f"{vendor.lower()}:{product.lower()}")
    return bus_dev, ids


def show_card_details(card: AsoundCard, resolver: TopologyResolver,
                      proc_root: Path = PROC_ASOUND,
                      sysfs_sound_root: Path = SYSFS_SOUND) -> Optional[PortIdentity]:
    bus_dev, ids = card_usb_details(card.number, proc_root, sysfs_sound_root)
    if bus_dev is None and ids is None:
        logger.warning(f"Could not get complete USB information for card {card.number}.")
        return None

    identity = None
    if bus_dev is not None:
        try:
            identity = resolver.resolve_port(*bus_dev)
        except ResolutionFailure as e:
            logger.warning(str(e))

    print(f"USB Device Information for card {card.number}:")
    if bus_dev is not None:
        print(f"  Bus: {bus_dev[0]}")
        print(f"  Device: {bus_dev[1]}")
    if identity is not None:
        print(f"  Physical Port: {identity.port_path} (confidence: {identity.confidence.value})")
    if ids is not None:
        print(f"  Vendor ID: {ids[0]}")
        print(f"  Product ID: {ids[1]}")
    print()
    return identity


def show_existing_rules(store: SoundRuleStore):
    rules = store.rules
    if not rules:
        print(f"No existing rules in {store.rules_path}.")
        return
    print(f"Existing rules in {store.rules_path}:")
    for rule in rules:
        print(f"  {rule.rule_line}")


def _ask(input_func: Callable[[str], str], prompt: str) -> str:
    return input_func(prompt).strip()


def _ask_number(input_func: Callable[[str], str], prompt: str) -> int:
    answer = _ask(input_func, prompt)
    if not answer.isdigit():
        raise ValidationError("Invalid input. Please enter a number.")
    return int(answer)


# =============================================================================
# Modes
# =============================================================================

def non_interactive_mapping(store: SoundRuleStore,
                            device_name: Optional[str],
                            vendor_id: Optional[str],
                            product_id: Optional[str],
                            usb_port: Optional[str],
                            friendly_name: Optional[str],
                            proc_root: Path = PROC_ASOUND,
                            reload: Callable[[], bool] = reload_udev_rules) -> int:
    """
    Map a device from command line values.

    Raises:
        ValidationError: Missing or malformed values; nothing is written.
        RuleStoreError: The rules file could not be written.
    """
    if not (device_name and vendor_id and product_id and friendly_name):
        raise ValidationError(
            "Device name, vendor ID, product ID, and friendly name must be provided "
            "for non-interactive mode."
        )
    USBValidation.validate_hex_id(vendor_id, 'vendor ID')
    USBValidation.validate_hex_id(product_id, 'product ID')
    USBValidation.validate_friendly_name(friendly_name)

    logger.info("Looking for device in current system...")
    card_device_info = None
    card = find_card_by_name(load_cards(proc_root), device_name)
    if card is not None:
        logger.info(f"Found potential matching card: {card.number} [{card.card_id}]")
        card_device_info = card.usb_path
        if card_device_info:
            logger.info(f"Found actual USB path: {card_device_info}")

    pattern = derive_port_pattern(usb_port, card_device_info)
    USBValidation.validate_port_pattern(pattern)
    if card_device_info and card_device_info != pattern:
        USBValidation.validate_port_pattern(card_device_info)

    logger.info(f"Creating rule for {device_name}...")
    if pattern:
        logger.info(f"Creating enhanced rule with port pattern: {pattern}")
        store.add_rule(vendor_id, product_id, pattern, MatchMode.PORT_PATTERN, friendly_name,
                       device_name=device_name)
        if card_device_info and card_device_info != pattern:
            store.add_rule(vendor_id, product_id, card_device_info, MatchMode.PORT_PATTERN,
                           friendly_name, device_name=device_name,
                           note="Backup rule using card device info")
    else:
        logger.info("Creating basic rule (no reliable port information available)...")
        store.add_rule(vendor_id, product_id, None, MatchMode.BASIC, friendly_name,
                       device_name=device_name)

    reload()
    print("Sound card mapping created successfully.")
    print("Remember to reboot for changes to take effect.")
    return EXIT_OK


def interactive_mapping(store: SoundRuleStore,
                        resolver: TopologyResolver,
                        input_func: Callable[[str], str] = input,
                        proc_root: Path = PROC_ASOUND,
                        sysfs_sound_root: Path = SYSFS_SOUND,
                        usb_lister: Callable[[], List[UsbDevice]] = list_usb_devices,
                        reload: Callable[[], bool] = reload_udev_rules) -> int:
    """Guided mapping of one sound card."""
    print("===== USB Sound Card Mapper =====")
    print("This wizard will guide you through mapping your USB sound card to a consistent name.")
    print()

    usb_devices = usb_lister()
    cards = load_cards(proc_root)

    print("USB devices:")
    print(tabulate(
        [[i, f"{d.bus_num:03d}", f"{d.dev_num:03d}", d.model_id, d.product_name or d.vendor_name or '']
         for i, d in enumerate(usb_devices, 1)],
        headers=["#", "Bus", "Device", "ID", "Name"], tablefmt="simple"
    ))
    print()
    print("Sound cards:")
    for card in cards:
        print(f"  {card.number} [{card.card_id}]: {card.description}")
        if card.usb_path:
            print(f"      Path: {card.usb_path}")
    print()

    card_num = _ask_number(input_func, "Enter the number of the sound card you want to map: ")
    card = AsoundCardsParser.find(cards, card_num)
    if card is None:
        raise ValidationError(f"No sound card found with number {card_num}.")
    print(f"Selected card: {card.number} - {card.card_id}")

    card_device_info = card.usb_path
    if card_device_info:
        logger.info(f"Found actual USB path from card info: {card_device_info}")

    show_card_details(card, resolver, proc_root, sysfs_sound_root)

    if not usb_devices:
        raise ValidationError("No USB devices found.")
    print("Select the USB device that corresponds to this sound card:")
    usb_num = _ask_number(input_func, "USB device number: ")
    if not 1 <= usb_num <= len(usb_devices):
        raise ValidationError(f"No USB device found at position {usb_num}.")
    device = usb_devices[usb_num - 1]
    print(f"Selected USB device: {device}")
    print(f"Vendor ID: {device.vendor_id}")
    print(f"Product ID: {device.product_id}")
    print(f"Bus: {device.bus_num}, Device: {device.dev_num}")

    identity: Optional[PortIdentity] = None
    physical_port = None
    if card_device_info:
        physical_port = card_device_info
        print(f"Using USB path from card info: {physical_port}")
    else:
        identity = resolver.resolve_device(device)
        if identity.is_synthetic:
            logger.warning("Could not determine physical USB port. Using device ID only for mapping.")
            print(f"Created fallback identifier: {identity.identifier}")
            answer = _ask(input_func, "Continue with this identifier? (y/n): ")
            if answer.lower() != 'y':
                print("Mapping canceled.")
                return EXIT_FAILURE
        else:
            physical_port = identity.port_path
            print(f"USB physical port: {physical_port} (confidence: {identity.confidence.value})")

    print()
    friendly_name = _ask(input_func, "Enter a friendly name for the sound card "
                                     "(lowercase letters, numbers, and hyphens only): ")
    if not friendly_name:
        friendly_name = USBValidation.default_friendly_name(card.card_id)
        logger.info(f"Using default name: {friendly_name}")
    USBValidation.validate_friendly_name(friendly_name)

    show_existing_rules(store)

    print()
    print("Ready to create udev rule. Choose rule type:")
    print("1. Basic rule (by vendor and product ID only)")
    print("2. Enhanced rule (by vendor, product ID, and USB port path) - RECOMMENDED")
    print("3. Strict rule (require exact match of vendor, product, and port)")
    rule_type = _ask(input_func, "Rule type: ")

    vendor_id, product_id = device.vendor_id, device.product_id
    name = card.card_id
    if rule_type == '1':
        print("Creating basic rule...")
        store.add_rule(vendor_id, product_id, None, MatchMode.BASIC, friendly_name,
                       device_name=name, identity=identity)
    elif rule_type == '2':
        print("Creating enhanced rule with port matching...")
        if card_device_info:
            store.add_rule(vendor_id, product_id, card_device_info, MatchMode.PORT_PATTERN,
                           friendly_name, device_name=name)
            port_numbers = PortPathParser.card_port_numbers(card_device_info)
            if port_numbers:
                store.add_rule(vendor_id, product_id, port_numbers, MatchMode.PORT_PATTERN,
                               friendly_name, device_name=name,
                               note="Alternative matching rule with port numbers only")
        else:
            pattern = PortPathParser.find_fragment(physical_port) or physical_port
            store.add_rule(vendor_id, product_id, pattern, MatchMode.PORT_PATTERN,
                           friendly_name, device_name=name, identity=identity)
    elif rule_type == '3':
        print("Creating strict rule with exact port matching...")
        pattern = card_device_info or PortPathParser.find_fragment(physical_port) or physical_port
        if not pattern:
            raise ValidationError("Cannot create strict rule without reliable port information.")
        store.add_rule(vendor_id, product_id, pattern, MatchMode.EXACT_PORT,
                       friendly_name, device_name=name,
                       identity=None if card_device_info else identity)
    else:
        raise ValidationError("Invalid rule type selection.")

    reload()
    print("Sound card mapping created successfully.")

    print("A reboot is recommended for the changes to take effect.")
    if _ask(input_func, "Do you want to reboot now? (y/n): ").lower() == 'y':
        logger.info("Rebooting system...")
        run_command(['reboot'])
    else:
        print("Please reboot your system later for the changes to take effect.")
    return EXIT_OK


def run_port_detection_test(resolver: TopologyResolver,
                            usb_lister: Callable[[], List[UsbDevice]] = list_usb_devices) -> int:
    """
    Resolve every connected USB device and report the results.

    Returns:
        0 when every device resolved, 2 when some did, 1 when none did
        or there are no USB devices.
    """
    devices = usb_lister()
    if not devices:
        print("No USB devices found.")
        return EXIT_FAILURE

    rows = []
    resolved = 0
    for device in devices:
        try:
            identity = resolver.resolve_device(device)
        except ResolutionFailure as e:
            logger.warning(f"Device {device}: {e}")
            rows.append([device.bus_num, device.dev_num, device.model_id,
                         device.product_name or '', '-', 'failed'])
            continue
        if identity.confidence != Confidence.NONE:
            resolved += 1
        rows.append([device.bus_num, device.dev_num, device.model_id,
                     device.product_name or '', identity.identifier, identity.confidence.value])

    print(tabulate(rows, headers=["Bus", "Device", "ID", "Product", "Port identity", "Confidence"],
                   tablefmt="grid"))
    print(f"\nPort detection test results: {resolved} of {len(devices)} devices mapped successfully.")

    if resolved == len(devices):
        return EXIT_OK
    if resolved:
        return EXIT_PARTIAL
    return EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='usb-soundcard-mapper',
        description="USB Sound Card Mapper - Create persistent names for USB sound devices"
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('-i', '--interactive', action='store_true',
                      help="Run in interactive mode (default)")
    mode.add_argument('-n', '--non-interactive', action='store_true',
                      help="Run in non-interactive mode (requires -d, -v, -p and -f)")
    mode.add_argument('-t', '--test', action='store_true',
                      help="Test USB port detection on current system")
    parser.add_argument('-d', '--device', metavar='NAME', help="Device name (matched against sound cards)")
    parser.add_argument('-v', '--vendor', metavar='ID', help="Vendor ID (4-digit hex)")
    parser.add_argument('-p', '--product', metavar='ID', help="Product ID (4-digit hex)")
    parser.add_argument('-u', '--usb-port', metavar='PORT',
                        help="USB port path (recommended for multiple identical devices)")
    parser.add_argument('-f', '--friendly', metavar='NAME', help="Friendly name to assign")
    parser.add_argument('-D', '--debug', action='store_true', help="Enable debug output")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)
    require_root()

    config = ConfigManager.load_config()
    try:
        resolver = TopologyResolver()
        if args.test:
            return run_port_detection_test(resolver)

        store = SoundRuleStore(Path(config['rules_path']))
        if args.non_interactive:
            return non_interactive_mapping(store, args.device, args.vendor, args.product,
                                           args.usb_port, args.friendly)
        return interactive_mapping(store, resolver)
    except ValidationError as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except RuleStoreError as e:
        logger.error(f"Failed to write rules: {e}")
        return EXIT_FAILURE
    except (KeyboardInterrupt, EOFError):
        print("\nMapping canceled.")
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
