"""
Read-only status surface.

The daemon writes a JSON snapshot of its streams after every pass;
`audio-rtsp-status` renders it together with what is actually running.
"""

import argparse
import json
import logging
import os
import socket
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import psutil
from tabulate import tabulate

from rtspmic.config import ConfigManager
from rtspmic.parsers import AsoundCardsParser
from rtspmic.supervisor import StreamProcess, find_stream_processes
from rtspmic.utils import read_attr

logger = logging.getLogger(__name__)

TABLE_HEADERS = ["Card", "Card ID", "USB Device", "Dev", "RTSP URL"]


def format_stream_table(streams: Iterable[Dict[str, Any]], host: Optional[str] = None) -> str:
    """
    Grid table of active streams.

    Args:
        streams: Stream dicts as stored in the status file.
        host: When given, replaces "localhost" in the URLs (LAN hint).
    """
    rows = []
    for s in streams:
        url = s.get('endpoint_url', '')
        if host:
            url = url.replace('//localhost:', f'//{host}:', 1)
        rows.append([
            s.get('card_number', ''),
            s.get('card_id', ''),
            s.get('usb_info') or s.get('description') or '',
            s.get('capture_device_index', 0),
            url,
        ])
    return tabulate(rows, headers=TABLE_HEADERS, tablefmt="grid")


def lan_address() -> Optional[str]:
    """First non-loopback IPv4 address, None if there is none."""
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as e:
        logger.debug(f"Cannot list interfaces: {e}")
        return None
    for name in sorted(interfaces):
        if name == 'lo':
            continue
        for addr in interfaces[name]:
            if addr.family == socket.AF_INET and not addr.address.startswith('127.'):
                return addr.address
    return None


class StatusFile:
    """Atomically written JSON snapshot of the supervisor state."""

    FILE_MODE = 0o644

    def __init__(self, path):
        self.path = Path(path)

    def write(self, streams: List[StreamProcess], devices_seen: int = 0):
        data = {
            'updated_at': time.time(),
            'devices_seen': devices_seen,
            'streams': [s.to_dict() for s in streams],
        }
        self.path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        if self.path.is_symlink():
            raise OSError(f"Status path {self.path} is a symlink, refusing to write")

        fd, temp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix='.status-', suffix='.json')
        try:
            os.fchmod(fd, self.FILE_MODE)
            with os.fdopen(fd, 'w') as f:
                fd = None
                json.dump(data, f, indent=2)
            os.replace(temp_path, self.path)
        except Exception:
            if fd is not None:
                os.close(fd)
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Cannot read status file {self.path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.error(f"Status file {self.path} has invalid format")
            return None
        return data


def _print_processes(prefix: str):
    procs = find_stream_processes(prefix=prefix)
    if not procs:
        print("No streaming processes running.")
        return
    rows = []
    for proc in procs:
        try:
            endpoint = next((a for a in proc.cmdline() if a.startswith(prefix)), '')
            rows.append([proc.pid, endpoint, proc.status()])
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    print(tabulate(rows, headers=["PID", "Endpoint", "State"], tablefmt="grid"))


def _print_cards(proc_root: Path):
    cards = AsoundCardsParser.parse(read_attr(proc_root / 'cards'))
    if not cards:
        print("No sound cards found.")
        return
    for card in cards:
        print(f"  {card.number} [{card.card_id}]: {card.description}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Show audio RTSP stream status")
    parser.add_argument('--status-path', help="Status file written by the daemon")
    parser.add_argument('--json', action='store_true', help="Print the raw status file")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format='%(levelname)s: %(message)s')

    config = ConfigManager.load_config()
    status = StatusFile(args.status_path or config['status_path']).read()

    if args.json:
        if status is None:
            print("{}")
            return 1
        print(json.dumps(status, indent=2))
        return 0

    print("Active streams:")
    if status is None:
        print("No status available. Is the daemon running?")
    elif not status.get('streams'):
        print("No streams running.")
    else:
        print(format_stream_table(status['streams']))
        updated = status.get('updated_at')
        if isinstance(updated, (int, float)):
            print(f"\nUpdated: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(updated))}")

    prefix = f"rtsp://{config['rtsp_host']}:{config['rtsp_port']}/"
    print("\nStreaming processes:")
    _print_processes(prefix)

    print("\nSound cards:")
    _print_cards(Path('/proc/asound'))

    address = lan_address()
    if address and config['rtsp_host'] == 'localhost':
        print(f"\nRemote clients: replace 'localhost' with {address} in the URLs above.")

    return 0 if status is not None else 1


if __name__ == '__main__':
    sys.exit(main())
