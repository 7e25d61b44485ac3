"""
Audio RTSP - Shared Utility Functions
"""

import os
import subprocess
import sys
import logging
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


def require_root(allow_dev_mode: bool = False) -> None:
    """Exit the program if not running as root.

    Writing udev rules, reloading udev and reading every USB attribute all
    need root, so the CLI and the daemon both call this before doing work.

    Args:
        allow_dev_mode: If True and --dev-mode is in sys.argv, skip root check.
                       This must be explicitly enabled by the caller.
    """
    if allow_dev_mode and '--dev-mode' in sys.argv:
        logger.warning("ROOT CHECK BYPASSED via --dev-mode flag")
        logger.warning(f"   PID: {os.getpid()}, UID: {os.getuid()}")
        print("WARNING: Running in development mode without root privileges", file=sys.stderr)
        return

    if not hasattr(os, 'geteuid'):
        logger.warning("os.geteuid() not available on this platform, skipping root check")
        return

    if os.geteuid() != 0:
        logger.error("This program must be run as root (use sudo)")
        print("ERROR: This program must be run as root. Please use sudo.", file=sys.stderr)
        sys.exit(1)


def run_command(args: Sequence[str], timeout: float = 10) -> Optional[str]:
    """
    Run an external tool and return its stdout.

    Returns:
        The captured stdout, or None when the tool is missing, exits
        non-zero or times out. Callers treat None as "signal unavailable".
    """
    try:
        result = subprocess.run(
            list(args), capture_output=True, text=True, timeout=timeout
        )
    except FileNotFoundError:
        logger.debug(f"Command not found: {args[0]}")
        return None
    except (subprocess.SubprocessError, OSError) as e:
        logger.debug(f"Command {args[0]} failed: {e}")
        return None

    if result.returncode != 0:
        logger.debug(f"Command {' '.join(args)} exited with {result.returncode}")
        return None
    return result.stdout


def read_attr(path: Path) -> Optional[str]:
    """Read a sysfs/procfs attribute file, stripped. None if absent or unreadable."""
    try:
        value = path.read_text(encoding='utf-8', errors='replace').strip()
    except (OSError, ValueError):
        return None
    return value or None
