#!/usr/bin/env python3
"""
Audio RTSP Daemon - Entry Point
"""

import argparse
import sys
import os
import logging
import atexit

# Ensure we can import the package
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from rtspmic.config import ConfigManager
from rtspmic.startup_validator import DependencyValidationError, ensure_runtime_dependencies, run_self_check
from rtspmic.utils import require_root

DEFAULT_LOG_FILE = '/var/log/audio-rtsp/audio-streams.log'


# Create a custom FileHandler to set proper permissions
class PermissionFileHandler(logging.FileHandler):
    def _open(self):
        stream = super()._open()
        # 640 = rw-r-----
        try:
            os.chmod(self.baseFilename, 0o640)
        except OSError:
            pass
        return stream


def setup_logging(log_file: str, debug: bool = False) -> logging.Logger:
    handlers = [logging.StreamHandler()]
    try:
        os.makedirs(os.path.dirname(log_file), mode=0o755, exist_ok=True)
        handlers.insert(0, PermissionFileHandler(log_file))
        log_error = None
    except OSError as e:
        log_error = e

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    logger = logging.getLogger("audio-rtsp-daemon")
    if log_error is not None:
        logger.warning(f"Cannot log to {log_file}: {log_error}")
    return logger


def main():
    parser = argparse.ArgumentParser(description="Audio RTSP streaming daemon")
    parser.add_argument('--self-check', action='store_true', help="Check libraries and tools, then exit")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging")
    parser.add_argument('--dev-mode', action='store_true', help="Skip the root check (development only)")
    args = parser.parse_args()

    if args.self_check:
        sys.exit(0 if run_self_check() else 1)

    config = ConfigManager.load_config()
    logger = setup_logging(config.get('log_file', DEFAULT_LOG_FILE), args.debug)

    require_root(allow_dev_mode=True)

    try:
        ensure_runtime_dependencies(include_tools=False)
    except DependencyValidationError as e:
        logger.critical(e.user_message)
        sys.exit(1)

    from rtspmic.daemon import StreamDaemon

    daemon = StreamDaemon(config=config)
    atexit.register(daemon.stop)

    try:
        daemon.start()
    except Exception:
        # Use logging.exception for automatic traceback inclusion
        logger.exception("Daemon crashed")
        daemon.stop()
        sys.exit(1)


if __name__ == '__main__':
    main()
