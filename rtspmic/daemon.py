import os
import socket
import logging
import signal
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import ConfigManager
from .enumerator import CaptureEnumerator
from .sound_rules import SoundRuleStore
from .status import StatusFile
from .supervisor import StreamSupervisor
from .usb_monitor import SoundMonitor
from .utils import run_command

logger = logging.getLogger(__name__)


class SystemdNotifier:
    """Simple systemd notification handler (sd_notify)"""
    def __init__(self):
        self.socket_path = os.environ.get('NOTIFY_SOCKET')
        self.sock = None
        if self.socket_path:
            if self.socket_path.startswith('@'):
                self.socket_path = b'\0' + self.socket_path[1:].encode()
            else:
                self.socket_path = self.socket_path.encode()
            try:
                self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
            except OSError as e:
                logger.warning(f"Failed to create systemd notify socket: {e}")
                self.sock = None

    def notify(self, msg: str) -> bool:
        """Send notification to systemd. Returns True on success."""
        if not self.sock:
            return False
        try:
            self.sock.sendto(msg.encode(), self.socket_path)
            return True
        except OSError as e:
            logger.debug(f"Systemd notification failed: {e}")
            return False

    def ready(self):
        if self.notify("READY=1"):
            logger.info("Sent systemd READY=1")

    def ping(self):
        self.notify("WATCHDOG=1")

    def status(self, text: str):
        self.notify(f"STATUS={text}")

    def stopping(self):
        self.notify("STOPPING=1")


class StreamDaemon:
    """
    Periodic and hot-plug driven reconciliation of capture devices
    against running streams.
    """

    WATCHDOG_INTERVAL = 5
    RTSP_SERVER_WAIT = 3

    def __init__(self,
                 config: Optional[Dict[str, Any]] = None,
                 enumerator: Optional[CaptureEnumerator] = None,
                 supervisor: Optional[StreamSupervisor] = None,
                 monitor_factory: Callable[..., Any] = SoundMonitor,
                 notifier: Optional[SystemdNotifier] = None,
                 command_runner: Callable[..., Optional[str]] = run_command,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config if config is not None else ConfigManager.load_config()
        self.command_runner = command_runner
        self.sleep = sleep
        self.systemd = notifier or SystemdNotifier()

        self.rule_store: Optional[SoundRuleStore] = None
        self.enumerator = enumerator or self._build_enumerator()
        self.supervisor = supervisor or StreamSupervisor(
            bitrate=self.config['audio_bitrate'],
            stagger_delay=self.config['stagger_delay'],
            stop_timeout=self.config['stop_timeout'],
            rtsp_prefix=self.rtsp_prefix,
        )
        self.status_file = StatusFile(self.config['status_path'])
        self.monitor = monitor_factory(self._on_sound_event)

        self.running = False
        self._wake = threading.Event()
        self._stop_signal = threading.Event()
        self._reload_requested = False
        self._hotplug_pending = False
        self._signals_installed = False
        self._stop_lock = threading.Lock()
        self._stopped = False

    @property
    def rtsp_prefix(self) -> str:
        return f"rtsp://{self.config['rtsp_host']}:{self.config['rtsp_port']}/"

    def _build_enumerator(self) -> CaptureEnumerator:
        self.rule_store = SoundRuleStore(Path(self.config['rules_path']))
        return CaptureEnumerator(
            rule_store=self.rule_store,
            denylist=self.config['system_card_denylist'],
            rtsp_host=self.config['rtsp_host'],
            rtsp_port=self.config['rtsp_port'],
        )

    def start(self):
        """Start the daemon and block until it is told to stop."""
        logger.info("Starting audio RTSP daemon...")
        self._setup_signals()
        self._ensure_rtsp_server()

        if not self.monitor.start():
            logger.warning(f"Hot-plug monitor unavailable, rescanning every "
                           f"{self.config['rescan_interval']}s only")

        self.running = True
        self.run_pass()
        self.systemd.ready()

        try:
            self._run_loop()
        finally:
            self.stop()

    def _run_loop(self):
        interval = self.config['rescan_interval']
        next_pass = time.monotonic() + interval
        while self.running and not self._stop_signal.is_set():
            self.systemd.ping()
            timeout = max(0.0, min(self.WATCHDOG_INTERVAL, next_pass - time.monotonic()))
            woke = self._wake.wait(timeout)
            self._wake.clear()

            if self._stop_signal.is_set():
                break
            if self._reload_requested:
                self._reload_requested = False
                self.reload_config()
            elif self._hotplug_pending:
                # let the card finish registering its pcm devices
                self._stop_signal.wait(self.config['hotplug_settle'])
                if self._stop_signal.is_set():
                    break
            elif not woke and time.monotonic() < next_pass:
                continue

            self._hotplug_pending = False
            self.run_pass()
            interval = self.config['rescan_interval']
            next_pass = time.monotonic() + interval

    def run_pass(self):
        """One enumerate + reconcile pass. Errors are logged, never raised."""
        try:
            devices = self.enumerator.list_capture_devices()
            result = self.supervisor.reconcile(devices)
            streams = self.supervisor.streams()
            self._write_status(streams, len(devices))
            self.systemd.status(f"{len(streams)} stream(s) running")
            return result
        except Exception:
            logger.exception("Reconciliation pass failed")
            return None

    def _write_status(self, streams, devices_seen: int):
        try:
            self.status_file.write(streams, devices_seen)
        except OSError as e:
            logger.warning(f"Could not write status file: {e}")

    def request_rescan(self):
        self._hotplug_pending = True
        self._wake.set()

    def _on_sound_event(self, action: str, sys_name: str):
        logger.debug(f"Rescan requested by {action} {sys_name}")
        self.request_rescan()

    def reload_config(self):
        """Reload configuration and rules (SIGHUP)"""
        logger.info("Reloading configuration and rules...")
        try:
            self.config = ConfigManager.load_config()
            self.enumerator = self._build_enumerator()
            self.supervisor.bitrate = self.config['audio_bitrate']
            self.supervisor.stagger_delay = self.config['stagger_delay']
            self.supervisor.stop_timeout = self.config['stop_timeout']
            self.supervisor.rtsp_prefix = self.rtsp_prefix
            self.status_file = StatusFile(self.config['status_path'])
            logger.info(f"Config reloaded. {len(self.rule_store.rules)} rule(s) loaded")
        except (OSError, KeyError, ValueError) as e:
            logger.error(f"Error reloading config: {e}")

    def _handle_stop_signal(self, signum, _frame):
        # handlers only flag; teardown happens on the main loop
        if self._stop_signal.is_set():
            logger.debug(f"Signal {signum} received, shutdown already in progress")
            return
        logger.info(f"Signal {signum} received, stopping...")
        self._stop_signal.set()
        self.supervisor.request_stop()
        self._wake.set()

    def _handle_reload_signal(self, _signum, _frame):
        self._reload_requested = True
        self._wake.set()

    def _setup_signals(self):
        if self._signals_installed:
            return
        try:
            signal.signal(signal.SIGHUP, self._handle_reload_signal)
            signal.signal(signal.SIGTERM, self._handle_stop_signal)
            signal.signal(signal.SIGINT, self._handle_stop_signal)
            self._signals_installed = True
        except ValueError as e:
            # not on the main thread
            logger.warning(f"Could not install signal handlers: {e}")

    def _ensure_rtsp_server(self) -> bool:
        if not self.config.get('ensure_rtsp_server', True):
            return True
        unit = self.config['rtsp_server_unit']
        state = self.command_runner(['systemctl', 'is-active', unit])
        if state is not None and state.strip() == 'active':
            logger.info(f"RTSP server {unit} is running")
            return True

        logger.info(f"RTSP server {unit} is not running, starting it...")
        if self.command_runner(['systemctl', 'start', unit], timeout=30) is None:
            logger.warning(f"Could not start {unit}; streams will fail until an RTSP server is listening")
            return False
        self.sleep(self.RTSP_SERVER_WAIT)
        return True

    def stop(self):
        """Stop daemon. Safe to call more than once."""
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        self.running = False
        self._stop_signal.set()
        self._wake.set()
        logger.info("Stopping daemon...")
        self.systemd.stopping()

        self.monitor.stop()
        self.supervisor.shutdown()
        self._write_status([], 0)
        logger.info("Daemon stopped")
