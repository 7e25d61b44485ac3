"""
Stream Supervisor

Keeps exactly one ffmpeg process per present capture device, publishing
to the device's RTSP endpoint. Per device the lifecycle is

    Absent -> Starting -> Running -> Stopping -> Absent

reconcile() compares the devices seen in this pass with the processes
it owns and applies the minimal set of starts and stops. Passes are
serialized by a lock. Only shutdown() sweeps every streaming process;
everything else matches one endpoint at a time.
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import psutil

from rtspmic.enumerator import CaptureDevice

logger = logging.getLogger(__name__)


class SpawnFailure(Exception):
    """Streaming subprocess could not be started."""
    pass


class StreamState(str, Enum):
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'
    DEAD = 'dead'


@dataclass
class StreamProcess:
    """A streaming subprocess owned by the supervisor."""
    device: CaptureDevice
    handle: Any = field(repr=False)
    started_at: float = 0.0
    state: StreamState = StreamState.STARTING

    @property
    def captured_by(self) -> str:
        return self.device.card_id

    @property
    def endpoint_url(self) -> str:
        return self.device.endpoint_url

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.handle, 'pid', None)

    def is_alive(self) -> bool:
        return self.handle.poll() is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'card_number': self.device.card_number,
            'card_id': self.device.card_id,
            'description': self.device.description,
            'usb_info': self.device.usb_info,
            'capture_device_index': self.device.capture_device_index,
            'endpoint_url': self.endpoint_url,
            'friendly_name': self.device.friendly_name,
            'pid': self.pid,
            'started_at': self.started_at,
            'state': self.state.value,
        }


@dataclass
class ReconcileResult:
    started: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    died: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.started or self.stopped or self.died)


def build_stream_command(device: CaptureDevice, bitrate: str = '160k') -> List[str]:
    """ffmpeg command reading the device's capture stream and publishing it over RTSP."""
    return [
        'ffmpeg', '-nostdin', '-hide_banner', '-loglevel', 'warning',
        '-f', 'alsa', '-ac', '1', '-i', device.alsa_input,
        '-acodec', 'libmp3lame', '-b:a', bitrate, '-ac', '2',
        '-content_type', 'audio/mpeg',
        '-f', 'rtsp', '-rtsp_transport', 'tcp', device.endpoint_url,
    ]


def _is_stream_command(cmdline: List[str], endpoint: Optional[str] = None,
                       prefix: Optional[str] = None) -> bool:
    if not cmdline or 'ffmpeg' not in Path(cmdline[0]).name:
        return False
    if endpoint is not None:
        # exact argument match, "rtsp://h:p/mic" must not match ".../mic2"
        return endpoint in cmdline
    if prefix is not None:
        return any(arg.startswith(prefix) for arg in cmdline)
    return False


def find_stream_processes(endpoint: Optional[str] = None,
                          prefix: Optional[str] = None,
                          exclude_pids: Iterable[int] = ()) -> List['psutil.Process']:
    """
    Running ffmpeg processes publishing to an endpoint (or any endpoint
    under prefix).
    """
    excluded = set(exclude_pids)
    found = []
    for proc in psutil.process_iter(['pid', 'cmdline']):
        try:
            if proc.info['pid'] in excluded:
                continue
            if _is_stream_command(proc.info['cmdline'] or [], endpoint, prefix):
                found.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return found


def terminate_matching(endpoint: Optional[str] = None,
                       prefix: Optional[str] = None,
                       timeout: float = 5,
                       exclude_pids: Iterable[int] = ()) -> int:
    """
    Terminate matching streaming processes, killing those still alive
    after timeout.

    Returns:
        Number of processes signalled
    """
    procs = find_stream_processes(endpoint, prefix, exclude_pids)
    if not procs:
        return 0

    for proc in procs:
        try:
            logger.info(f"Terminating stream process {proc.pid} ({endpoint or prefix})")
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Could not terminate {proc.pid}: {e}")

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            logger.warning(f"Stream process {proc.pid} ignored SIGTERM, killing")
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Could not kill {proc.pid}: {e}")
    return len(procs)


class StreamSupervisor:
    """
    Owns the streaming subprocesses.

    Args:
        bitrate: ffmpeg audio bitrate.
        stagger_delay: Pause between two spawns of the same pass.
        stop_timeout: Grace period before SIGKILL.
        rtsp_prefix: "rtsp://host:port/", used by the shutdown sweep.
        spawner: subprocess.Popen compatible factory.
        sleep: Sleep function, replaced in tests.
        orphan_killer: Per-endpoint cleanup run before each spawn.
    """

    def __init__(self,
                 bitrate: str = '160k',
                 stagger_delay: float = 0.5,
                 stop_timeout: float = 5,
                 rtsp_prefix: str = 'rtsp://localhost:8554/',
                 spawner: Callable[..., Any] = subprocess.Popen,
                 sleep: Callable[[float], None] = time.sleep,
                 orphan_killer: Callable[..., int] = terminate_matching):
        self.bitrate = bitrate
        self.stagger_delay = stagger_delay
        self.stop_timeout = stop_timeout
        self.rtsp_prefix = rtsp_prefix
        self.spawner = spawner
        self.sleep = sleep
        self.orphan_killer = orphan_killer

        self._streams: Dict[str, StreamProcess] = {}
        self._lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._shut_down = False

    def streams(self) -> List[StreamProcess]:
        return sorted(self._streams.values(), key=lambda s: s.device.card_number)

    def request_stop(self):
        """Make a running pass return early. Safe from signal handlers."""
        self._stop_requested.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def reconcile(self, devices: Iterable[CaptureDevice]) -> ReconcileResult:
        """
        Bring the owned processes in line with the present devices.

        Calling it again with the same devices neither spawns nor
        terminates anything.
        """
        result = ReconcileResult()
        with self._lock:
            if self._shut_down or self.stop_requested:
                return result

            self._reap_dead(result)
            desired = self._desired(devices)

            for card_id in list(self._streams):
                stream = self._streams[card_id]
                wanted = desired.get(card_id)
                if wanted is None:
                    logger.info(f"Device {stream.device} disappeared, stopping its stream")
                    self._stop_stream(card_id)
                    result.stopped.append(card_id)
                elif self._signature(wanted) != self._signature(stream.device):
                    logger.info(f"Device {card_id} changed ({stream.endpoint_url} -> "
                                f"{wanted.endpoint_url}), restarting its stream")
                    self._stop_stream(card_id)
                    result.stopped.append(card_id)

            spawned = 0
            for card_id, device in desired.items():
                if card_id in self._streams:
                    continue
                if self.stop_requested:
                    logger.info("Stop requested, abandoning remaining stream starts")
                    break
                if spawned and self.stagger_delay > 0:
                    self.sleep(self.stagger_delay)
                try:
                    self._start_stream(device)
                    spawned += 1
                    result.started.append(card_id)
                except SpawnFailure as e:
                    logger.error(f"Failed to start stream for {device}: {e}")
                    result.failed.append(card_id)

        if result.changed or result.failed:
            logger.info(f"Reconcile: {len(result.started)} started, {len(result.stopped)} stopped, "
                        f"{len(result.died)} died, {len(result.failed)} failed, "
                        f"{len(self._streams)} running")
        return result

    def shutdown(self) -> int:
        """
        Stop every owned stream, then sweep any remaining streaming
        process under rtsp_prefix. Runs once; later calls return 0.
        """
        self.request_stop()
        with self._lock:
            if self._shut_down:
                return 0
            self._shut_down = True

            count = len(self._streams)
            logger.info(f"Shutting down {count} stream(s)...")
            for card_id in list(self._streams):
                self._stop_stream(card_id)

            try:
                swept = self.orphan_killer(prefix=self.rtsp_prefix, timeout=self.stop_timeout)
            except (psutil.Error, OSError) as e:
                logger.error(f"Shutdown sweep failed: {e}")
                swept = 0
            if swept:
                logger.info(f"Shutdown sweep terminated {swept} leftover stream process(es)")
            return count + swept

    def _desired(self, devices: Iterable[CaptureDevice]) -> Dict[str, CaptureDevice]:
        desired: Dict[str, CaptureDevice] = {}
        endpoints: Set[str] = set()
        for device in devices:
            if device.card_id in desired:
                logger.warning(f"Duplicate card id {device.card_id}, ignoring card {device.card_number}")
                continue
            if device.endpoint_url in endpoints:
                logger.warning(f"Endpoint {device.endpoint_url} already used, "
                               f"not streaming card {device.card_number} [{device.card_id}]")
                continue
            desired[device.card_id] = device
            endpoints.add(device.endpoint_url)
        return desired

    @staticmethod
    def _signature(device: CaptureDevice):
        return device.endpoint_url, device.alsa_input

    def _reap_dead(self, result: ReconcileResult):
        for card_id in list(self._streams):
            stream = self._streams[card_id]
            if stream.is_alive():
                continue
            code = stream.handle.poll()
            stream.state = StreamState.DEAD
            logger.warning(f"Stream for {stream.device} (pid {stream.pid}) exited with code {code}")
            del self._streams[card_id]
            result.died.append(card_id)

    def _start_stream(self, device: CaptureDevice):
        try:
            orphans = self.orphan_killer(endpoint=device.endpoint_url, timeout=self.stop_timeout,
                                         exclude_pids=[s.pid for s in self._streams.values() if s.pid])
            if orphans:
                logger.info(f"Cleaned up {orphans} leftover process(es) on {device.endpoint_url}")
        except (psutil.Error, OSError) as e:
            logger.warning(f"Orphan cleanup for {device.endpoint_url} failed: {e}")

        command = build_stream_command(device, self.bitrate)
        logger.info(f"Starting stream for {device} -> {device.endpoint_url}")
        logger.debug(f"Command: {' '.join(command)}")
        try:
            handle = self.spawner(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise SpawnFailure(str(e)) from e

        stream = StreamProcess(device=device, handle=handle, started_at=time.time())
        self._streams[device.card_id] = stream

        code = handle.poll()
        if code is not None:
            del self._streams[device.card_id]
            raise SpawnFailure(f"ffmpeg exited immediately with code {code}")

        stream.state = StreamState.RUNNING
        logger.info(f"Stream for {device.card_id} running (pid {stream.pid})")

    def _stop_stream(self, card_id: str):
        stream = self._streams.pop(card_id, None)
        if stream is None:
            return
        stream.state = StreamState.STOPPING
        handle = stream.handle
        try:
            handle.terminate()
            handle.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Stream for {card_id} (pid {stream.pid}) did not stop, killing")
            try:
                handle.kill()
                handle.wait(timeout=self.stop_timeout)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.error(f"Could not kill stream for {card_id}: {e}")
        except OSError as e:
            logger.debug(f"Stream for {card_id} already gone: {e}")
        stream.state = StreamState.DEAD
        logger.info(f"Stopped stream for {card_id}")
