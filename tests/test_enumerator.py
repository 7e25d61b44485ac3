"""
Tests for capture device enumeration over a fake /proc/asound tree.
"""

import logging
from datetime import datetime
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from rtspmic.enumerator import CaptureDevice, CaptureEnumerator
from rtspmic.sound_rules import MatchMode, SoundRuleStore

PI_CARDS = (
    " 0 [bcm2835_headpho]: bcm2835_headpho - bcm2835 Headphones\n"
    "                      bcm2835 Headphones\n"
    " 1 [USBAudio       ]: USB-Audio - USB Audio Device\n"
    "                      C-Media Electronics Inc. USB Audio Device at usb-3f980000.usb-1.2, full speed\n"
)

PI_ARECORD = (
    "**** List of CAPTURE Hardware Devices ****\n"
    "card 1: USBAudio [USB Audio Device], device 0: USB Audio [USB Audio]\n"
    "  Subdevices: 1/1\n"
    "  Subdevice #0: subdevice #0\n"
)


def _proc(root: Path, cards: str, card_dirs=None):
    """
    Build a fake /proc/asound.

    card_dirs maps card number -> (usbid or None, list of pcm directory names).
    """
    root.mkdir(parents=True, exist_ok=True)
    (root / 'cards').write_text(cards)
    for number, (usbid, pcms) in (card_dirs or {}).items():
        card_dir = root / f"card{number}"
        card_dir.mkdir()
        if usbid:
            (card_dir / 'usbid').write_text(usbid + "\n")
        for pcm in pcms:
            (card_dir / pcm).mkdir()
    return root


def _sysfs_card(sound_root: Path, devices_root: Path, number: int, port: str):
    """Symlink /sys/class/sound/cardN into a fake device tree under port `port`."""
    bus = port.split('-')[0]
    target = devices_root / f"usb{bus}" / port / f"{port}:1.0" / "sound" / f"card{number}"
    target.mkdir(parents=True)
    sound_root.mkdir(parents=True, exist_ok=True)
    (sound_root / f"card{number}").symlink_to(target)


@pytest.fixture
def pi_proc(tmp_path):
    return _proc(tmp_path / 'asound', PI_CARDS, {
        0: (None, ['pcm0p']),
        1: ('0d8c:0014', ['pcm0c', 'pcm0p']),
    })


def test_raspberry_pi_usb_audio(pi_proc, tmp_path):
    enumerator = CaptureEnumerator(proc_root=pi_proc, sysfs_sound_root=tmp_path / 'sound',
                                   capture_lister=lambda: PI_ARECORD)
    devices = enumerator.list_capture_devices()

    assert len(devices) == 1
    device = devices[0]
    assert device.card_number == 1
    assert device.card_id == 'USBAudio'
    assert device.capture_device_index == 0
    assert device.resolved_stream_name == 'usbaudio'
    assert device.endpoint_url == 'rtsp://localhost:8554/usbaudio'
    assert device.usb_info == 'USB Audio Device'
    assert (device.vendor_id, device.product_id) == ('0d8c', '0014')
    assert device.alsa_input == 'plughw:CARD=USBAudio,DEV=0'
    assert not device.is_mapped


def test_denylisted_card_is_skipped_even_with_capture(tmp_path, caplog):
    proc = _proc(tmp_path / 'asound', PI_CARDS, {0: (None, ['pcm0c']), 1: ('0d8c:0014', ['pcm0c'])})
    enumerator = CaptureEnumerator(proc_root=proc, sysfs_sound_root=tmp_path / 'sound',
                                   capture_lister=lambda: None)
    with caplog.at_level(logging.INFO):
        devices = enumerator.list_capture_devices()

    assert [d.card_id for d in devices] == ['USBAudio']
    assert "Skipping system audio device: bcm2835_headpho" in caplog.text


def test_playback_only_card_is_skipped(tmp_path):
    cards = " 2 [Speaker        ]: USB-Audio - USB Speaker\n"
    proc = _proc(tmp_path / 'asound', cards, {2: ('1234:5678', ['pcm0p'])})
    enumerator = CaptureEnumerator(proc_root=proc, sysfs_sound_root=tmp_path / 'sound',
                                   capture_lister=lambda: "")
    assert enumerator.list_capture_devices() == []


def test_lowest_capture_index_without_arecord(tmp_path):
    cards = " 1 [Interface      ]: USB-Audio - Focusrite Interface\n"
    proc = _proc(tmp_path / 'asound', cards, {1: ('1235:8211', ['pcm2c', 'pcm1c', 'pcm0p'])})
    enumerator = CaptureEnumerator(proc_root=proc, sysfs_sound_root=tmp_path / 'sound',
                                   capture_lister=lambda: None)
    devices = enumerator.list_capture_devices()

    assert len(devices) == 1
    assert devices[0].capture_device_index == 1
    assert devices[0].alsa_input == 'plughw:CARD=Interface,DEV=1'


def test_unknown_capture_status_is_reported_unmapped(tmp_path, caplog):
    cards = " 3 [Mystery        ]: USB-Audio - Mystery Mic\n"
    proc = _proc(tmp_path / 'asound', cards)
    enumerator = CaptureEnumerator(proc_root=proc, sysfs_sound_root=tmp_path / 'sound',
                                   capture_lister=lambda: None)
    with caplog.at_level(logging.WARNING):
        devices = enumerator.list_capture_devices()

    assert [d.card_id for d in devices] == ['Mystery']
    assert devices[0].capture_device_index == 0
    assert not devices[0].is_mapped
    assert "Cannot tell whether card 3" in caplog.text


def test_unreadable_card_is_reported_unmapped(tmp_path, monkeypatch, caplog):
    cards = (
        " 1 [MicA           ]: USB-Audio - Mic A\n"
        " 2 [Locked         ]: USB-Audio - Locked Mic\n"
        " 3 [MicC           ]: USB-Audio - Mic C\n"
    )
    proc = _proc(tmp_path / 'asound', cards, {
        1: ('2e88:4610', ['pcm0c']),
        2: ('0d8c:0014', ['pcm1c']),
        3: ('1686:0045', ['pcm0c']),
    })
    enumerator = CaptureEnumerator(proc_root=proc, sysfs_sound_root=tmp_path / 'sound',
                                   capture_lister=lambda: None)
    scan = enumerator._capture_dirs

    def locked_scan(card):
        if card.number == 2:
            raise PermissionError(13, "Permission denied", str(proc / 'card2'))
        return scan(card)

    monkeypatch.setattr(enumerator, '_capture_dirs', locked_scan)
    with caplog.at_level(logging.ERROR):
        devices = enumerator.list_capture_devices()

    assert [d.card_id for d in devices] == ['MicA', 'Locked', 'MicC']
    locked = devices[1]
    assert not locked.is_mapped
    assert locked.capture_device_index == 0
    assert locked.vendor_id is None
    assert locked.endpoint_url == 'rtsp://localhost:8554/locked'
    assert devices[0].vendor_id == '2e88'
    assert "Could not classify card 2" in caplog.text


def test_no_cards(tmp_path):
    proc = _proc(tmp_path / 'asound', "--- no soundcards ---\n")
    enumerator = CaptureEnumerator(proc_root=proc, capture_lister=lambda: None)
    assert enumerator.list_capture_devices() == []

    missing = CaptureEnumerator(proc_root=tmp_path / 'nowhere', capture_lister=lambda: None)
    assert missing.list_capture_devices() == []


def test_friendly_name_from_rule_store(tmp_path):
    cards = (
        " 1 [movoleft       ]: USB-Audio - MOVO X1 MINI\n"
        " 2 [MINI           ]: USB-Audio - MOVO X1 MINI\n"
    )
    proc = _proc(tmp_path / 'asound', cards, {
        1: ('2e88:4610', ['pcm0c']),
        2: ('2e88:4610', ['pcm0c']),
    })
    sound_root = tmp_path / 'class' / 'sound'
    devices_root = tmp_path / 'devices'
    _sysfs_card(sound_root, devices_root, 1, '1-1.4')
    _sysfs_card(sound_root, devices_root, 2, '1-1.3')

    store = SoundRuleStore(tmp_path / 'rules' / '99-usb-soundcards.rules',
                           clock=lambda: datetime(2024, 5, 1))
    store.add_rule('2e88', '4610', '1-1.4', MatchMode.PORT_PATTERN, 'movoleft')

    enumerator = CaptureEnumerator(rule_store=store, proc_root=proc, sysfs_sound_root=sound_root,
                                   capture_lister=lambda: None)
    devices = enumerator.list_capture_devices()

    assert [d.card_number for d in devices] == [1, 2]
    assert devices[0].friendly_name == 'movoleft'
    assert devices[0].is_mapped
    # the second identical device sits on another port
    assert devices[1].friendly_name is None
    assert devices[1].endpoint_url == 'rtsp://localhost:8554/mini'


def test_stale_card_id_is_warned(tmp_path, caplog):
    cards = " 1 [MINI           ]: USB-Audio - MOVO X1 MINI\n"
    proc = _proc(tmp_path / 'asound', cards, {1: ('2e88:4610', ['pcm0c'])})
    store = SoundRuleStore(tmp_path / 'rules' / 'x.rules')
    store.add_rule('2e88', '4610', None, MatchMode.BASIC, 'movo')

    enumerator = CaptureEnumerator(rule_store=store, proc_root=proc,
                                   sysfs_sound_root=tmp_path / 'sound', capture_lister=lambda: None)
    with caplog.at_level(logging.WARNING):
        devices = enumerator.list_capture_devices()

    assert devices[0].friendly_name == 'movo'
    assert devices[0].resolved_stream_name == 'mini'
    assert "still has its old id" in caplog.text


def test_stream_name_fallback_and_custom_endpoint(tmp_path):
    cards = " 4 [___            ]: USB-Audio - Odd Card\n"
    proc = _proc(tmp_path / 'asound', cards, {4: (None, ['pcm0c'])})
    enumerator = CaptureEnumerator(proc_root=proc, sysfs_sound_root=tmp_path / 'sound',
                                   rtsp_host='10.0.0.5', rtsp_port=9554,
                                   capture_lister=lambda: None)
    devices = enumerator.list_capture_devices()

    assert devices[0].resolved_stream_name == 'card4'
    assert devices[0].endpoint_url == 'rtsp://10.0.0.5:9554/card4'


def test_capture_device_str():
    device = CaptureDevice(card_number=1, card_id='USBAudio', description='USB-Audio - USB Audio Device',
                           usb_info='USB Audio Device', capture_device_index=0,
                           resolved_stream_name='usbaudio',
                           endpoint_url='rtsp://localhost:8554/usbaudio')
    assert str(device) == 'card 1 [USBAudio] device 0'
