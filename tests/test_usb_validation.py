from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from rtspmic.usb_validation import USBValidation, ValidationError


@pytest.mark.parametrize("value", ["2e88", "0d8c", "ffff", "0000"])
def test_valid_hex_ids(value):
    assert USBValidation.validate_hex_id(value) == value


@pytest.mark.parametrize("value", ["2E88", "2e8", "2e880", "xyz1", "", None, "2e 8"])
def test_invalid_hex_ids(value):
    with pytest.raises(ValidationError):
        USBValidation.validate_hex_id(value, 'vendor ID')


@pytest.mark.parametrize("value", ["movo-x1-mini", "mic1", "a", "front-left-2", "a" * 65, "m-" * 100])
def test_valid_friendly_names(value):
    assert USBValidation.validate_friendly_name(value) == value


@pytest.mark.parametrize("value", ["Movo", "my mic", "mic_1", "mic!", "", "mic/1"])
def test_invalid_friendly_names(value):
    with pytest.raises(ValidationError):
        USBValidation.validate_friendly_name(value)


def test_validation_error_is_value_error():
    assert issubclass(ValidationError, ValueError)


def test_port_pattern_none_means_no_port():
    assert USBValidation.validate_port_pattern(None) is None
    assert USBValidation.validate_port_pattern('') is None


@pytest.mark.parametrize("value", ["3-1.4", "usb-3f980000.usb-1.2", "usb-0000:00:14.0-1.4"])
def test_valid_port_patterns(value):
    assert USBValidation.validate_port_pattern(value) == value


@pytest.mark.parametrize("value", ['3-1"*', "3-1 4", "*", "3-1.4\n"])
def test_port_patterns_that_would_break_the_rule(value):
    with pytest.raises(ValidationError):
        USBValidation.validate_port_pattern(value)


def test_is_valid_usb_path():
    assert USBValidation.is_valid_usb_path("usb-3.4")
    assert USBValidation.is_valid_usb_path("usb-0000:00:14.0")
    assert not USBValidation.is_valid_usb_path("3-1.4")
    assert not USBValidation.is_valid_usb_path("usb")
    assert not USBValidation.is_valid_usb_path(None)


def test_sanitize_stream_name():
    assert USBValidation.sanitize_stream_name("USBAudio") == "usbaudio"
    assert USBValidation.sanitize_stream_name("Movo-X1_Mini") == "movox1mini"
    assert USBValidation.sanitize_stream_name("---") == ""


def test_sanitize_serial():
    assert USBValidation.sanitize_serial(" AB12:cd34 ") == "AB12cd34"
    assert USBValidation.sanitize_serial("!!!") is None
    assert USBValidation.sanitize_serial(None) is None


def test_sanitize_hex_id():
    assert USBValidation.sanitize_hex_id("2E88") == "2e88"
    assert USBValidation.sanitize_hex_id("0x1") == "0001"
    assert USBValidation.sanitize_hex_id("") == "0000"


def test_default_friendly_name():
    assert USBValidation.default_friendly_name("USB Audio Device") == "usb-audio-device"
    assert USBValidation.default_friendly_name("Mic_2!") == "mic2"


def test_sanitize_timestamp():
    assert USBValidation.sanitize_timestamp("2024-05-01T10:00:00") == "2024-05-01T10:00:00"
    assert USBValidation.sanitize_timestamp("yesterday") != "yesterday"
