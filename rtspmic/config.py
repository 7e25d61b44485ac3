import json
import logging
import re
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)

HOST_PATTERN = re.compile(r'^[A-Za-z0-9.-]+$')
BITRATE_PATTERN = re.compile(r'^[0-9]{2,3}k$')
UNIT_PATTERN = re.compile(r'^[A-Za-z0-9@._-]+\.service$')


class ConfigManager:
    """Manages daemon configuration"""

    DEFAULT_CONFIG = {
        'rtsp_host': 'localhost',
        'rtsp_port': 8554,
        'stagger_delay': 0.5,
        'rescan_interval': 30,
        'hotplug_settle': 1.0,
        'stop_timeout': 5,
        'system_card_denylist': ['bcm2835_headpho', 'vc4-hdmi', 'HDMI'],
        'audio_bitrate': '160k',
        'ensure_rtsp_server': True,
        'rtsp_server_unit': 'mediamtx.service',
        'rules_path': '/etc/udev/rules.d/99-usb-soundcards.rules',
        'status_path': '/run/audio-rtsp/status.json',
    }

    CONFIG_PATH = Path('/etc/audio-rtsp/config.json')

    RULES_DIR = Path('/etc/udev/rules.d')
    SAFE_LOG_DIRS = ['/var/log', '/tmp']

    @staticmethod
    def _clamp(config: Dict[str, Any], key: str, default, low, high, cast=float):
        value = config.get(key, default)
        try:
            value = cast(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid {key} value, using default {default}")
            return default
        if value < low:
            logger.warning(f"{key} too low ({value}), using minimum {low}")
            return low
        if value > high:
            logger.warning(f"{key} too high ({value}), using maximum {high}")
            return high
        return value

    @classmethod
    def validate_config(cls, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate configuration values.

        Invalid values are replaced by defaults or clamped into range with
        a logged warning; this never raises.

        Args:
            config: Raw configuration dictionary

        Returns:
            Validated configuration
        """
        defaults = cls.DEFAULT_CONFIG
        validated = {}

        host = config.get('rtsp_host', defaults['rtsp_host'])
        if not isinstance(host, str) or not HOST_PATTERN.fullmatch(host):
            logger.warning(f"Invalid rtsp_host '{host}', using '{defaults['rtsp_host']}'")
            host = defaults['rtsp_host']
        validated['rtsp_host'] = host

        validated['rtsp_port'] = cls._clamp(config, 'rtsp_port', defaults['rtsp_port'], 1, 65535, int)
        validated['stagger_delay'] = cls._clamp(config, 'stagger_delay', defaults['stagger_delay'], 0, 5)
        validated['rescan_interval'] = cls._clamp(config, 'rescan_interval', defaults['rescan_interval'], 5, 3600)
        validated['hotplug_settle'] = cls._clamp(config, 'hotplug_settle', defaults['hotplug_settle'], 0, 10)
        validated['stop_timeout'] = cls._clamp(config, 'stop_timeout', defaults['stop_timeout'], 1, 30)

        denylist = config.get('system_card_denylist', defaults['system_card_denylist'])
        if not isinstance(denylist, list) or not all(isinstance(x, str) for x in denylist):
            logger.warning("Invalid system_card_denylist, using default")
            denylist = list(defaults['system_card_denylist'])
        validated['system_card_denylist'] = denylist

        bitrate = config.get('audio_bitrate', defaults['audio_bitrate'])
        if not isinstance(bitrate, str) or not BITRATE_PATTERN.fullmatch(bitrate):
            logger.warning(f"Invalid audio_bitrate '{bitrate}', using '{defaults['audio_bitrate']}'")
            bitrate = defaults['audio_bitrate']
        validated['audio_bitrate'] = bitrate

        validated['ensure_rtsp_server'] = bool(config.get('ensure_rtsp_server', defaults['ensure_rtsp_server']))

        unit = config.get('rtsp_server_unit', defaults['rtsp_server_unit'])
        if not isinstance(unit, str) or not UNIT_PATTERN.fullmatch(unit):
            logger.warning(f"Invalid rtsp_server_unit '{unit}', using '{defaults['rtsp_server_unit']}'")
            unit = defaults['rtsp_server_unit']
        validated['rtsp_server_unit'] = unit

        # Rules must stay where udev reads them
        rules_path = config.get('rules_path', defaults['rules_path'])
        try:
            resolved = Path(rules_path).resolve()
            if resolved.parent != cls.RULES_DIR.resolve() or resolved.suffix != '.rules':
                logger.warning(f"rules_path {rules_path} not a .rules file in {cls.RULES_DIR}, ignoring")
                rules_path = defaults['rules_path']
        except (TypeError, ValueError, OSError) as e:
            logger.warning(f"Invalid rules_path: {e}")
            rules_path = defaults['rules_path']
        validated['rules_path'] = str(rules_path)

        status_path = config.get('status_path', defaults['status_path'])
        if not isinstance(status_path, str) or not Path(status_path).is_absolute():
            logger.warning(f"Invalid status_path '{status_path}', using default")
            status_path = defaults['status_path']
        validated['status_path'] = status_path

        if 'log_file' in config:
            try:
                log_file = Path(config['log_file']).resolve()
                if any(str(log_file).startswith(d + '/') for d in cls.SAFE_LOG_DIRS):
                    validated['log_file'] = str(log_file)
                else:
                    logger.warning(f"Log file path {log_file} not in safe directory, ignoring")
            except (TypeError, ValueError, OSError) as e:
                logger.warning(f"Invalid log_file path: {e}")

        return validated

    @classmethod
    def load_config(cls) -> Dict[str, Any]:
        """Load configuration from file or return defaults"""
        if cls.CONFIG_PATH.exists():
            try:
                if cls.CONFIG_PATH.is_symlink():
                    logger.error(f"Config path {cls.CONFIG_PATH} is a symlink, refusing to load")
                    return cls.default_config()

                with open(cls.CONFIG_PATH) as f:
                    raw_config = json.load(f)

                if not isinstance(raw_config, dict):
                    logger.error("Config file has invalid format (expected object)")
                    return cls.default_config()

                validated = cls.validate_config(raw_config)
                return {**cls.default_config(), **validated}
            except json.JSONDecodeError as e:
                logger.error(f"Invalid JSON in config file: {e}")
            except OSError as e:
                logger.error(f"Error loading config: {e}")

        return cls.default_config()

    @classmethod
    def default_config(cls) -> Dict[str, Any]:
        config = dict(cls.DEFAULT_CONFIG)
        config['system_card_denylist'] = list(cls.DEFAULT_CONFIG['system_card_denylist'])
        return config
