"""
Configuration Manager for the Compression Engine
Handles loading and managing configuration from YAML files and CLI arguments
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

CONFIG_FILES = [
    'video_compression.yaml',
    'image_compression.yaml',
    'logging.yaml',
]

PACKAGED_CONFIG_DIR = os.path.join(os.path.abspath(os.path.dirname(__file__)), 'config')


class ConfigManager:
    def __init__(self, config_dir: Optional[str] = "config"):
        self.config_dir = config_dir
        self.config: Dict[str, Any] = {}
        self.loaded_files: List[str] = []
        self._load_all_configs()

    def _load_all_configs(self):
        """Load packaged defaults, then layer any file of the same name from the config dir on top"""
        for config_file in CONFIG_FILES:
            candidates = [os.path.join(PACKAGED_CONFIG_DIR, config_file)]
            if self.config_dir and os.path.abspath(self.config_dir) != PACKAGED_CONFIG_DIR:
                candidates.append(os.path.join(self.config_dir, config_file))

            found = [path for path in candidates if os.path.exists(path)]
            if not found:
                logger.warning(f"Config file not found in '{self.config_dir}' or packaged defaults: {config_file}")
            for config_path in found:
                self._load_file(config_path)

    def _load_file(self, config_path: str):
        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                config_data = yaml.safe_load(file)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading configuration from {config_path}: {e}")
            raise

        if config_data:
            self._merge(self.config, config_data)
        self.loaded_files.append(config_path)
        logger.debug(f"Loaded config from {config_path}")

    @classmethod
    def _merge(cls, base: Dict[str, Any], overrides: Dict[str, Any]):
        """Deep-merge overrides into base so partial files only replace the keys they name"""
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                cls._merge(base[key], value)
            else:
                base[key] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: get('video_compression.second_pass.tolerance')
        """
        keys = key_path.split('.')
        value = self.config

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            logger.debug(f"Configuration key '{key_path}' not found, using default: {default}")
            return default

    def update_from_args(self, args_dict: Dict[str, Any]):
        """Update configuration with command line arguments"""
        overrides_applied = []
        for key, value in args_dict.items():
            if value is not None:
                old_value = self.get(key)
                self._set_nested_value(key, value)
                overrides_applied.append(f"{key}: {old_value} → {value}")
                logger.info(f"Configuration override applied: {key} = {value} (was: {old_value})")

        if overrides_applied:
            logger.info(f"Applied {len(overrides_applied)} CLI configuration overrides")
        else:
            logger.debug("No CLI configuration overrides to apply")

    def _set_nested_value(self, key_path: str, value: Any):
        """Set nested configuration value using dot notation"""
        keys = key_path.split('.')
        config_section = self.config

        for key in keys[:-1]:
            if not isinstance(config_section.get(key), dict):
                config_section[key] = {}
            config_section = config_section[key]

        config_section[keys[-1]] = value

    def get_temp_dir(self) -> str:
        """Directory for attempt outputs; created on demand"""
        temp_dir = self.get('general.temp_dir') or os.path.join(os.getcwd(), 'temp_files')
        os.makedirs(temp_dir, exist_ok=True)
        return temp_dir

    def validate_config(self) -> bool:
        """Validate that required configuration values are present and sane"""
        required_keys = [
            'video_compression.audio_bitrate_kbps',
            'video_compression.min_video_bitrate_kbps',
            'video_compression.second_pass.tolerance',
            'image_compression.default_quality',
        ]

        for key in required_keys:
            if self.get(key) is None:
                logger.error(f"Required configuration key missing: {key}")
                return False

        positive_numbers = [
            'video_compression.audio_bitrate_kbps',
            'video_compression.min_video_bitrate_kbps',
            'video_compression.fallback_duration_seconds',
            'video_compression.second_pass.min_video_bitrate_kbps',
            'video_compression.second_pass.audio_bitrate_kbps',
        ]
        for key in positive_numbers:
            value = self.get(key)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                logger.error(f"Invalid {key}: {value} (must be positive number)")
                return False

        tolerance = self.get('video_compression.second_pass.tolerance')
        if not isinstance(tolerance, (int, float)) or tolerance < 1.0:
            logger.error(f"Invalid second_pass.tolerance: {tolerance} (must be >= 1.0)")
            return False

        safety_margin = self.get('video_compression.second_pass.safety_margin', 0.9)
        if not isinstance(safety_margin, (int, float)) or not 0 < safety_margin <= 1:
            logger.error(f"Invalid second_pass.safety_margin: {safety_margin} (must be between 0 and 1)")
            return False

        if not self._validate_quality_tiers():
            return False

        if not self._validate_scale_thresholds():
            return False

        default_quality = self.get('image_compression.default_quality')
        if not isinstance(default_quality, int) or not 1 <= default_quality <= 100:
            logger.error(f"Invalid image_compression.default_quality: {default_quality} (must be 1-100)")
            return False

        logger.info("Configuration validation passed")
        return True

    def _validate_quality_tiers(self) -> bool:
        tiers = self.get('video_compression.quality_tiers', {})
        if not isinstance(tiers, dict):
            logger.error("video_compression.quality_tiers must be a dictionary")
            return False

        for name, entry in tiers.items():
            if not isinstance(entry, dict) or 'preset' not in entry or 'crf' not in entry:
                logger.error(f"Invalid quality tier '{name}': {entry} (needs preset and crf)")
                return False
            if not isinstance(entry['crf'], int) or not 0 <= entry['crf'] <= 63:
                logger.error(f"Invalid crf for quality tier '{name}': {entry['crf']}")
                return False
        return True

    def _validate_scale_thresholds(self) -> bool:
        thresholds = self.get('video_compression.scale_thresholds', [])
        if thresholds and not isinstance(thresholds, list):
            logger.error("video_compression.scale_thresholds must be a list")
            return False

        for item in thresholds or []:
            if not isinstance(item, dict):
                logger.error(f"Invalid scale threshold: {item} (must be a mapping)")
                return False
            ratio = item.get('max_ratio')
            height = item.get('max_height')
            if not isinstance(ratio, (int, float)) or not 0 < ratio <= 1:
                logger.error(f"Invalid scale threshold ratio: {ratio} (must be between 0 and 1)")
                return False
            if not isinstance(height, int) or height <= 0:
                logger.error(f"Invalid scale threshold height: {height} (must be positive integer)")
                return False
        return True
