"""
Configuration Manager for the calculation engine
"""

import logging
import os
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), 'default_config.yaml')


class ConfigManager:
    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize ConfigManager with the path to the configuration file.

        Args:
            config_path: Path to YAML configuration file (packaged defaults if None)
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self.config: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)

        self._load_config()

    def _load_config(self) -> None:
        """
        Load configuration from YAML file.
        """
        self.logger.info(f"Loading configuration from: {self.config_path}")

        if not os.path.exists(self.config_path):
            self.logger.error(f"Configuration file not found: {self.config_path}")
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, 'r') as config_file:
                self.config = yaml.safe_load(config_file) or {}
        except yaml.YAMLError as e:
            self.logger.exception(f"Error loading configuration: {str(e)}")
            raise

        if self.config:
            self.logger.info(f"Configuration loaded with sections: {list(self.config.keys())}")
        else:
            self.logger.warning("Configuration file is empty")

    def get(self, section: str, key: str = None, default: Any = None) -> Any:
        """
        Get configuration value by section and key.

        Args:
            section: Configuration section
            key: Configuration key (optional)
            default: Default value if key is not found

        Returns:
            Configuration value or default
        """
        if key is None:
            return self.config.get(section, default)

        section_data = self.config.get(section)
        if not isinstance(section_data, dict):
            self.logger.debug(f"Configuration section not found: [{section}]")
            return default
        return section_data.get(key, default)

    def get_section(self, section: str) -> Dict[str, Any]:
        section_data = self.config.get(section)
        return section_data if isinstance(section_data, dict) else {}

    def get_all(self) -> Dict[str, Any]:
        return self.config

    def set(self, section: str, key: str, value: Any) -> None:
        self.config.setdefault(section, {})[key] = value

    def merge(self, overrides: Dict[str, Dict[str, Any]]) -> None:
        """Overlay section dictionaries on top of the loaded configuration."""
        for section, values in (overrides or {}).items():
            for key, value in (values or {}).items():
                self.set(section, key, value)

    def save(self, output_path: Optional[str] = None) -> None:
        """
        Save configuration to YAML file.

        Args:
            output_path: Path to save configuration (uses current config path by default)
        """
        save_path = output_path or self.config_path
        self.logger.info(f"Saving configuration to: {save_path}")

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(save_path, 'w') as config_file:
            yaml.safe_dump(self.config, config_file, default_flow_style=False)
