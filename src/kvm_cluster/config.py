"""
Configuration management for KVM cluster operations.

This module handles loading and validating configuration from files and environment variables.
"""

import os
import yaml
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict

from .exceptions import ConfigurationError
from .logging import logger


DEFAULT_CONFIG_PATHS: List[str] = [
    os.path.expanduser("~/.config/kvm-cluster/config.yaml"),
    "/etc/kvm-cluster/config.yaml",
    "config.yaml",
]


class AppConfig(BaseModel):
    """Application configuration with Pydantic validation.

    Configuration can be loaded from:
    1. Explicit config file path
    2. Default config file locations
    3. Environment variables (highest priority)

    Environment variables:
    - KVM_CLUSTER_LIBVIRT_URI: libvirt connection URI
    - KVM_CLUSTER_DATA_DIR: Directory holding cluster, template and backup records
    - KVM_CLUSTER_IMAGE_DIR: Directory for provisioned disk images
    - KVM_CLUSTER_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - KVM_CLUSTER_STOP_TIMEOUT: Default graceful stop timeout in seconds
    - KVM_CLUSTER_START_WAIT_TIMEOUT: How long a started VM may take to report running
    - KVM_CLUSTER_OS_VARIANT: Default virt-install OS variant
    """

    model_config = ConfigDict(extra="forbid")  # Reject unknown fields

    libvirt_uri: str = Field(default="qemu:///system", description="libvirt URI")
    data_dir: str = Field(
        default="~/.config/kvm-cluster", description="Record storage root"
    )
    image_dir: str = Field(
        default="/var/lib/libvirt/images", description="Disk image directory"
    )
    log_level: str = Field(default="INFO", description="Logging level")

    # Lifecycle timing
    default_stop_timeout: int = Field(
        default=60, gt=0, description="Graceful stop timeout in seconds"
    )
    start_wait_timeout: int = Field(
        default=30, ge=0, description="Seconds to wait for a started VM to run"
    )
    start_poll_interval: int = Field(default=1, gt=0)
    stop_poll_interval: int = Field(default=2, gt=0)
    parallel_poll_interval: int = Field(default=5, gt=0)

    # Provisioning defaults for clusters without recorded sizing
    default_ram_mb: int = Field(default=2048, gt=0)
    default_vcpus: int = Field(default=2, gt=0)
    default_disk_gb: int = Field(default=20, gt=0)
    default_os_variant: str = "generic"
    default_network: str = "default"
    default_storage_pool: str = "default"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v

    @property
    def data_path(self) -> str:
        return os.path.expanduser(self.data_dir)


class ConfigLoader:
    """Loads and validates configuration."""

    def __init__(self) -> None:
        self.logger = logger

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load configuration from file and environment variables.

        Priority (highest to lowest):
        1. Environment variables
        2. Config file (explicit path or default locations)
        3. Default values

        Args:
            config_path: Path to configuration file. If None, looks in default locations.

        Returns:
            AppConfig: Loaded configuration
        """
        if config_path:
            config_data = self._load_data_from_file(config_path)
        else:
            config_data = {}
            for path in DEFAULT_CONFIG_PATHS:
                if os.path.exists(path):
                    self.logger.info(f"Loading configuration from {path}", path=path)
                    config_data = self._load_data_from_file(path)
                    break

            if not config_data:
                self.logger.debug(
                    "No configuration file found, using defaults and environment variables"
                )

        config_data = self._apply_env_overrides(config_data)

        try:
            return AppConfig(**config_data)
        except ValueError as e:
            self.logger.error(f"Invalid configuration: {e}", exc_info=True)
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        env_mappings = {
            "KVM_CLUSTER_LIBVIRT_URI": "libvirt_uri",
            "KVM_CLUSTER_DATA_DIR": "data_dir",
            "KVM_CLUSTER_IMAGE_DIR": "image_dir",
            "KVM_CLUSTER_LOG_LEVEL": "log_level",
            "KVM_CLUSTER_STOP_TIMEOUT": ("default_stop_timeout", int),
            "KVM_CLUSTER_START_WAIT_TIMEOUT": ("start_wait_timeout", int),
            "KVM_CLUSTER_OS_VARIANT": "default_os_variant",
        }

        for env_var, mapping in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                if isinstance(mapping, tuple):
                    config_key, converter = mapping
                    try:
                        config_data[config_key] = converter(env_value)
                        self.logger.debug(f"Applied environment override: {env_var}={env_value}")
                    except (ValueError, TypeError) as e:
                        self.logger.warning(
                            f"Invalid value for {env_var}: {env_value}, ignoring. Error: {e}"
                        )
                else:
                    config_data[mapping] = env_value
                    self.logger.debug(f"Applied environment override: {env_var}={env_value}")

        return config_data

    def _load_data_from_file(self, path: str) -> dict:
        """Load configuration data from a specific file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(
                f"Failed to parse configuration file {path}: {e}",
                path=path,
                exc_info=True,
            )
            raise ConfigurationError(f"Failed to parse configuration file: {e}")
        except OSError as e:
            self.logger.error(
                f"Failed to load configuration from {path}: {e}",
                path=path,
                exc_info=True,
            )
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if data is None:
            # Empty file
            return {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration format in {path}")

        return data


# Global config loader
config_loader = ConfigLoader()
