"""Unit tests for configuration management."""

import pytest
from unittest.mock import patch

from kvm_cluster.config import AppConfig, ConfigLoader, config_loader
from kvm_cluster.exceptions import ConfigurationError


ENV_VARS = [
    "KVM_CLUSTER_LIBVIRT_URI",
    "KVM_CLUSTER_DATA_DIR",
    "KVM_CLUSTER_IMAGE_DIR",
    "KVM_CLUSTER_LOG_LEVEL",
    "KVM_CLUSTER_STOP_TIMEOUT",
    "KVM_CLUSTER_START_WAIT_TIMEOUT",
    "KVM_CLUSTER_OS_VARIANT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_config(tmp_path):
    def _write(content):
        path = tmp_path / "config.yaml"
        path.write_text(content)
        return str(path)

    return _write


class TestAppConfig:
    """Test AppConfig Pydantic model."""

    def test_defaults(self):
        config = AppConfig()
        assert config.libvirt_uri == "qemu:///system"
        assert config.log_level == "INFO"
        assert config.default_stop_timeout == 60
        assert config.start_wait_timeout == 30
        assert config.start_poll_interval == 1
        assert config.stop_poll_interval == 2
        assert config.parallel_poll_interval == 5
        assert (config.default_ram_mb, config.default_vcpus, config.default_disk_gb) == (
            2048,
            2,
            20,
        )
        assert config.default_os_variant == "generic"

    def test_log_level_is_normalized(self):
        assert AppConfig(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="log_level must be one of"):
            AppConfig(log_level="TRACE")

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ValueError):
            AppConfig(default_stop_timeout=0)
        with pytest.raises(ValueError):
            AppConfig(stop_poll_interval=0)

    def test_forbids_unknown_fields(self):
        with pytest.raises(ValueError):
            AppConfig(ssh_key_path="/key")

    def test_data_path_expands_home(self, monkeypatch):
        monkeypatch.setenv("HOME", "/home/ops")
        assert AppConfig(data_dir="~/clusters").data_path == "/home/ops/clusters"


class TestConfigLoader:
    """Test ConfigLoader class."""

    def test_no_file_returns_defaults(self):
        loader = ConfigLoader()
        with patch("os.path.exists", return_value=False):
            config = loader.load_config()
        assert config == AppConfig()

    def test_load_from_path(self, write_config):
        path = write_config(
            "libvirt_uri: qemu+ssh://hv01/system\n"
            "data_dir: /srv/clusters\n"
            "default_stop_timeout: 120\n"
            "log_level: WARNING\n"
        )
        config = ConfigLoader().load_config(path)
        assert config.libvirt_uri == "qemu+ssh://hv01/system"
        assert config.data_dir == "/srv/clusters"
        assert config.default_stop_timeout == 120
        assert config.log_level == "WARNING"

    def test_empty_file(self, write_config):
        assert ConfigLoader().load_config(write_config("")) == AppConfig()

    def test_invalid_yaml(self, write_config):
        path = write_config("key: value\n  invalid indentation\n")
        with pytest.raises(ConfigurationError, match="Failed to parse configuration file"):
            ConfigLoader().load_config(path)

    def test_non_mapping(self, write_config):
        with pytest.raises(ConfigurationError, match="Invalid configuration format"):
            ConfigLoader().load_config(write_config("- a\n- b\n"))

    def test_invalid_values(self, write_config):
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            ConfigLoader().load_config(write_config("default_stop_timeout: -10\n"))

    def test_unknown_fields(self, write_config):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config(write_config("bandwidth_limit: 10M\n"))

    def test_missing_file(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config("/nonexistent/path/config.yaml")

    def test_environment_overrides_file(self, write_config, monkeypatch):
        path = write_config("default_stop_timeout: 120\nlibvirt_uri: qemu:///session\n")
        monkeypatch.setenv("KVM_CLUSTER_STOP_TIMEOUT", "45")
        monkeypatch.setenv("KVM_CLUSTER_LIBVIRT_URI", "qemu:///system")
        monkeypatch.setenv("KVM_CLUSTER_OS_VARIANT", "rocky9")

        config = ConfigLoader().load_config(path)

        assert config.default_stop_timeout == 45
        assert config.libvirt_uri == "qemu:///system"
        assert config.default_os_variant == "rocky9"

    def test_unparseable_numeric_override_is_ignored(self, write_config, monkeypatch):
        monkeypatch.setenv("KVM_CLUSTER_START_WAIT_TIMEOUT", "soon")
        config = ConfigLoader().load_config(write_config("start_wait_timeout: 10\n"))
        assert config.start_wait_timeout == 10

    def test_global_config_loader(self):
        assert isinstance(config_loader, ConfigLoader)
