"""Unit tests for the command-line interface."""

import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from kvm_cluster.cli import cli
from kvm_cluster.config import AppConfig
from kvm_cluster.models import VMState


@pytest.fixture
def invoke(coordinator, app_config):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(
            cli, list(args), obj={"config": app_config, "coordinator": coordinator}
        )

    return _invoke


@pytest.fixture
def web_cluster(invoke, fake_driver):
    fake_driver.add_vms(["web1", "web2"])
    result = invoke("cluster", "create", "web", "-m", "web1", "-m", "web2", "--startup-delay", "0")
    assert result.exit_code == 0, result.output
    return result


class TestClusterCommands:
    @pytest.mark.unit
    def test_create_and_info(self, invoke, web_cluster):
        assert "Created cluster 'web' with 2 member(s)" in web_cluster.output

        result = invoke("-q", "-o", "json", "cluster", "info", "web")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["members"] == ["web1", "web2"]
        assert data["shutdown_order"] == "reverse"

    @pytest.mark.unit
    def test_create_with_missing_vm(self, invoke, fake_driver):
        fake_driver.add_vms(["web1"])
        result = invoke("cluster", "create", "web", "-m", "web1", "-m", "web2")
        assert result.exit_code == 1
        assert "VM 'web2' for cluster 'web' does not exist" in result.output

    @pytest.mark.unit
    def test_start_success(self, invoke, web_cluster, fake_driver):
        result = invoke("cluster", "start", "web")
        assert result.exit_code == 0, result.output
        assert "✓ web1" in result.output
        assert fake_driver.vms["web2"] is VMState.RUNNING

    @pytest.mark.unit
    def test_partial_start_exit_codes(self, invoke, web_cluster, fake_driver):
        fake_driver.fail("start", "web2")

        relaxed = invoke("cluster", "start", "web")
        assert relaxed.exit_code == 0
        assert "Warning: 1 member(s) failed: web2" in relaxed.output

        fake_driver.vms["web1"] = VMState.STOPPED
        strict = invoke("cluster", "start", "web", "--strict")
        assert strict.exit_code == 2

    @pytest.mark.unit
    def test_total_failure_exits_1(self, invoke, web_cluster, fake_driver):
        fake_driver.fail("start", "web1")
        fake_driver.fail("start", "web2")
        result = invoke("cluster", "start", "web", "--parallel")
        assert result.exit_code == 1

    @pytest.mark.unit
    def test_stop_timeout_suggests_force_stop(self, invoke, web_cluster, fake_driver):
        fake_driver.vms.update({"web1": VMState.RUNNING, "web2": VMState.RUNNING})
        fake_driver.stuck.add("web1")

        result = invoke("cluster", "stop", "web", "--timeout", "4")

        assert result.exit_code == 0
        assert "cluster force-stop web" in result.output

        forced = invoke("cluster", "force-stop", "web")
        assert forced.exit_code == 0
        assert fake_driver.vms["web1"] is VMState.STOPPED

    @pytest.mark.unit
    def test_add_and_remove(self, invoke, web_cluster, fake_driver):
        fake_driver.add_vms(["web3"])
        assert "Added 'web3'" in invoke("cluster", "add", "web", "web3").output
        assert "already a member" in invoke("cluster", "add", "web", "web3").output
        assert "Removed 'web3'" in invoke("cluster", "remove", "web", "web3").output

    @pytest.mark.unit
    def test_delete_requires_yes(self, invoke, web_cluster, store):
        refused = invoke("cluster", "delete", "web")
        assert refused.exit_code == 1
        assert "confirmation" in refused.output
        assert store.cluster_exists("web")

        result = invoke("cluster", "delete", "web", "--yes")
        assert result.exit_code == 0
        assert not store.cluster_exists("web")

    @pytest.mark.unit
    def test_scale(self, invoke, web_cluster, store):
        assert invoke("cluster", "scale", "web", "add", "1").exit_code == 0
        assert store.load_cluster("web").vm_count == 3

        too_many = invoke("cluster", "scale", "web", "remove", "3")
        assert too_many.exit_code == 1
        assert "at least one must remain" in too_many.output

    @pytest.mark.unit
    def test_health_json(self, invoke, web_cluster, fake_driver):
        fake_driver.vms["web1"] = VMState.RUNNING

        result = invoke("-o", "json", "cluster", "health", "web")

        data = json.loads(result.output)
        assert data["score"] == 50
        assert data["status"] == "degraded"

    @pytest.mark.unit
    def test_list_and_dashboard(self, invoke, web_cluster):
        listing = invoke("cluster", "list")
        assert "web" in listing.output

        dashboard = invoke("-o", "yaml", "cluster", "dashboard")
        rows = yaml.safe_load(dashboard.output)
        assert rows[0]["name"] == "web"
        assert rows[0]["running"] == 0

    @pytest.mark.unit
    def test_backup_and_backups(self, invoke, web_cluster):
        result = invoke("cluster", "backup", "web", "--label", "nightly")
        assert result.exit_code == 0, result.output
        assert "Captured 2 of 2 member(s)" in result.output

        listing = invoke("-o", "json", "cluster", "backups", "web")
        assert [b["label"] for b in json.loads(listing.output)] == ["nightly"]

    @pytest.mark.unit
    def test_unknown_cluster(self, invoke):
        result = invoke("cluster", "info", "nope")
        assert result.exit_code == 1
        assert "Cluster 'nope' not found" in result.output


class TestTemplateCommands:
    @pytest.mark.unit
    def test_template_to_cluster(self, invoke, fake_driver):
        created = invoke("template", "create", "t1", "--ram", "1024", "--vcpus", "1", "--count", "2")
        assert created.exit_code == 0, created.output

        shown = invoke("template", "show", "t1")
        assert "members: t1-vm1, t1-vm2" in shown.output

        cluster = invoke("cluster", "from-template", "lab", "t1")
        assert cluster.exit_code == 0, cluster.output
        assert "t1-vm1, t1-vm2" in cluster.output
        assert fake_driver.provisioned == []

        listing = invoke("-o", "json", "template", "list")
        assert json.loads(listing.output)[0]["ram_mb"] == 1024


class TestConfigCommands:
    @pytest.mark.unit
    def test_config_show(self, invoke):
        data = yaml.safe_load(invoke("config", "show").output)
        assert data["libvirt_uri"] == "qemu:///system"

    @pytest.mark.unit
    def test_config_init(self, invoke, tmp_path):
        config_dir = str(tmp_path / "cfg")
        result = invoke("config", "init", "--config-dir", config_dir)
        assert result.exit_code == 0
        written = yaml.safe_load((tmp_path / "cfg" / "config.yaml").read_text())
        assert written["default_stop_timeout"] == 60

        again = invoke("config", "init", "--config-dir", config_dir)
        assert again.exit_code == 1

    @pytest.mark.unit
    def test_config_path(self, invoke):
        result = invoke("config", "path")
        assert "Configuration search paths" in result.output


class TestDriverLifecycle:
    @pytest.mark.unit
    def test_driver_closed_after_command(self, tmp_path):
        app_config = AppConfig(data_dir=str(tmp_path / "data"))

        with patch("kvm_cluster.cli.LibvirtDriver") as driver_cls:
            result = CliRunner().invoke(cli, ["cluster", "list"], obj={"config": app_config})

        assert result.exit_code == 0, result.output
        assert "No clusters found" in result.output
        driver_cls.return_value.close.assert_called_once_with()

    @pytest.mark.unit
    def test_driver_closed_after_failed_command(self, tmp_path):
        app_config = AppConfig(data_dir=str(tmp_path / "data"))

        with patch("kvm_cluster.cli.LibvirtDriver") as driver_cls:
            result = CliRunner().invoke(cli, ["cluster", "info", "nope"], obj={"config": app_config})

        assert result.exit_code == 1
        driver_cls.return_value.close.assert_called_once_with()
