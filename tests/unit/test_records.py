"""Unit tests for the flat record format."""

from datetime import datetime

import pytest

from kvm_cluster.exceptions import StoreError
from kvm_cluster.models import (
    BackupManifest,
    Cluster,
    MemberOrder,
    Membership,
    Template,
    VMResources,
)
from kvm_cluster.records import (
    cluster_from_record,
    cluster_to_record,
    dump_record,
    manifest_from_text,
    manifest_to_text,
    parse_record,
    template_from_record,
    template_to_record,
)


class TestRecordCodec:
    def test_values_are_shell_quoted(self):
        text = dump_record({"NAME": "web", "DESCRIPTION": "two words"})
        assert text == "NAME=web\nDESCRIPTION='two words'\n"

    def test_parse_ignores_comments_and_blank_lines(self):
        text = "# cluster record\n\nNAME=web\nDESCRIPTION='a b'\n"
        assert parse_record(text) == {"NAME": "web", "DESCRIPTION": "a b"}

    def test_parse_rejects_entries_without_equals(self):
        with pytest.raises(StoreError, match="Malformed record entry"):
            parse_record("NAME=web\ngarbage\n", "web.conf")

    def test_parse_rejects_unbalanced_quotes(self):
        with pytest.raises(StoreError, match="Unparseable record"):
            parse_record("DESCRIPTION='unterminated\n")


class TestClusterRecord:
    def test_round_trip_with_awkward_description(self):
        cluster = Cluster(
            name="web",
            description="It's a \"web\" tier\nwith $HOME and `ticks`",
            created_at=datetime(2024, 5, 1, 12, 30, 0),
            members=Membership(["web1", "web2"]),
            startup_order=MemberOrder.REVERSE,
            startup_delay=0,
            shutdown_order=MemberOrder.SEQUENTIAL,
            shutdown_delay=3,
            auto_start=True,
            template="t1",
            vm_resources=VMResources(ram_mb=1024, vcpus=1, disk_gb=10),
        )
        assert cluster_from_record(cluster_to_record(cluster)) == cluster

    def test_record_keys(self):
        cluster = Cluster(name="web", members=Membership(["a", "b"]))
        fields = parse_record(cluster_to_record(cluster))
        assert fields["CLUSTER_NAME"] == "web"
        assert fields["VM"] == "a,b"
        assert fields["VM_COUNT"] == "2"
        assert fields["STARTUP_ORDER"] == "sequential"
        assert fields["SHUTDOWN_ORDER"] == "reverse"
        assert fields["AUTO_START"] == "false"
        assert "TEMPLATE_USED" not in fields
        assert "VM_RAM" not in fields

    def test_empty_member_list(self):
        cluster = Cluster(name="empty")
        assert cluster_from_record(cluster_to_record(cluster)).vm_count == 0

    def test_missing_required_field(self):
        with pytest.raises(StoreError, match="CREATED"):
            cluster_from_record("CLUSTER_NAME=web\nSTARTUP_ORDER=sequential\n")

    def test_invalid_number(self):
        record = cluster_to_record(Cluster(name="web")).replace(
            "STARTUP_DELAY=5", "STARTUP_DELAY=soon"
        )
        with pytest.raises(StoreError, match="STARTUP_DELAY"):
            cluster_from_record(record)

    def test_duplicate_members_are_rejected(self):
        record = cluster_to_record(Cluster(name="web")).replace("VM=''", "VM=a,a")
        with pytest.raises(StoreError):
            cluster_from_record(record)


class TestTemplateRecord:
    def test_round_trip(self):
        template = Template(
            name="t1",
            description="three node 'lab'",
            ram_mb=2048,
            vcpus=2,
            disk_gb=20,
            created_at=datetime(2024, 1, 2, 3, 4, 5),
            member_count=3,
            os_variant="ubuntu22.04",
            name_prefix="lab-",
            network="isolated",
            storage_pool="fast",
        )
        assert template_from_record(template_to_record(template)) == template

    def test_prefix_key(self):
        template = Template(name="t1", ram_mb=1, vcpus=1, disk_gb=1)
        assert parse_record(template_to_record(template))["VM_PREFIX"] == "t1-vm"


class TestManifest:
    def test_text_layout(self):
        manifest = BackupManifest(
            cluster_name="web",
            label="nightly",
            created_at=datetime(2024, 5, 1, 2, 0, 0),
            member_count=3,
            captured_members=["web1", "web2"],
            files=["cluster.conf", "web1.xml", "web2.xml"],
        )
        text = manifest_to_text(manifest)
        assert "Cluster: web\n" in text
        assert "Backup Label: nightly\n" in text
        assert "Captured Members: web1,web2\n" in text
        assert text.endswith("Files:\n  cluster.conf\n  web1.xml\n  web2.xml\n")

    def test_parse(self):
        manifest = BackupManifest(
            cluster_name="web",
            label="nightly",
            created_at=datetime(2024, 5, 1, 2, 0, 0),
            member_count=2,
            captured_members=["web1"],
            files=["cluster.conf", "web1.xml"],
        )
        parsed = manifest_from_text(manifest_to_text(manifest), "/backups/web/nightly")
        assert parsed.cluster_name == "web"
        assert parsed.member_count == 2
        assert parsed.captured_members == ["web1"]
        assert parsed.files == ["cluster.conf", "web1.xml"]
        assert parsed.path == "/backups/web/nightly"

    def test_malformed(self):
        with pytest.raises(StoreError, match="Malformed backup manifest"):
            manifest_from_text("Cluster Backup Manifest\nCluster: web\n")
