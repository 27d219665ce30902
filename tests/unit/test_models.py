"""Unit tests for cluster data models."""

import pytest

from kvm_cluster.models import (
    Cluster,
    HealthReport,
    HealthStatus,
    MemberHealth,
    MemberOrder,
    MemberState,
    Membership,
    OperationOutcome,
    OperationReport,
    Template,
    VMResources,
)


class TestMembership:
    """Test the ordered member set."""

    def test_preserves_insertion_order(self):
        members = Membership(["web1", "db1", "app1"])
        assert list(members) == ["web1", "db1", "app1"]
        assert list(reversed(members)) == ["app1", "db1", "web1"]

    def test_rejects_duplicates_on_construction(self):
        with pytest.raises(ValueError, match="Duplicate member name: web1"):
            Membership(["web1", "web1"])

    def test_add_and_remove_report_changes(self):
        members = Membership(["web1"])
        assert members.add("web2") is True
        assert members.add("web2") is False
        assert members.remove("web1") is True
        assert members.remove("web1") is False
        assert members == ["web2"]

    def test_tail(self):
        members = Membership(["a", "b", "c", "d"])
        assert members.tail(2) == ["c", "d"]
        assert members.tail(0) == []
        assert members.tail(10) == ["a", "b", "c", "d"]

    def test_ordered(self):
        members = Membership(["a", "b", "c"])
        assert members.ordered(MemberOrder.SEQUENTIAL) == ["a", "b", "c"]
        assert members.ordered(MemberOrder.REVERSE) == ["c", "b", "a"]

    def test_iteration_is_safe_during_mutation(self):
        members = Membership(["a", "b", "c"])
        for name in members:
            members.remove(name)
        assert len(members) == 0


class TestMemberOrder:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("sequential", MemberOrder.SEQUENTIAL),
            ("forward", MemberOrder.SEQUENTIAL),
            ("sequential-forward", MemberOrder.SEQUENTIAL),
            ("Reverse", MemberOrder.REVERSE),
            ("sequential-reverse", MemberOrder.REVERSE),
        ],
    )
    def test_parse_aliases(self, value, expected):
        assert MemberOrder.parse(value) is expected

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            MemberOrder.parse("random")


class TestCluster:
    def test_defaults(self):
        cluster = Cluster(name="web")
        assert cluster.startup_order is MemberOrder.SEQUENTIAL
        assert cluster.startup_delay == 5
        assert cluster.shutdown_order is MemberOrder.REVERSE
        assert cluster.shutdown_delay == 10
        assert cluster.auto_start is False
        assert cluster.created_at.microsecond == 0
        assert cluster.vm_count == 0

    def test_sequences_follow_orders(self):
        cluster = Cluster(name="web", members=Membership(["a", "b", "c"]))
        assert cluster.startup_sequence() == ["a", "b", "c"]
        assert cluster.shutdown_sequence() == ["c", "b", "a"]

    def test_vm_count_tracks_members(self):
        cluster = Cluster(name="web", members=Membership(["a"]))
        cluster.members.add("b")
        assert cluster.vm_count == 2


class TestTemplate:
    def test_default_prefix_and_member_names(self):
        template = Template(name="t1", ram_mb=1024, vcpus=1, disk_gb=10, member_count=3)
        assert template.name_prefix == "t1-vm"
        assert template.member_names() == ["t1-vm1", "t1-vm2", "t1-vm3"]

    def test_custom_prefix(self):
        template = Template(
            name="t1", ram_mb=1024, vcpus=1, disk_gb=10, member_count=2, name_prefix="node"
        )
        assert template.member_names() == ["node1", "node2"]

    def test_resources(self):
        template = Template(name="t1", ram_mb=4096, vcpus=4, disk_gb=40)
        assert template.resources == VMResources(ram_mb=4096, vcpus=4, disk_gb=40)


class TestOperationReport:
    def test_success_when_no_failures(self):
        report = OperationReport("start", "web")
        report.record_success("a")
        report.record_skip("b")
        assert report.outcome is OperationOutcome.SUCCESS
        assert report.success_count == 2

    def test_empty_report_is_success(self):
        assert OperationReport("start", "web").outcome is OperationOutcome.SUCCESS

    def test_partial(self):
        report = OperationReport("stop", "web")
        report.record_success("a")
        report.record_failure("b", "timed out")
        assert report.outcome is OperationOutcome.PARTIAL
        assert report.failed_members == ["b"]

    def test_failure_when_nothing_succeeded(self):
        report = OperationReport("stop", "web")
        report.record_failure("a", "boom")
        assert report.outcome is OperationOutcome.FAILURE

    def test_to_dict(self):
        report = OperationReport("start", "web")
        report.record_success("a")
        report.record_failure("b", "boom")
        assert report.to_dict() == {
            "operation": "start",
            "cluster": "web",
            "outcome": "partial",
            "succeeded": ["a"],
            "skipped": [],
            "failed": {"b": "boom"},
        }


class TestHealthReport:
    def _report(self, *states):
        return HealthReport(
            "web", members=[MemberHealth(f"vm{i}", s) for i, s in enumerate(states)]
        )

    def test_empty_cluster_scores_zero(self):
        report = HealthReport("web")
        assert report.score == 0
        assert report.status is HealthStatus.CRITICAL

    def test_three_of_four_running_is_degraded(self):
        report = self._report(
            MemberState.RUNNING, MemberState.RUNNING, MemberState.RUNNING, MemberState.STOPPED
        )
        assert report.score == 75
        assert report.status is HealthStatus.DEGRADED

    def test_score_rounds_half_up(self):
        # 1 of 8 running is 12.5%
        report = self._report(MemberState.RUNNING, *[MemberState.STOPPED] * 7)
        assert report.score == 13

    def test_two_of_three_running(self):
        report = self._report(MemberState.RUNNING, MemberState.RUNNING, MemberState.MISSING)
        assert report.score == 67

    @pytest.mark.parametrize(
        "score,status",
        [
            (100, HealthStatus.HEALTHY),
            (99, HealthStatus.MOSTLY_HEALTHY),
            (80, HealthStatus.MOSTLY_HEALTHY),
            (79, HealthStatus.DEGRADED),
            (50, HealthStatus.DEGRADED),
            (49, HealthStatus.CRITICAL),
            (0, HealthStatus.CRITICAL),
        ],
    )
    def test_status_thresholds(self, score, status):
        assert HealthStatus.from_score(score) is status

    def test_count(self):
        report = self._report(MemberState.PAUSED, MemberState.PAUSED, MemberState.RUNNING)
        assert report.count(MemberState.PAUSED) == 2
        assert report.running_count == 1
