"""
Data models for KVM cluster operations.

This module defines the data structures used throughout the cluster management system.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Iterable, Iterator
from datetime import datetime
from enum import Enum


class VMState(Enum):
    """Virtual machine states as reported by the hypervisor."""

    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


class MemberOrder(Enum):
    """Order in which cluster members are started or stopped."""

    SEQUENTIAL = "sequential"
    REVERSE = "reverse"

    @classmethod
    def parse(cls, value: str) -> "MemberOrder":
        """Accept the record spelling plus the long forward/reverse forms."""
        normalized = value.strip().lower()
        aliases = {
            "sequential": cls.SEQUENTIAL,
            "forward": cls.SEQUENTIAL,
            "sequential-forward": cls.SEQUENTIAL,
            "reverse": cls.REVERSE,
            "sequential-reverse": cls.REVERSE,
        }
        if normalized not in aliases:
            raise ValueError(f"Unknown member order: {value}")
        return aliases[normalized]


class ScaleAction(Enum):
    """Direction of a scale operation."""

    ADD = "add"
    REMOVE = "remove"


class OperationOutcome(Enum):
    """Overall classification of a batch operation."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class MemberState(Enum):
    """Member classification used by health checks."""

    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    MISSING = "missing"
    UNKNOWN = "unknown"


class HealthStatus(Enum):
    """Health label derived from the health score."""

    HEALTHY = "healthy"
    MOSTLY_HEALTHY = "mostly_healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: int) -> "HealthStatus":
        if score >= 100:
            return cls.HEALTHY
        if score >= 80:
            return cls.MOSTLY_HEALTHY
        if score >= 50:
            return cls.DEGRADED
        return cls.CRITICAL


class Membership:
    """Ordered set of member VM names.

    Insertion order is the startup order; duplicates are rejected.
    """

    def __init__(self, names: Optional[Iterable[str]] = None) -> None:
        self._names: List[str] = []
        for name in names or []:
            if not self.add(name):
                raise ValueError(f"Duplicate member name: {name}")

    def add(self, name: str) -> bool:
        """Append a member; returns False if it is already present."""
        if name in self._names:
            return False
        self._names.append(name)
        return True

    def remove(self, name: str) -> bool:
        """Drop a member; returns False if it was not present."""
        if name not in self._names:
            return False
        self._names.remove(name)
        return True

    def tail(self, count: int) -> List[str]:
        """The last ``count`` members in stored order."""
        if count <= 0:
            return []
        return list(self._names[-count:])

    def ordered(self, order: MemberOrder) -> List[str]:
        if order is MemberOrder.REVERSE:
            return list(reversed(self._names))
        return list(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._names))

    def __reversed__(self) -> Iterator[str]:
        return reversed(list(self._names))

    def __len__(self) -> int:
        return len(self._names)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Membership):
            return self._names == other._names
        if isinstance(other, list):
            return self._names == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"Membership({self._names!r})"

    def to_list(self) -> List[str]:
        return list(self._names)


@dataclass
class VMResources:
    """Per-VM sizing recorded on a cluster."""

    ram_mb: int
    vcpus: int
    disk_gb: int


@dataclass
class VMSpec:
    """Everything the driver needs to provision one VM."""

    name: str
    ram_mb: int
    vcpus: int
    disk_gb: int
    os_variant: str = "generic"
    network: str = "default"
    storage_pool: str = "default"


@dataclass
class VMStats:
    """Runtime figures reported by the driver for one VM."""

    state: VMState
    memory_mb: int = 0
    cpu_time: float = 0.0  # seconds
    vcpus: int = 0


@dataclass
class Cluster:
    """A named, ordered group of VMs managed as a unit."""

    name: str
    description: str = ""
    created_at: datetime = field(
        default_factory=lambda: datetime.now().replace(microsecond=0)
    )
    members: Membership = field(default_factory=Membership)
    startup_order: MemberOrder = MemberOrder.SEQUENTIAL
    startup_delay: int = 5
    shutdown_order: MemberOrder = MemberOrder.REVERSE
    shutdown_delay: int = 10
    auto_start: bool = False
    template: Optional[str] = None
    vm_resources: Optional[VMResources] = None

    @property
    def vm_count(self) -> int:
        return len(self.members)

    def startup_sequence(self) -> List[str]:
        return self.members.ordered(self.startup_order)

    def shutdown_sequence(self) -> List[str]:
        return self.members.ordered(self.shutdown_order)


@dataclass
class Template:
    """Blueprint for stamping out a cluster and its member VMs."""

    name: str
    ram_mb: int
    vcpus: int
    disk_gb: int
    description: str = ""
    created_at: datetime = field(
        default_factory=lambda: datetime.now().replace(microsecond=0)
    )
    member_count: int = 3
    os_variant: str = "generic"
    name_prefix: str = ""
    startup_order: MemberOrder = MemberOrder.SEQUENTIAL
    startup_delay: int = 5
    shutdown_order: MemberOrder = MemberOrder.REVERSE
    shutdown_delay: int = 10
    auto_start: bool = False
    network: str = "default"
    storage_pool: str = "default"

    def __post_init__(self) -> None:
        if not self.name_prefix:
            self.name_prefix = f"{self.name}-vm"

    def member_names(self) -> List[str]:
        return [f"{self.name_prefix}{i}" for i in range(1, self.member_count + 1)]

    @property
    def resources(self) -> VMResources:
        return VMResources(ram_mb=self.ram_mb, vcpus=self.vcpus, disk_gb=self.disk_gb)


@dataclass
class BackupManifest:
    """Point-in-time capture of a cluster's configuration."""

    cluster_name: str
    label: str
    created_at: datetime
    member_count: int
    captured_members: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    member_configs: Dict[str, str] = field(default_factory=dict, repr=False)
    path: Optional[str] = None


@dataclass
class OperationReport:
    """Aggregate result of a batch operation over cluster members."""

    operation: str
    cluster_name: str
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # already in target state
    failed: Dict[str, str] = field(default_factory=dict)  # member -> reason

    @property
    def success_count(self) -> int:
        return len(self.succeeded) + len(self.skipped)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def failed_members(self) -> List[str]:
        return list(self.failed)

    @property
    def outcome(self) -> OperationOutcome:
        if not self.failed:
            return OperationOutcome.SUCCESS
        if self.success_count == 0:
            return OperationOutcome.FAILURE
        return OperationOutcome.PARTIAL

    def record_success(self, member: str) -> None:
        self.succeeded.append(member)

    def record_skip(self, member: str) -> None:
        self.skipped.append(member)

    def record_failure(self, member: str, reason: str) -> None:
        self.failed[member] = reason

    def to_dict(self) -> Dict[str, object]:
        return {
            "operation": self.operation,
            "cluster": self.cluster_name,
            "outcome": self.outcome.value,
            "succeeded": list(self.succeeded),
            "skipped": list(self.skipped),
            "failed": dict(self.failed),
        }


@dataclass
class MemberHealth:
    """Health observation for one member."""

    name: str
    state: MemberState
    cpu_time: Optional[float] = None  # seconds, detailed checks only
    memory_mb: Optional[int] = None  # detailed checks only


@dataclass
class HealthReport:
    """Result of a cluster health check."""

    cluster_name: str
    members: List[MemberHealth] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.members)

    @property
    def running_count(self) -> int:
        return sum(1 for m in self.members if m.state is MemberState.RUNNING)

    @property
    def score(self) -> int:
        if not self.members:
            return 0
        # Half-up rounding; round() would round 12.5 down to 12
        return (200 * self.running_count + self.total) // (2 * self.total)

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.from_score(self.score)

    def count(self, state: MemberState) -> int:
        return sum(1 for m in self.members if m.state is state)

    def to_dict(self) -> Dict[str, object]:
        return {
            "cluster": self.cluster_name,
            "score": self.score,
            "status": self.status.value,
            "running": self.running_count,
            "total": self.total,
            "members": [
                {
                    "name": m.name,
                    "state": m.state.value,
                    "cpu_time": m.cpu_time,
                    "memory_mb": m.memory_mb,
                }
                for m in self.members
            ],
            "issues": list(self.issues),
        }


@dataclass
class ClusterSummary:
    """One dashboard row."""

    name: str
    member_count: int
    running_count: int
    score: int
    status: HealthStatus
    template: Optional[str] = None
