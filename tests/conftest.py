"""Test configuration and fixtures for kvm-cluster."""

import pytest
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from kvm_cluster.config import AppConfig  # noqa: E402
from kvm_cluster.coordinator import ClusterCoordinator  # noqa: E402
from kvm_cluster.driver import HypervisorDriver  # noqa: E402
from kvm_cluster.exceptions import DriverError, VMNotFoundError  # noqa: E402
from kvm_cluster.models import VMSpec, VMState, VMStats  # noqa: E402
from kvm_cluster.store import ClusterStore  # noqa: E402


class FakeDriver(HypervisorDriver):
    """In-memory hypervisor that records every call.

    ``vms`` maps VM names to their current state. Failures are injected per
    (operation, vm) pair; ``stuck`` VMs ignore graceful shutdown and
    ``unbootable`` VMs accept start but never come up.
    """

    def __init__(self, vms: Optional[Dict[str, VMState]] = None) -> None:
        self.vms: Dict[str, VMState] = dict(vms or {})
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.stuck: Set[str] = set()
        self.unbootable: Set[str] = set()
        self.provisioned: List[VMSpec] = []
        self.deleted: List[str] = []

    def add_vms(self, names: Iterable[str], state: VMState = VMState.STOPPED) -> None:
        for name in names:
            self.vms[name] = state

    def fail(self, operation: str, vm_name: str, error: Optional[Exception] = None) -> None:
        self.failures[(operation, vm_name)] = error or DriverError(
            f"{operation} failed", operation, vm_name
        )

    def ops(self, operation: str) -> List[str]:
        """VM names passed to one operation, in call order."""
        return [vm for op, vm in self.calls if op == operation]

    def mutating_calls(self) -> List[Tuple[str, str]]:
        readonly = {"exists", "is_running", "describe", "export_config"}
        return [call for call in self.calls if call[0] not in readonly]

    def _call(self, operation: str, vm_name: str) -> None:
        self.calls.append((operation, vm_name))
        error = self.failures.get((operation, vm_name))
        if error is not None:
            raise error

    def _require(self, vm_name: str) -> None:
        if vm_name not in self.vms:
            raise VMNotFoundError(vm_name)

    async def exists(self, vm_name: str) -> bool:
        self._call("exists", vm_name)
        return vm_name in self.vms

    async def is_running(self, vm_name: str) -> bool:
        self._call("is_running", vm_name)
        return self.vms.get(vm_name) is VMState.RUNNING

    async def start(self, vm_name: str) -> None:
        self._call("start", vm_name)
        self._require(vm_name)
        if vm_name not in self.unbootable:
            self.vms[vm_name] = VMState.RUNNING

    async def graceful_stop(self, vm_name: str) -> None:
        self._call("graceful_stop", vm_name)
        self._require(vm_name)
        if vm_name not in self.stuck:
            self.vms[vm_name] = VMState.STOPPED

    async def force_stop(self, vm_name: str) -> None:
        self._call("force_stop", vm_name)
        self._require(vm_name)
        self.vms[vm_name] = VMState.STOPPED

    async def delete(self, vm_name: str, remove_storage: bool = True) -> None:
        self._call("delete", vm_name)
        self._require(vm_name)
        del self.vms[vm_name]
        self.deleted.append(vm_name)

    async def describe(self, vm_name: str) -> VMStats:
        self._call("describe", vm_name)
        self._require(vm_name)
        state = self.vms[vm_name]
        if state is VMState.RUNNING:
            return VMStats(state=state, memory_mb=2048, cpu_time=12.5, vcpus=2)
        return VMStats(state=state, vcpus=2)

    async def provision(self, spec: VMSpec) -> str:
        self._call("provision", spec.name)
        if spec.name in self.vms:
            raise DriverError("VM already exists", "provision", spec.name)
        self.vms[spec.name] = VMState.STOPPED
        self.provisioned.append(spec)
        return spec.name

    async def export_config(self, vm_name: str) -> str:
        self._call("export_config", vm_name)
        self._require(vm_name)
        return f"<domain type='kvm'><name>{vm_name}</name></domain>"


class RecordingSleep:
    """Stand-in for asyncio.sleep that returns at once and records durations."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def fake_driver():
    """Driver with no VMs defined."""
    return FakeDriver()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def app_config():
    """Default configuration."""
    return AppConfig()


@pytest.fixture
def store(tmp_path):
    """Store rooted in a temporary directory."""
    cluster_store = ClusterStore(str(tmp_path / "data"))
    cluster_store.initialize()
    return cluster_store


@pytest.fixture
def coordinator(store, fake_driver, app_config, recording_sleep):
    return ClusterCoordinator(store, fake_driver, app_config, sleep=recording_sleep)
