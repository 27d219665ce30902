"""
Cluster lifecycle coordination.

This module implements cluster membership, ordered and parallel start/stop,
health scoring, scaling, templates and configuration backups on top of a
``HypervisorDriver`` and a ``ClusterStore``.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from .config import AppConfig
from .driver import HypervisorDriver
from .exceptions import (
    BackupExistsError,
    ClusterExistsError,
    DriverError,
    InsufficientMembersError,
    KVMClusterError,
    MemberNotFoundError,
    StoreError,
    TemplateExistsError,
    ValidationError,
    VMNotFoundError,
)
from .logging import logger
from .models import (
    BackupManifest,
    Cluster,
    ClusterSummary,
    HealthReport,
    MemberHealth,
    MemberOrder,
    MemberState,
    Membership,
    OperationOutcome,
    OperationReport,
    ScaleAction,
    Template,
    VMResources,
    VMSpec,
    VMState,
)
from .security import SecurityValidator
from .store import ClusterStore

Sleeper = Callable[[float], Awaitable[None]]

# Driver-side failures that are isolated per member once a batch is underway
MEMBER_ERRORS = (DriverError, VMNotFoundError)

_STATE_TO_MEMBER = {
    VMState.RUNNING: MemberState.RUNNING,
    VMState.STOPPED: MemberState.STOPPED,
    VMState.PAUSED: MemberState.PAUSED,
}


def _parse_order(value: Union[MemberOrder, str], field_name: str) -> MemberOrder:
    if isinstance(value, MemberOrder):
        return value
    try:
        return MemberOrder.parse(value)
    except (ValueError, AttributeError):
        raise ValidationError(
            f"{field_name} must be 'sequential' or 'reverse', got {value!r}", "order"
        )


class ClusterCoordinator:
    """
    Coordinates lifecycle operations for clusters of VMs on one host.

    Args:
        store: Persistence for cluster, template and backup records
        driver: Hypervisor driver issuing per-VM commands
        config: Timing and provisioning defaults
        sleep: Coroutine used for every delay and polling pause

    Validation and existence checks run before any side effect. Once a
    batch operation starts issuing driver calls, failures are recorded per
    member in the returned ``OperationReport`` instead of aborting siblings.
    Read-modify-write sequences on one cluster record are serialized.
    """

    def __init__(
        self,
        store: ClusterStore,
        driver: HypervisorDriver,
        config: Optional[AppConfig] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.store = store
        self.driver = driver
        self.config = config or AppConfig()
        self._sleep: Sleeper = sleep or asyncio.sleep
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, kind: str, name: str) -> AsyncIterator[None]:
        """Hold the record lock for a cluster or template.

        Tasks in this process queue on an ``asyncio.Lock``; the holder then
        takes the store's file lock so other processes are excluded too.
        """
        key = f"{kind}:{name}"
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                acquire = self.store.lock_cluster if kind == "cluster" else self.store.lock_template
                handle = await asyncio.to_thread(acquire, name)
                try:
                    yield
                finally:
                    self.store.release_lock(handle)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    # -- shared helpers --------------------------------------------------

    @staticmethod
    def _build_membership(member_names: Iterable[str]) -> Membership:
        names = list(member_names)
        for vm_name in names:
            SecurityValidator.validate_vm_name(vm_name)
        try:
            return Membership(names)
        except ValueError as e:
            raise ValidationError(str(e), "members")

    async def _probe(self, vm_name: str, report: OperationReport) -> Optional[bool]:
        """Running state of a member, or None after recording why it is unusable."""
        try:
            if not await self.driver.exists(vm_name):
                report.record_failure(vm_name, "VM does not exist")
                logger.warning(
                    f"Member {vm_name} does not exist",
                    cluster=report.cluster_name,
                    vm_name=vm_name,
                )
                return None
            return await self.driver.is_running(vm_name)
        except MEMBER_ERRORS as e:
            report.record_failure(vm_name, str(e))
            logger.warning(
                f"Cannot query member {vm_name}: {e}",
                cluster=report.cluster_name,
                vm_name=vm_name,
            )
            return None

    async def _poll_running(self, vm_name: str, default: bool) -> bool:
        """is_running, with ``default`` standing in when the driver cannot answer."""
        try:
            return await self.driver.is_running(vm_name)
        except MEMBER_ERRORS as e:
            logger.debug(f"State poll for {vm_name} failed: {e}", vm_name=vm_name)
            return default

    async def _wait_until_running(self, vm_name: str) -> bool:
        timeout = self.config.start_wait_timeout
        interval = self.config.start_poll_interval
        elapsed = 0
        while not await self._poll_running(vm_name, False):
            if elapsed >= timeout:
                return False
            await self._sleep(interval)
            elapsed += interval
        return True

    async def _wait_until_stopped(self, vm_name: str, timeout: int) -> bool:
        interval = self.config.stop_poll_interval
        elapsed = 0
        while elapsed < timeout and await self._poll_running(vm_name, True):
            await self._sleep(interval)
            elapsed += interval
            if elapsed % 10 == 0:
                logger.debug(
                    f"Waiting for {vm_name} to shut down, {elapsed}s elapsed",
                    vm_name=vm_name,
                )
        return not await self._poll_running(vm_name, True)

    async def _destroy_member(self, vm_name: str, report: OperationReport) -> None:
        """Force stop (if running) and delete a VM with its storage."""
        try:
            if not await self.driver.exists(vm_name):
                report.record_skip(vm_name)
                logger.warning(
                    f"VM {vm_name} already absent, nothing to delete",
                    cluster=report.cluster_name,
                    vm_name=vm_name,
                )
                return
            if await self.driver.is_running(vm_name):
                await self.driver.force_stop(vm_name)
            await self.driver.delete(vm_name, remove_storage=True)
        except MEMBER_ERRORS as e:
            report.record_failure(vm_name, str(e))
            logger.warning(
                f"Failed to delete VM {vm_name}: {e}",
                cluster=report.cluster_name,
                vm_name=vm_name,
            )
            return
        report.record_success(vm_name)
        logger.info(f"Deleted VM {vm_name}", cluster=report.cluster_name, vm_name=vm_name)

    async def _provision(self, spec: VMSpec, cluster_name: str) -> Optional[str]:
        try:
            return await self.driver.provision(spec)
        except KVMClusterError as e:
            logger.error(
                f"Failed to provision VM {spec.name}: {e}",
                cluster=cluster_name,
                vm_name=spec.name,
            )
            return None

    @staticmethod
    def _log_report(report: OperationReport) -> None:
        fields = dict(
            cluster=report.cluster_name,
            operation=report.operation,
            outcome=report.outcome.value,
            succeeded=report.success_count,
            failed_count=report.failure_count,
        )
        if report.outcome is OperationOutcome.SUCCESS:
            logger.info(f"Cluster {report.operation} completed", **fields)
        else:
            logger.warning(
                f"Cluster {report.operation} finished with failures: "
                f"{', '.join(report.failed_members)}",
                failed_members=report.failed_members,
                **fields,
            )

    # -- queries ---------------------------------------------------------

    def get_cluster(self, cluster_name: str) -> Cluster:
        SecurityValidator.validate_cluster_name(cluster_name)
        return self.store.load_cluster(cluster_name)

    def list_clusters(self) -> List[Cluster]:
        clusters = []
        for cluster_name in self.store.list_clusters():
            try:
                clusters.append(self.store.load_cluster(cluster_name))
            except StoreError as e:
                logger.warning(f"Skipping unreadable cluster record: {e}", cluster=cluster_name)
        return clusters

    def get_template(self, template_name: str) -> Template:
        SecurityValidator.validate_template_name(template_name)
        return self.store.load_template(template_name)

    def list_templates(self) -> List[Template]:
        templates = []
        for template_name in self.store.list_templates():
            try:
                templates.append(self.store.load_template(template_name))
            except StoreError as e:
                logger.warning(
                    f"Skipping unreadable template record: {e}", template=template_name
                )
        return templates

    def list_backups(self, cluster_name: Optional[str] = None) -> List[BackupManifest]:
        """Stored backup manifests, optionally for one cluster. No driver calls."""
        return self.store.list_backups(cluster_name)

    # -- membership ------------------------------------------------------

    async def create_cluster(
        self,
        cluster_name: str,
        description: str,
        member_names: Iterable[str],
        *,
        startup_order: Union[MemberOrder, str] = MemberOrder.SEQUENTIAL,
        startup_delay: int = 5,
        shutdown_order: Union[MemberOrder, str] = MemberOrder.REVERSE,
        shutdown_delay: int = 10,
        auto_start: bool = False,
    ) -> Cluster:
        """
        Create a cluster from existing VMs.

        Args:
            cluster_name: New cluster name
            description: Free text
            member_names: VM names in startup order
            startup_order: Member order for sequential starts
            startup_delay: Seconds between sequential starts
            shutdown_order: Member order for sequential stops
            shutdown_delay: Seconds between sequential stops
            auto_start: Informational flag

        Returns:
            Cluster: The persisted cluster

        Raises:
            ClusterExistsError: A cluster with this name exists
            MemberNotFoundError: The first member VM that does not exist
            ValidationError: Bad names, duplicates or timing values
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        members = self._build_membership(member_names)
        startup = _parse_order(startup_order, "startup_order")
        shutdown = _parse_order(shutdown_order, "shutdown_order")
        SecurityValidator.validate_non_negative_int(startup_delay, "startup_delay")
        SecurityValidator.validate_non_negative_int(shutdown_delay, "shutdown_delay")

        async with self._locked("cluster", cluster_name):
            if self.store.cluster_exists(cluster_name):
                raise ClusterExistsError(cluster_name)

            for vm_name in members:
                if not await self.driver.exists(vm_name):
                    raise MemberNotFoundError(vm_name, cluster_name)

            cluster = Cluster(
                name=cluster_name,
                description=description,
                members=members,
                startup_order=startup,
                startup_delay=startup_delay,
                shutdown_order=shutdown,
                shutdown_delay=shutdown_delay,
                auto_start=auto_start,
            )
            self.store.save_cluster(cluster)

        logger.info(
            f"Cluster {cluster_name} created with {cluster.vm_count} member(s)",
            cluster=cluster_name,
            members=members.to_list(),
        )
        return cluster

    async def add_member(self, cluster_name: str, vm_name: str) -> bool:
        """
        Add an existing VM to a cluster.

        Returns:
            bool: False if the VM was already a member (nothing changed)
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        SecurityValidator.validate_vm_name(vm_name)

        async with self._locked("cluster", cluster_name):
            cluster = self.store.load_cluster(cluster_name)
            if vm_name in cluster.members:
                logger.warning(
                    f"VM {vm_name} is already a member of {cluster_name}",
                    cluster=cluster_name,
                    vm_name=vm_name,
                )
                return False

            if not await self.driver.exists(vm_name):
                raise MemberNotFoundError(vm_name, cluster_name)

            cluster.members.add(vm_name)
            self.store.save_cluster(cluster)

        logger.info(f"Added {vm_name} to {cluster_name}", cluster=cluster_name, vm_name=vm_name)
        return True

    async def remove_member(self, cluster_name: str, vm_name: str) -> bool:
        """
        Remove a VM from a cluster's membership. The VM itself is untouched.

        Returns:
            bool: False if the VM was not a member (nothing changed)
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        SecurityValidator.validate_vm_name(vm_name)

        async with self._locked("cluster", cluster_name):
            cluster = self.store.load_cluster(cluster_name)
            if not cluster.members.remove(vm_name):
                logger.warning(
                    f"VM {vm_name} is not a member of {cluster_name}",
                    cluster=cluster_name,
                    vm_name=vm_name,
                )
                return False
            self.store.save_cluster(cluster)

        logger.info(
            f"Removed {vm_name} from {cluster_name}", cluster=cluster_name, vm_name=vm_name
        )
        return True

    async def delete_cluster(
        self, cluster_name: str, *, confirm: bool, cascade: bool = False
    ) -> OperationReport:
        """
        Delete a cluster record, optionally deleting its member VMs first.

        Args:
            cluster_name: Cluster to delete
            confirm: Must be True; destructive operations are never implicit
            cascade: Force stop and delete every member VM with its storage

        Returns:
            OperationReport: Per-VM results of the cascade (empty without it)
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        if not confirm:
            raise ValidationError(
                f"Deleting cluster '{cluster_name}' requires explicit confirmation",
                "confirmation",
            )

        report = OperationReport("delete", cluster_name)
        async with self._locked("cluster", cluster_name):
            cluster = self.store.load_cluster(cluster_name)
            if cascade:
                for vm_name in cluster.shutdown_sequence():
                    await self._destroy_member(vm_name, report)
            self.store.delete_cluster(cluster_name)

        logger.info(
            f"Cluster {cluster_name} deleted",
            cluster=cluster_name,
            cascade=cascade,
            vm_failures=report.failed_members,
        )
        return report

    # -- start / stop ----------------------------------------------------

    async def start_cluster(self, cluster_name: str, parallel: bool = False) -> OperationReport:
        """
        Start every member of a cluster.

        Sequential mode follows the startup order, pausing ``startup_delay``
        after each successful start. Parallel mode starts all stopped members
        at once and checks each one's state after they all return. Members
        already running count as successes.
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        cluster = self.store.load_cluster(cluster_name)
        report = OperationReport("start", cluster.name)
        sequence = cluster.startup_sequence()

        logger.info(
            f"Starting cluster {cluster.name}",
            cluster=cluster.name,
            mode="parallel" if parallel else "sequential",
            members=sequence,
        )

        if parallel:
            await self._start_parallel(sequence, report)
        else:
            await self._start_sequential(cluster, sequence, report)

        self._log_report(report)
        return report

    async def _start_sequential(
        self, cluster: Cluster, sequence: List[str], report: OperationReport
    ) -> None:
        for index, vm_name in enumerate(sequence):
            running = await self._probe(vm_name, report)
            if running is None:
                continue
            if running:
                report.record_skip(vm_name)
                logger.info(f"VM {vm_name} is already running", cluster=cluster.name, vm_name=vm_name)
                continue

            try:
                await self.driver.start(vm_name)
            except MEMBER_ERRORS as e:
                report.record_failure(vm_name, str(e))
                logger.warning(
                    f"Failed to start {vm_name}: {e}", cluster=cluster.name, vm_name=vm_name
                )
                continue

            if not await self._wait_until_running(vm_name):
                report.record_failure(
                    vm_name,
                    f"did not reach running state within {self.config.start_wait_timeout}s",
                )
                logger.warning(f"VM {vm_name} did not come up", cluster=cluster.name, vm_name=vm_name)
                continue

            report.record_success(vm_name)
            logger.info(f"VM {vm_name} started", cluster=cluster.name, vm_name=vm_name)

            if index < len(sequence) - 1 and cluster.startup_delay > 0:
                await self._sleep(cluster.startup_delay)

    async def _start_parallel(self, sequence: List[str], report: OperationReport) -> None:
        to_start = []
        for vm_name in sequence:
            running = await self._probe(vm_name, report)
            if running is None:
                continue
            if running:
                report.record_skip(vm_name)
            else:
                to_start.append(vm_name)

        results = await asyncio.gather(
            *(self.driver.start(vm_name) for vm_name in to_start), return_exceptions=True
        )

        for vm_name, result in zip(to_start, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                report.record_failure(vm_name, str(result))
                logger.warning(
                    f"Failed to start {vm_name}: {result}",
                    cluster=report.cluster_name,
                    vm_name=vm_name,
                )
            elif await self._poll_running(vm_name, False):
                report.record_success(vm_name)
            else:
                report.record_failure(vm_name, "not running after start")

    async def stop_cluster(
        self,
        cluster_name: str,
        timeout: Optional[int] = None,
        parallel: bool = False,
    ) -> OperationReport:
        """
        Gracefully stop every member of a cluster.

        Args:
            cluster_name: Cluster to stop
            timeout: Seconds to wait for shutdown; per member in sequential
                mode, shared by all members in parallel mode
            parallel: Issue all shutdowns at once

        Members that do not stop within the budget are reported as failed
        and left running; nothing is force stopped.
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        if timeout is None:
            timeout = self.config.default_stop_timeout
        SecurityValidator.validate_positive_int(timeout, "timeout")

        cluster = self.store.load_cluster(cluster_name)
        report = OperationReport("stop", cluster.name)
        sequence = cluster.shutdown_sequence()

        logger.info(
            f"Stopping cluster {cluster.name}",
            cluster=cluster.name,
            mode="parallel" if parallel else "sequential",
            timeout=timeout,
            members=sequence,
        )

        if parallel:
            await self._stop_parallel(sequence, timeout, report)
        else:
            await self._stop_sequential(cluster, sequence, timeout, report)

        self._log_report(report)
        return report

    async def _stop_sequential(
        self,
        cluster: Cluster,
        sequence: List[str],
        timeout: int,
        report: OperationReport,
    ) -> None:
        for index, vm_name in enumerate(sequence):
            running = await self._probe(vm_name, report)
            if running is None:
                continue
            if not running:
                report.record_skip(vm_name)
                logger.info(f"VM {vm_name} is not running", cluster=cluster.name, vm_name=vm_name)
                continue

            try:
                await self.driver.graceful_stop(vm_name)
            except MEMBER_ERRORS as e:
                report.record_failure(vm_name, str(e))
                logger.warning(
                    f"Failed to shut down {vm_name}: {e}", cluster=cluster.name, vm_name=vm_name
                )
            else:
                if await self._wait_until_stopped(vm_name, timeout):
                    report.record_success(vm_name)
                    logger.info(f"VM {vm_name} shut down", cluster=cluster.name, vm_name=vm_name)
                else:
                    report.record_failure(
                        vm_name, f"graceful shutdown timed out after {timeout}s"
                    )
                    logger.warning(
                        f"Graceful shutdown of {vm_name} timed out; use force-stop",
                        cluster=cluster.name,
                        vm_name=vm_name,
                        timeout=timeout,
                    )

            if index < len(sequence) - 1 and cluster.shutdown_delay > 0:
                await self._sleep(cluster.shutdown_delay)

    async def _stop_parallel(
        self, sequence: List[str], timeout: int, report: OperationReport
    ) -> None:
        to_stop = []
        for vm_name in sequence:
            running = await self._probe(vm_name, report)
            if running is None:
                continue
            if running:
                to_stop.append(vm_name)
            else:
                report.record_skip(vm_name)

        results = await asyncio.gather(
            *(self.driver.graceful_stop(vm_name) for vm_name in to_stop),
            return_exceptions=True,
        )

        issued = []
        for vm_name, result in zip(to_stop, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                report.record_failure(vm_name, str(result))
                logger.warning(
                    f"Failed to shut down {vm_name}: {result}",
                    cluster=report.cluster_name,
                    vm_name=vm_name,
                )
            else:
                issued.append(vm_name)

        remaining = await self._still_running(issued)
        interval = self.config.parallel_poll_interval
        elapsed = 0
        while remaining and elapsed < timeout:
            await self._sleep(interval)
            elapsed += interval
            remaining = await self._still_running(remaining)

        for vm_name in issued:
            if vm_name in remaining:
                report.record_failure(vm_name, f"graceful shutdown timed out after {timeout}s")
            else:
                report.record_success(vm_name)

    async def _still_running(self, vm_names: List[str]) -> List[str]:
        states = await asyncio.gather(
            *(self._poll_running(vm_name, True) for vm_name in vm_names)
        )
        return [vm_name for vm_name, running in zip(vm_names, states) if running]

    async def force_stop_cluster(
        self, cluster_name: str, members: Optional[Iterable[str]] = None
    ) -> OperationReport:
        """
        Power off running members immediately.

        This is the explicit follow-up for members a graceful stop left
        running. ``members`` restricts the operation to those names.
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        cluster = self.store.load_cluster(cluster_name)

        if members is None:
            targets = cluster.shutdown_sequence()
        else:
            targets = list(members)
            unknown = [vm_name for vm_name in targets if vm_name not in cluster.members]
            if unknown:
                raise ValidationError(
                    f"Not members of cluster '{cluster_name}': {', '.join(unknown)}",
                    "members",
                )

        report = OperationReport("force-stop", cluster.name)
        for vm_name in targets:
            running = await self._probe(vm_name, report)
            if running is None:
                continue
            if not running:
                report.record_skip(vm_name)
                continue
            try:
                await self.driver.force_stop(vm_name)
            except MEMBER_ERRORS as e:
                report.record_failure(vm_name, str(e))
                continue
            report.record_success(vm_name)
            logger.warning(f"VM {vm_name} force stopped", cluster=cluster.name, vm_name=vm_name)

        self._log_report(report)
        return report

    # -- health ----------------------------------------------------------

    async def _inspect(self, vm_name: str, detailed: bool) -> MemberHealth:
        try:
            if not await self.driver.exists(vm_name):
                return MemberHealth(vm_name, MemberState.MISSING)
            stats = await self.driver.describe(vm_name)
        except VMNotFoundError:
            return MemberHealth(vm_name, MemberState.MISSING)
        except DriverError as e:
            logger.warning(f"Cannot describe {vm_name}: {e}", vm_name=vm_name)
            return MemberHealth(vm_name, MemberState.UNKNOWN)

        state = _STATE_TO_MEMBER.get(stats.state, MemberState.UNKNOWN)
        member = MemberHealth(vm_name, state)
        if detailed and state is MemberState.RUNNING:
            member.cpu_time = stats.cpu_time
            member.memory_mb = stats.memory_mb
        return member

    async def health_check(self, cluster_name: str, detailed: bool = False) -> HealthReport:
        """
        Classify every member and score the cluster.

        The score is the rounded percentage of running members. Missing,
        paused and unknown members are listed individually in ``issues``.
        ``detailed`` adds CPU time and memory for running members.
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        cluster = self.store.load_cluster(cluster_name)

        members = await asyncio.gather(
            *(self._inspect(vm_name, detailed) for vm_name in cluster.members)
        )
        report = HealthReport(cluster.name, members=list(members))

        for member in report.members:
            if member.state is MemberState.MISSING:
                report.issues.append(f"VM '{member.name}' is missing")
            elif member.state is MemberState.PAUSED:
                report.issues.append(f"VM '{member.name}' is paused")
            elif member.state is MemberState.UNKNOWN:
                report.issues.append(f"VM '{member.name}' is in an unknown state")

        logger.info(
            f"Health of {cluster.name}: {report.score}% ({report.status.value})",
            cluster=cluster.name,
            score=report.score,
            status=report.status.value,
            issues=len(report.issues),
        )
        return report

    async def dashboard(self) -> List[ClusterSummary]:
        """One summary row per stored cluster."""
        summaries = []
        for cluster in self.list_clusters():
            health = await self.health_check(cluster.name)
            summaries.append(
                ClusterSummary(
                    name=cluster.name,
                    member_count=cluster.vm_count,
                    running_count=health.running_count,
                    score=health.score,
                    status=health.status,
                    template=cluster.template,
                )
            )
        return summaries

    # -- scaling ---------------------------------------------------------

    def _origin_template(self, cluster: Cluster) -> Optional[Template]:
        if not cluster.template:
            return None
        try:
            return self.store.load_template(cluster.template)
        except KVMClusterError as e:
            logger.warning(
                f"Template {cluster.template} of cluster {cluster.name} unavailable: {e}",
                cluster=cluster.name,
                template=cluster.template,
            )
            return None

    @staticmethod
    def _highest_index(members: Membership, prefix: str) -> int:
        pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
        indices = [int(m.group(1)) for m in map(pattern.match, members) if m]
        return max(indices, default=0)

    def _vm_spec(self, vm_name: str, resources: VMResources, template: Optional[Template]) -> VMSpec:
        return VMSpec(
            name=vm_name,
            ram_mb=resources.ram_mb,
            vcpus=resources.vcpus,
            disk_gb=resources.disk_gb,
            os_variant=template.os_variant if template else self.config.default_os_variant,
            network=template.network if template else self.config.default_network,
            storage_pool=template.storage_pool if template else self.config.default_storage_pool,
        )

    async def scale_cluster(
        self,
        cluster_name: str,
        action: Union[ScaleAction, str],
        count: int,
        *,
        create_vms: bool = False,
        delete_vms: bool = False,
    ) -> OperationReport:
        """
        Grow or shrink a cluster.

        Args:
            cluster_name: Cluster to scale
            action: ``add`` or ``remove``
            count: Number of members to add or remove
            create_vms: When adding, provision each new VM first; names whose
                provisioning fails are not added
            delete_vms: When removing, force stop and delete each removed VM

        Raises:
            InsufficientMembersError: A remove would leave no members; raised
                before any driver call
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        try:
            action = ScaleAction(action)
        except ValueError:
            raise ValidationError(f"Scale action must be 'add' or 'remove', got {action!r}", "action")
        SecurityValidator.validate_positive_int(count, "count")

        async with self._locked("cluster", cluster_name):
            cluster = self.store.load_cluster(cluster_name)
            if action is ScaleAction.REMOVE:
                report = await self._scale_down(cluster, count, delete_vms)
            else:
                report = await self._scale_up(cluster, count, create_vms)
            self.store.save_cluster(cluster)

        logger.info(
            f"Cluster {cluster.name} now has {cluster.vm_count} member(s)",
            cluster=cluster.name,
            vm_count=cluster.vm_count,
        )
        self._log_report(report)
        return report

    async def _scale_up(self, cluster: Cluster, count: int, create_vms: bool) -> OperationReport:
        template = self._origin_template(cluster)
        prefix = template.name_prefix if template else f"{cluster.name}-vm"
        first = self._highest_index(cluster.members, prefix) + 1
        new_names = [f"{prefix}{index}" for index in range(first, first + count)]
        for vm_name in new_names:
            SecurityValidator.validate_vm_name(vm_name)

        report = OperationReport("scale-add", cluster.name)
        if not create_vms:
            for vm_name in new_names:
                cluster.members.add(vm_name)
                report.record_success(vm_name)
            return report

        resources = cluster.vm_resources or VMResources(
            ram_mb=self.config.default_ram_mb,
            vcpus=self.config.default_vcpus,
            disk_gb=self.config.default_disk_gb,
        )
        for vm_name in new_names:
            created = await self._provision(self._vm_spec(vm_name, resources, template), cluster.name)
            if created is None:
                report.record_failure(vm_name, "provisioning failed")
                continue
            cluster.members.add(created)
            report.record_success(created)
        return report

    async def _scale_down(self, cluster: Cluster, count: int, delete_vms: bool) -> OperationReport:
        if count >= cluster.vm_count:
            raise InsufficientMembersError(cluster.name, count, cluster.vm_count)

        report = OperationReport("scale-remove", cluster.name)
        for vm_name in cluster.members.tail(count):
            if delete_vms:
                await self._destroy_member(vm_name, report)
            else:
                report.record_success(vm_name)
            cluster.members.remove(vm_name)
        return report

    # -- templates -------------------------------------------------------

    async def create_template(
        self,
        template_name: str,
        description: str,
        ram_mb: int,
        vcpus: int,
        disk_gb: int,
        member_count: int = 3,
        startup_order: Union[MemberOrder, str] = "sequential",
        startup_delay: int = 5,
        shutdown_order: Union[MemberOrder, str] = "reverse",
        shutdown_delay: int = 10,
        *,
        os_variant: Optional[str] = None,
        name_prefix: Optional[str] = None,
        network: Optional[str] = None,
        storage_pool: Optional[str] = None,
        auto_start: bool = False,
    ) -> Template:
        """Define a reusable cluster blueprint. Templates cannot be overwritten."""
        SecurityValidator.validate_template_name(template_name)
        for value, field_name in (
            (ram_mb, "ram_mb"),
            (vcpus, "vcpus"),
            (disk_gb, "disk_gb"),
            (member_count, "member_count"),
        ):
            SecurityValidator.validate_positive_int(value, field_name)
        SecurityValidator.validate_non_negative_int(startup_delay, "startup_delay")
        SecurityValidator.validate_non_negative_int(shutdown_delay, "shutdown_delay")

        template = Template(
            name=template_name,
            description=description,
            ram_mb=ram_mb,
            vcpus=vcpus,
            disk_gb=disk_gb,
            member_count=member_count,
            os_variant=SecurityValidator.validate_os_variant(
                os_variant or self.config.default_os_variant
            ),
            name_prefix=name_prefix or "",
            startup_order=_parse_order(startup_order, "startup_order"),
            startup_delay=startup_delay,
            shutdown_order=_parse_order(shutdown_order, "shutdown_order"),
            shutdown_delay=shutdown_delay,
            auto_start=auto_start,
            network=SecurityValidator.validate_vm_name(network or self.config.default_network),
            storage_pool=SecurityValidator.validate_vm_name(
                storage_pool or self.config.default_storage_pool
            ),
        )
        # The longest generated member name must still be a valid VM name
        SecurityValidator.validate_vm_name(template.member_names()[-1])

        async with self._locked("template", template_name):
            if self.store.template_exists(template_name):
                raise TemplateExistsError(template_name)
            self.store.save_template(template)

        logger.info(
            f"Template {template_name} created",
            template=template_name,
            member_count=member_count,
            ram_mb=ram_mb,
            vcpus=vcpus,
            disk_gb=disk_gb,
        )
        return template

    async def create_cluster_from_template(
        self,
        cluster_name: str,
        template_name: str,
        create_vms: bool = False,
        description: Optional[str] = None,
    ) -> Cluster:
        """
        Stamp out a cluster from a template.

        Members are named ``<prefix><index>`` for index 1..member_count.
        Without ``create_vms`` no driver calls are made and every generated
        name becomes a member. With it, each VM is provisioned first and only
        the ones that were created become members.
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        template = self.get_template(template_name)

        async with self._locked("cluster", cluster_name):
            if self.store.cluster_exists(cluster_name):
                raise ClusterExistsError(cluster_name)

            names = template.member_names()
            if create_vms:
                members = Membership()
                for vm_name in names:
                    created = await self._provision(
                        self._vm_spec(vm_name, template.resources, template), cluster_name
                    )
                    if created is not None:
                        members.add(created)
                if len(members) < len(names):
                    logger.warning(
                        f"Provisioned {len(members)} of {len(names)} VMs for {cluster_name}",
                        cluster=cluster_name,
                        template=template_name,
                    )
            else:
                members = Membership(names)

            cluster = Cluster(
                name=cluster_name,
                description=description or f"Created from template {template_name}",
                members=members,
                startup_order=template.startup_order,
                startup_delay=template.startup_delay,
                shutdown_order=template.shutdown_order,
                shutdown_delay=template.shutdown_delay,
                auto_start=template.auto_start,
                template=template.name,
                vm_resources=template.resources,
            )
            self.store.save_cluster(cluster)

        logger.info(
            f"Cluster {cluster_name} created from template {template_name}",
            cluster=cluster_name,
            template=template_name,
            members=cluster.members.to_list(),
        )
        return cluster

    # -- backups ---------------------------------------------------------

    async def backup_cluster(
        self, cluster_name: str, label: Optional[str] = None
    ) -> BackupManifest:
        """
        Capture the cluster record and each reachable member's definition.

        Members that are missing or cannot be exported are skipped, so a
        backup may be partial. Disk contents are not included.
        """
        SecurityValidator.validate_cluster_name(cluster_name)
        now = datetime.now().replace(microsecond=0)
        label = SecurityValidator.validate_backup_label(label or now.strftime("%Y%m%d_%H%M%S"))

        cluster = self.store.load_cluster(cluster_name)
        if self.store.backup_exists(cluster_name, label):
            raise BackupExistsError(cluster_name, label)

        configs: Dict[str, str] = {}
        for vm_name in cluster.members:
            try:
                if not await self.driver.exists(vm_name):
                    logger.warning(
                        f"Skipping missing member {vm_name} in backup",
                        cluster=cluster_name,
                        vm_name=vm_name,
                    )
                    continue
                configs[vm_name] = await self.driver.export_config(vm_name)
            except MEMBER_ERRORS as e:
                logger.warning(
                    f"Skipping member {vm_name} in backup: {e}",
                    cluster=cluster_name,
                    vm_name=vm_name,
                )

        manifest = BackupManifest(
            cluster_name=cluster_name,
            label=label,
            created_at=now,
            member_count=cluster.vm_count,
        )
        manifest = self.store.save_backup(manifest, cluster, configs)

        logger.info(
            f"Backup {label} of {cluster_name} captured {len(configs)} of "
            f"{cluster.vm_count} member(s)",
            cluster=cluster_name,
            label=label,
            backup_dir=manifest.path,
        )
        return manifest
