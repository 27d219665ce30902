"""
Hypervisor driver for cluster member operations.

``HypervisorDriver`` is the narrow per-VM contract the coordinator depends on;
``LibvirtDriver`` implements it against a local libvirt daemon.
"""

from __future__ import annotations

import abc
import asyncio
import os
import shutil
import threading
import xml.etree.ElementTree as ET
from typing import Any, Callable, Dict, List, Optional, TypeVar, TYPE_CHECKING

if TYPE_CHECKING:
    import libvirt
else:
    try:
        import libvirt  # type: ignore[import-untyped,import-not-found]
    except ImportError:
        libvirt = None  # type: ignore[assignment]

from .exceptions import DriverError, TimeoutError, VMNotFoundError
from .logging import logger
from .models import VMSpec, VMState, VMStats
from .security import CommandBuilder, SecurityValidator

T = TypeVar("T")

REQUIRED_TOOLS = ("virsh", "virt-install", "qemu-img")

# Seconds an external provisioning tool may run
TOOL_TIMEOUT = 600


class HypervisorDriver(abc.ABC):
    """Per-VM operations consumed by the cluster coordinator.

    Failures raise ``DriverError``; operations on unknown VMs raise
    ``VMNotFoundError``.
    """

    @abc.abstractmethod
    async def exists(self, vm_name: str) -> bool:
        """Whether a VM with this name is defined."""

    @abc.abstractmethod
    async def is_running(self, vm_name: str) -> bool:
        """Whether the VM is active. Unknown VMs are not running."""

    @abc.abstractmethod
    async def start(self, vm_name: str) -> None:
        """Boot a defined VM."""

    @abc.abstractmethod
    async def graceful_stop(self, vm_name: str) -> None:
        """Request an ACPI shutdown; returns without waiting for it."""

    @abc.abstractmethod
    async def force_stop(self, vm_name: str) -> None:
        """Power the VM off immediately."""

    @abc.abstractmethod
    async def delete(self, vm_name: str, remove_storage: bool = True) -> None:
        """Undefine the VM, optionally removing its disk images."""

    @abc.abstractmethod
    async def describe(self, vm_name: str) -> VMStats:
        """Current state, memory and CPU time."""

    @abc.abstractmethod
    async def provision(self, spec: VMSpec) -> str:
        """Create and define a new VM; returns its name."""

    @abc.abstractmethod
    async def export_config(self, vm_name: str) -> str:
        """Serialized VM definition."""


class LibvirtDriver(HypervisorDriver):
    """libvirt-backed driver for a single host."""

    def __init__(
        self,
        uri: str = "qemu:///system",
        image_dir: str = "/var/lib/libvirt/images",
    ) -> None:
        self.uri = uri
        self.image_dir = image_dir
        self._conn: Any = None
        self._conn_lock = threading.Lock()

    def _connect(self) -> Any:
        """Open the libvirt connection, reusing it while it is alive."""
        if libvirt is None:
            raise DriverError("libvirt-python is not installed", "connection")

        with self._conn_lock:
            return self._connect_locked()

    def _connect_locked(self) -> Any:
        if self._conn is not None:
            try:
                if self._conn.isAlive():
                    return self._conn
            except libvirt.libvirtError:
                pass
            self._conn = None

        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as e:
            logger.error(f"Libvirt connection to {self.uri} failed: {e}", uri=self.uri)
            raise DriverError(str(e), "connection")
        if not conn:
            raise DriverError(f"Failed to connect to libvirt at {self.uri}", "connection")

        self._conn = conn
        logger.info(f"Connected to libvirt at {self.uri}", uri=self.uri)
        return conn

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking libvirt call off the event loop."""
        return await asyncio.to_thread(func, *args)

    def _lookup(self, vm_name: str) -> Any:
        conn = self._connect()
        try:
            return conn.lookupByName(vm_name)
        except libvirt.libvirtError:
            raise VMNotFoundError(vm_name)

    def _exists_sync(self, vm_name: str) -> bool:
        try:
            self._lookup(vm_name)
            return True
        except VMNotFoundError:
            return False

    def _is_running_sync(self, vm_name: str) -> bool:
        try:
            domain = self._lookup(vm_name)
        except VMNotFoundError:
            return False
        try:
            return domain.isActive() == 1
        except libvirt.libvirtError as e:
            raise DriverError(str(e), "is_running", vm_name)

    def _domain_call(self, vm_name: str, operation: str, method: str) -> None:
        domain = self._lookup(vm_name)
        try:
            getattr(domain, method)()
        except libvirt.libvirtError as e:
            raise DriverError(str(e), operation, vm_name)

    def _state_map(self) -> Dict[int, VMState]:
        return {
            libvirt.VIR_DOMAIN_RUNNING: VMState.RUNNING,
            libvirt.VIR_DOMAIN_BLOCKED: VMState.RUNNING,
            libvirt.VIR_DOMAIN_PAUSED: VMState.PAUSED,
            libvirt.VIR_DOMAIN_SHUTDOWN: VMState.STOPPED,
            libvirt.VIR_DOMAIN_SHUTOFF: VMState.STOPPED,
            libvirt.VIR_DOMAIN_CRASHED: VMState.STOPPED,
            libvirt.VIR_DOMAIN_PMSUSPENDED: VMState.SUSPENDED,
        }

    def _describe_sync(self, vm_name: str) -> VMStats:
        domain = self._lookup(vm_name)
        try:
            # [state, maxMem KiB, memory KiB, nrVirtCpu, cpuTime ns]
            info = domain.info()
        except libvirt.libvirtError as e:
            raise DriverError(str(e), "describe", vm_name)

        return VMStats(
            state=self._state_map().get(info[0], VMState.UNKNOWN),
            memory_mb=info[2] // 1024,
            cpu_time=info[4] / 1e9,
            vcpus=info[3],
        )

    def _export_sync(self, vm_name: str) -> str:
        domain = self._lookup(vm_name)
        try:
            return domain.XMLDesc(0)
        except libvirt.libvirtError as e:
            raise DriverError(str(e), "export_config", vm_name)

    @staticmethod
    def _disk_paths(xml_desc: str) -> List[str]:
        root = ET.fromstring(xml_desc)
        paths = []
        for disk_elem in root.findall(".//disk[@type='file']"):
            if disk_elem.get("device", "disk") != "disk":
                continue
            source_elem = disk_elem.find("source")
            if source_elem is not None and source_elem.get("file"):
                paths.append(source_elem.get("file"))
        return paths

    def _delete_sync(self, vm_name: str, remove_storage: bool) -> None:
        domain = self._lookup(vm_name)
        conn = self._connect()

        if domain.isActive():
            logger.info(f"Stopping VM {vm_name} before deletion", vm_name=vm_name)
            try:
                domain.destroy()
            except libvirt.libvirtError as e:
                logger.warning(f"Failed to stop VM {vm_name}: {e}", vm_name=vm_name)

        disk_paths: List[str] = []
        if remove_storage:
            try:
                disk_paths = self._disk_paths(domain.XMLDesc(0))
            except (libvirt.libvirtError, ET.ParseError) as e:
                logger.warning(
                    f"Failed to extract disk paths from {vm_name}: {e}", vm_name=vm_name
                )

        try:
            flags = (
                libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
                | libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA
                | libvirt.VIR_DOMAIN_UNDEFINE_NVRAM
            )
            domain.undefineFlags(flags)
        except libvirt.libvirtError:
            try:
                domain.undefine()
            except libvirt.libvirtError as e:
                raise DriverError(str(e), "delete", vm_name)
        logger.info(f"Undefined VM {vm_name}", vm_name=vm_name)

        for disk_path in disk_paths:
            try:
                volume = conn.storageVolLookupByPath(disk_path)
                volume.delete(0)
                logger.info(f"Deleted disk {disk_path}", vm_name=vm_name, disk=disk_path)
            except libvirt.libvirtError as e:
                logger.warning(
                    f"Failed to delete disk {disk_path}: {e}",
                    vm_name=vm_name,
                    disk=disk_path,
                )

    def _pool_dir_sync(self, pool_name: str) -> str:
        """Target directory of a storage pool, falling back to image_dir."""
        conn = self._connect()
        try:
            pool = conn.storagePoolLookupByName(pool_name)
            path_elem = ET.fromstring(pool.XMLDesc(0)).find("./target/path")
        except (libvirt.libvirtError, ET.ParseError) as e:
            logger.warning(
                f"Cannot resolve storage pool {pool_name}, using {self.image_dir}: {e}",
                pool=pool_name,
            )
            return self.image_dir
        if path_elem is None or not path_elem.text:
            return self.image_dir
        return path_elem.text

    def _refresh_pool_sync(self, pool_name: str) -> None:
        conn = self._connect()
        try:
            conn.storagePoolLookupByName(pool_name).refresh(0)
        except libvirt.libvirtError as e:
            logger.debug(f"Could not refresh storage pool {pool_name}: {e}", pool=pool_name)

    def _define_sync(self, xml_config: str) -> str:
        conn = self._connect()
        try:
            domain = conn.defineXML(xml_config)
        except libvirt.libvirtError as e:
            raise DriverError(str(e), "provision")
        if not domain:
            raise DriverError("Failed to define VM", "provision")
        return domain.name()

    async def exists(self, vm_name: str) -> bool:
        return await self._run(self._exists_sync, vm_name)

    async def is_running(self, vm_name: str) -> bool:
        return await self._run(self._is_running_sync, vm_name)

    async def start(self, vm_name: str) -> None:
        await self._run(self._domain_call, vm_name, "start", "create")
        logger.debug(f"Issued start for {vm_name}", vm_name=vm_name)

    async def graceful_stop(self, vm_name: str) -> None:
        await self._run(self._domain_call, vm_name, "graceful_stop", "shutdown")
        logger.debug(f"Issued shutdown for {vm_name}", vm_name=vm_name)

    async def force_stop(self, vm_name: str) -> None:
        await self._run(self._domain_call, vm_name, "force_stop", "destroy")
        logger.debug(f"Issued destroy for {vm_name}", vm_name=vm_name)

    async def delete(self, vm_name: str, remove_storage: bool = True) -> None:
        await self._run(self._delete_sync, vm_name, remove_storage)

    async def describe(self, vm_name: str) -> VMStats:
        return await self._run(self._describe_sync, vm_name)

    async def export_config(self, vm_name: str) -> str:
        return await self._run(self._export_sync, vm_name)

    async def _execute(self, argv: List[str]) -> str:
        """Run an external tool and return its stdout."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DriverError(f"Cannot execute {argv[0]}: {e}", "provision")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), TOOL_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TimeoutError(f"{argv[0]} did not finish", "provision", TOOL_TIMEOUT)

        if proc.returncode != 0:
            raise DriverError(
                f"{argv[0]} exited with {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip()}",
                "provision",
            )
        return stdout.decode(errors="replace")

    async def provision(self, spec: VMSpec) -> str:
        """
        Create a disk image and define a new VM from the spec.

        The domain is defined but not started. The disk image is removed again
        if the definition step fails.

        Args:
            spec: Name and sizing of the new VM

        Returns:
            str: Name of the defined VM
        """
        SecurityValidator.validate_vm_name(spec.name)
        if await self.exists(spec.name):
            raise DriverError("VM already exists", "provision", spec.name)

        disk_dir = await self._run(self._pool_dir_sync, spec.storage_pool)
        disk_path = SecurityValidator.sanitize_path(f"{spec.name}.qcow2", disk_dir)
        if os.path.exists(disk_path):
            raise DriverError(f"Disk image {disk_path} already exists", "provision", spec.name)

        logger.info(
            f"Provisioning VM {spec.name}",
            vm_name=spec.name,
            ram_mb=spec.ram_mb,
            vcpus=spec.vcpus,
            disk_gb=spec.disk_gb,
        )

        await self._execute(CommandBuilder.qemu_img_create(disk_path, spec.disk_gb))
        await self._run(self._refresh_pool_sync, spec.storage_pool)
        try:
            xml_config = await self._execute(
                CommandBuilder.virt_install_xml(
                    name=spec.name,
                    ram_mb=spec.ram_mb,
                    vcpus=spec.vcpus,
                    disk_path=disk_path,
                    os_variant=spec.os_variant,
                    network=spec.network,
                )
            )
            name = await self._run(self._define_sync, xml_config)
        except Exception:
            try:
                os.remove(disk_path)
            except OSError as e:
                logger.warning(f"Failed to remove disk {disk_path}: {e}", disk=disk_path)
            raise

        logger.info(f"VM {name} defined", vm_name=name)
        return name

    def _ping_sync(self) -> str:
        conn = self._connect()
        try:
            return conn.getHostname()
        except libvirt.libvirtError as e:
            raise DriverError(str(e), "connection")

    async def ping(self) -> str:
        """Open the connection and return the host name libvirt reports."""
        return await self._run(self._ping_sync)

    def check_tools(self) -> Dict[str, Optional[str]]:
        """Locations of the external tools, None where missing."""
        return {tool: shutil.which(tool) for tool in REQUIRED_TOOLS}

    def close(self) -> None:
        """Close the libvirt connection."""
        with self._conn_lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except Exception as e:
                    logger.debug(f"Error closing libvirt connection: {e}")
                self._conn = None
