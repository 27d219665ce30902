"""KVM Cluster - Lifecycle management for groups of libvirt virtual machines."""

__version__ = "0.1.0"
__author__ = "tomaz"
__description__ = "KVM cluster lifecycle coordinator"

# Import main classes for easy access
from .coordinator import ClusterCoordinator
from .driver import HypervisorDriver, LibvirtDriver
from .store import ClusterStore
from .models import (
    Cluster,
    Template,
    Membership,
    MemberOrder,
    OperationReport,
    OperationOutcome,
    HealthReport,
    HealthStatus,
    BackupManifest,
    VMSpec,
)
from .exceptions import (
    KVMClusterError,
    ConfigurationError,
    ValidationError,
    ClusterNotFoundError,
    ClusterExistsError,
    TemplateNotFoundError,
    MemberNotFoundError,
    InsufficientMembersError,
    DriverError,
)
from .security import SecurityValidator, CommandBuilder

__all__ = [
    "__version__",
    "__author__",
    "__description__",
    "ClusterCoordinator",
    "HypervisorDriver",
    "LibvirtDriver",
    "ClusterStore",
    "Cluster",
    "Template",
    "Membership",
    "MemberOrder",
    "OperationReport",
    "OperationOutcome",
    "HealthReport",
    "HealthStatus",
    "BackupManifest",
    "VMSpec",
    "KVMClusterError",
    "ConfigurationError",
    "ValidationError",
    "ClusterNotFoundError",
    "ClusterExistsError",
    "TemplateNotFoundError",
    "MemberNotFoundError",
    "InsufficientMembersError",
    "DriverError",
    "SecurityValidator",
    "CommandBuilder",
]
