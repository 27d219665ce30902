"""
Custom exceptions for KVM cluster operations.

This module defines all custom exceptions used throughout the cluster management system.
"""


class KVMClusterError(Exception):
    """Base exception for KVM cluster operations."""

    def __init__(self, message: str, error_code: int = 1000) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ConfigurationError(KVMClusterError):
    """Configuration-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=1001)


class ValidationError(KVMClusterError):
    """Validation errors."""

    def __init__(self, message: str, validation_type: str = "general") -> None:
        super().__init__(
            f"Validation error ({validation_type}): {message}", error_code=1002
        )
        self.validation_type = validation_type


class NotFoundError(KVMClusterError):
    """Base class for missing clusters, templates, members and backups."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=1003)


class ClusterNotFoundError(NotFoundError):
    """Cluster record does not exist."""

    def __init__(self, cluster_name: str) -> None:
        super().__init__(f"Cluster '{cluster_name}' not found")
        self.cluster_name = cluster_name


class TemplateNotFoundError(NotFoundError):
    """Template record does not exist."""

    def __init__(self, template_name: str) -> None:
        super().__init__(f"Template '{template_name}' not found")
        self.template_name = template_name


class MemberNotFoundError(NotFoundError):
    """A VM named as a cluster member does not exist on the hypervisor."""

    def __init__(self, vm_name: str, cluster_name: str) -> None:
        super().__init__(
            f"VM '{vm_name}' for cluster '{cluster_name}' does not exist"
        )
        self.vm_name = vm_name
        self.cluster_name = cluster_name


class VMNotFoundError(NotFoundError):
    """VM not found errors raised by the hypervisor driver."""

    def __init__(self, vm_name: str) -> None:
        super().__init__(f"VM '{vm_name}' not found")
        self.vm_name = vm_name


class BackupNotFoundError(NotFoundError):
    """Backup does not exist."""

    def __init__(self, cluster_name: str, label: str) -> None:
        super().__init__(f"Backup '{label}' of cluster '{cluster_name}' not found")
        self.cluster_name = cluster_name
        self.label = label


class AlreadyExistsError(KVMClusterError):
    """Base class for name collisions."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=1004)


class ClusterExistsError(AlreadyExistsError):
    """Cluster already exists errors."""

    def __init__(self, cluster_name: str) -> None:
        super().__init__(f"Cluster '{cluster_name}' already exists")
        self.cluster_name = cluster_name


class TemplateExistsError(AlreadyExistsError):
    """Template already exists errors."""

    def __init__(self, template_name: str) -> None:
        super().__init__(f"Template '{template_name}' already exists")
        self.template_name = template_name


class BackupExistsError(AlreadyExistsError):
    """Backup label already used for a cluster."""

    def __init__(self, cluster_name: str, label: str) -> None:
        super().__init__(
            f"Backup '{label}' of cluster '{cluster_name}' already exists"
        )
        self.cluster_name = cluster_name
        self.label = label


class DriverError(KVMClusterError):
    """Hypervisor driver errors."""

    def __init__(self, message: str, operation: str = "unknown", vm_name: str = "") -> None:
        target = f" on '{vm_name}'" if vm_name else ""
        super().__init__(
            f"Driver error during {operation}{target}: {message}", error_code=1005
        )
        self.operation = operation
        self.vm_name = vm_name


class TimeoutError(KVMClusterError):
    """Timeout errors."""

    def __init__(self, message: str, operation: str, timeout: int) -> None:
        super().__init__(
            f"Timeout during {operation} after {timeout}s: {message}", error_code=1006
        )
        self.operation = operation
        self.timeout = timeout


class InsufficientMembersError(KVMClusterError):
    """A remove would leave the cluster without members."""

    def __init__(self, cluster_name: str, requested: int, available: int) -> None:
        super().__init__(
            f"Cannot remove {requested} member(s) from cluster '{cluster_name}' "
            f"with {available} member(s); at least one must remain",
            error_code=1007,
        )
        self.cluster_name = cluster_name
        self.requested = requested
        self.available = available


class StoreError(KVMClusterError):
    """Persistence errors (unreadable or malformed records)."""

    def __init__(self, message: str, path: str = "") -> None:
        location = f" ({path})" if path else ""
        super().__init__(f"Store error{location}: {message}", error_code=1008)
        self.path = path
