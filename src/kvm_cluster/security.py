"""
Input validation and command building for KVM cluster operations.

Names end up in file paths, record values and hypervisor command lines, so
they are checked against a strict pattern before anything touches disk or libvirt.
"""

import re
from pathlib import Path
from typing import Any, List, Optional

from .exceptions import ValidationError


class SecurityValidator:
    """Security validation utilities."""

    # Valid patterns for various inputs
    NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
    LABEL_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
    OS_VARIANT_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
    MAX_NAME_LENGTH = 64

    @staticmethod
    def _validate_name(name: Any, kind: str) -> str:
        if not name or not isinstance(name, str):
            raise ValidationError(f"{kind} name must be a non-empty string", kind.lower())

        if len(name) > SecurityValidator.MAX_NAME_LENGTH:
            raise ValidationError(
                f"{kind} name must be {SecurityValidator.MAX_NAME_LENGTH} characters or less",
                kind.lower(),
            )

        if not SecurityValidator.NAME_PATTERN.match(name):
            raise ValidationError(
                f"{kind} name can only contain letters, numbers, underscores, and hyphens",
                kind.lower(),
            )

        return name

    @staticmethod
    def validate_vm_name(name: str) -> str:
        """
        Validate a VM name.

        Args:
            name: VM name to validate

        Returns:
            str: Validated VM name

        Raises:
            ValidationError: If VM name is invalid
        """
        return SecurityValidator._validate_name(name, "VM")

    @staticmethod
    def validate_cluster_name(name: str) -> str:
        """Validate a cluster name (same rules as VM names)."""
        return SecurityValidator._validate_name(name, "Cluster")

    @staticmethod
    def validate_template_name(name: str) -> str:
        """Validate a template name (same rules as VM names)."""
        return SecurityValidator._validate_name(name, "Template")

    @staticmethod
    def validate_backup_label(label: str) -> str:
        """Backup labels become directory names; dots are allowed but not '..'."""
        if not label or not isinstance(label, str):
            raise ValidationError("Backup label must be a non-empty string", "backup")

        if len(label) > SecurityValidator.MAX_NAME_LENGTH:
            raise ValidationError("Backup label must be 64 characters or less", "backup")

        if not SecurityValidator.LABEL_PATTERN.match(label) or label.startswith("."):
            raise ValidationError(
                "Backup label can only contain letters, numbers, dots, underscores, and hyphens",
                "backup",
            )

        return label

    @staticmethod
    def validate_positive_int(value: Any, field_name: str) -> int:
        """Reject booleans, non-integers and values below one."""
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{field_name} must be a positive integer", "number")
        if value < 1:
            raise ValidationError(f"{field_name} must be a positive integer", "number")
        return value

    @staticmethod
    def validate_non_negative_int(value: Any, field_name: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{field_name} must be a non-negative integer", "number")
        return value

    @staticmethod
    def validate_os_variant(os_variant: str) -> str:
        if not os_variant or not SecurityValidator.OS_VARIANT_PATTERN.match(os_variant):
            raise ValidationError(f"Invalid OS variant: {os_variant!r}", "os_variant")
        return os_variant

    @staticmethod
    def sanitize_path(path: str, base_dir: Optional[str] = None) -> str:
        """
        Sanitize and validate file path to prevent path traversal attacks.

        Args:
            path: File path to sanitize
            base_dir: Base directory to restrict access to

        Returns:
            str: Sanitized path

        Raises:
            ValidationError: If path is invalid or attempts traversal
        """
        if not path or not isinstance(path, str):
            raise ValidationError("Path must be a non-empty string")

        path_obj = Path(path)

        if base_dir:
            base_path = Path(base_dir).resolve()
            try:
                resolved_path = (base_path / path_obj).resolve()
            except (OSError, ValueError) as e:
                raise ValidationError(f"Invalid path: {path}") from e
            if resolved_path != base_path and base_path not in resolved_path.parents:
                raise ValidationError(f"Path traversal detected: {path}")
            return str(resolved_path)

        try:
            return str(path_obj.resolve())
        except (OSError, ValueError) as e:
            raise ValidationError(f"Invalid path: {path}") from e


class CommandBuilder:
    """Builds argv lists for the external provisioning tools.

    Commands are executed without a shell, so arguments are passed verbatim
    after validation rather than quoted.
    """

    @staticmethod
    def qemu_img_create(disk_path: str, size_gb: int, disk_format: str = "qcow2") -> List[str]:
        """
        Build a qemu-img command creating an empty disk image.

        Args:
            disk_path: Absolute path of the new image
            size_gb: Size in gigabytes
            disk_format: Image format

        Returns:
            List[str]: argv for qemu-img
        """
        SecurityValidator.validate_positive_int(size_gb, "Disk size")
        if disk_format not in ("qcow2", "raw"):
            raise ValidationError(f"Unsupported disk format: {disk_format}", "disk_format")
        return ["qemu-img", "create", "-f", disk_format, disk_path, f"{size_gb}G"]

    @staticmethod
    def virt_install_xml(
        name: str,
        ram_mb: int,
        vcpus: int,
        disk_path: str,
        os_variant: str,
        network: str,
    ) -> List[str]:
        """
        Build a virt-install command that renders a domain definition without
        creating or booting anything.

        Returns:
            List[str]: argv for virt-install
        """
        SecurityValidator.validate_vm_name(name)
        SecurityValidator.validate_positive_int(ram_mb, "RAM")
        SecurityValidator.validate_positive_int(vcpus, "vCPUs")
        SecurityValidator.validate_os_variant(os_variant)
        SecurityValidator.validate_vm_name(network)

        return [
            "virt-install",
            "--name", name,
            "--memory", str(ram_mb),
            "--vcpus", str(vcpus),
            "--disk", f"path={disk_path},format=qcow2",
            "--os-variant", os_variant,
            "--network", f"network={network}",
            "--graphics", "vnc",
            "--import",
            "--noautoconsole",
            "--print-xml",
        ]
