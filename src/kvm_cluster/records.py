"""
Flat record format for clusters, templates and backup manifests.

Cluster and template records are ``KEY=value`` lines with shell-quoted
values, so a record stays readable by ``source`` in a shell and survives
descriptions containing spaces, quotes or newlines. Member lists are
comma-joined; member names can never contain a comma.
"""

import shlex
from datetime import datetime
from typing import Callable, Dict, List, Optional, TypeVar

from .exceptions import StoreError
from .models import (
    BackupManifest,
    Cluster,
    MemberOrder,
    Membership,
    Template,
    VMResources,
)

T = TypeVar("T")

MEMBER_DELIMITER = ","


def dump_record(fields: Dict[str, str]) -> str:
    """Render an ordered mapping as quoted KEY=value lines."""
    return "".join(f"{key}={shlex.quote(value)}\n" for key, value in fields.items())


def parse_record(text: str, source: str = "") -> Dict[str, str]:
    """Parse KEY=value lines; blank lines and ``#`` comments are ignored."""
    try:
        tokens = shlex.split(text, comments=True)
    except ValueError as e:
        raise StoreError(f"Unparseable record: {e}", source)

    fields: Dict[str, str] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise StoreError(f"Malformed record entry: {token!r}", source)
        fields[key] = value
    return fields


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


def _require(fields: Dict[str, str], key: str, source: str) -> str:
    if key not in fields:
        raise StoreError(f"Missing required field {key}", source)
    return fields[key]


def _convert(
    fields: Dict[str, str], key: str, converter: Callable[[str], T], source: str
) -> T:
    raw = _require(fields, key, source)
    try:
        return converter(raw)
    except ValueError as e:
        raise StoreError(f"Invalid value for {key}: {raw!r} ({e})", source)


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in ("true", "yes", "1"):
        return True
    if normalized in ("false", "no", "0", ""):
        return False
    raise ValueError("expected true or false")


def _parse_members(value: str) -> List[str]:
    return [name for name in value.split(MEMBER_DELIMITER) if name]


def cluster_to_record(cluster: Cluster) -> str:
    fields: Dict[str, str] = {
        "CLUSTER_NAME": cluster.name,
        "DESCRIPTION": cluster.description,
        "CREATED": cluster.created_at.isoformat(),
    }
    if cluster.template:
        fields["TEMPLATE_USED"] = cluster.template
    fields["VM"] = MEMBER_DELIMITER.join(cluster.members)
    fields["VM_COUNT"] = str(cluster.vm_count)
    if cluster.vm_resources is not None:
        fields["VM_RAM"] = str(cluster.vm_resources.ram_mb)
        fields["VM_VCPUS"] = str(cluster.vm_resources.vcpus)
        fields["VM_DISK_SIZE"] = str(cluster.vm_resources.disk_gb)
    fields.update(
        {
            "STARTUP_ORDER": cluster.startup_order.value,
            "STARTUP_DELAY": str(cluster.startup_delay),
            "SHUTDOWN_ORDER": cluster.shutdown_order.value,
            "SHUTDOWN_DELAY": str(cluster.shutdown_delay),
            "AUTO_START": _format_bool(cluster.auto_start),
        }
    )
    return dump_record(fields)


def cluster_from_record(text: str, source: str = "") -> Cluster:
    fields = parse_record(text, source)

    try:
        members = Membership(_parse_members(fields.get("VM", "")))
    except ValueError as e:
        raise StoreError(str(e), source)

    resources: Optional[VMResources] = None
    if "VM_RAM" in fields:
        resources = VMResources(
            ram_mb=_convert(fields, "VM_RAM", int, source),
            vcpus=_convert(fields, "VM_VCPUS", int, source),
            disk_gb=_convert(fields, "VM_DISK_SIZE", int, source),
        )

    return Cluster(
        name=_require(fields, "CLUSTER_NAME", source),
        description=fields.get("DESCRIPTION", ""),
        created_at=_convert(fields, "CREATED", datetime.fromisoformat, source),
        members=members,
        startup_order=_convert(fields, "STARTUP_ORDER", MemberOrder.parse, source),
        startup_delay=_convert(fields, "STARTUP_DELAY", int, source),
        shutdown_order=_convert(fields, "SHUTDOWN_ORDER", MemberOrder.parse, source),
        shutdown_delay=_convert(fields, "SHUTDOWN_DELAY", int, source),
        auto_start=_parse_bool(fields.get("AUTO_START", "false")),
        template=fields.get("TEMPLATE_USED") or None,
        vm_resources=resources,
    )


def template_to_record(template: Template) -> str:
    return dump_record(
        {
            "TEMPLATE_NAME": template.name,
            "DESCRIPTION": template.description,
            "CREATED": template.created_at.isoformat(),
            "VM_COUNT": str(template.member_count),
            "VM_RAM": str(template.ram_mb),
            "VM_VCPUS": str(template.vcpus),
            "VM_DISK_SIZE": str(template.disk_gb),
            "VM_OS_VARIANT": template.os_variant,
            "STARTUP_ORDER": template.startup_order.value,
            "STARTUP_DELAY": str(template.startup_delay),
            "SHUTDOWN_ORDER": template.shutdown_order.value,
            "SHUTDOWN_DELAY": str(template.shutdown_delay),
            "AUTO_START": _format_bool(template.auto_start),
            "NETWORK": template.network,
            "STORAGE_POOL": template.storage_pool,
            "VM_PREFIX": template.name_prefix,
        }
    )


def template_from_record(text: str, source: str = "") -> Template:
    fields = parse_record(text, source)
    return Template(
        name=_require(fields, "TEMPLATE_NAME", source),
        description=fields.get("DESCRIPTION", ""),
        created_at=_convert(fields, "CREATED", datetime.fromisoformat, source),
        member_count=_convert(fields, "VM_COUNT", int, source),
        ram_mb=_convert(fields, "VM_RAM", int, source),
        vcpus=_convert(fields, "VM_VCPUS", int, source),
        disk_gb=_convert(fields, "VM_DISK_SIZE", int, source),
        os_variant=fields.get("VM_OS_VARIANT", "generic"),
        startup_order=_convert(fields, "STARTUP_ORDER", MemberOrder.parse, source),
        startup_delay=_convert(fields, "STARTUP_DELAY", int, source),
        shutdown_order=_convert(fields, "SHUTDOWN_ORDER", MemberOrder.parse, source),
        shutdown_delay=_convert(fields, "SHUTDOWN_DELAY", int, source),
        auto_start=_parse_bool(fields.get("AUTO_START", "false")),
        network=fields.get("NETWORK", "default"),
        storage_pool=fields.get("STORAGE_POOL", "default"),
        name_prefix=fields.get("VM_PREFIX", ""),
    )


def manifest_to_text(manifest: BackupManifest) -> str:
    """Human-readable manifest; also the source of truth for listings."""
    lines = [
        "Cluster Backup Manifest",
        "=======================",
        f"Cluster: {manifest.cluster_name}",
        f"Backup Label: {manifest.label}",
        f"Created: {manifest.created_at.isoformat()}",
        f"Member Count: {manifest.member_count}",
        f"Captured Members: {MEMBER_DELIMITER.join(manifest.captured_members)}",
        "Files:",
    ]
    lines.extend(f"  {name}" for name in manifest.files)
    return "\n".join(lines) + "\n"


def manifest_from_text(text: str, source: str = "") -> BackupManifest:
    headers: Dict[str, str] = {}
    files: List[str] = []
    in_files = False
    for line in text.splitlines():
        if in_files:
            if line.startswith("  ") and line.strip():
                files.append(line.strip())
            continue
        if line == "Files:":
            in_files = True
            continue
        key, sep, value = line.partition(": ")
        if sep:
            headers[key] = value

    try:
        return BackupManifest(
            cluster_name=headers["Cluster"],
            label=headers["Backup Label"],
            created_at=datetime.fromisoformat(headers["Created"]),
            member_count=int(headers["Member Count"]),
            captured_members=_parse_members(headers.get("Captured Members", "")),
            files=files,
            path=source or None,
        )
    except (KeyError, ValueError) as e:
        raise StoreError(f"Malformed backup manifest: {e}", source)
