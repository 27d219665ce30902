"""
Filesystem-backed persistence for clusters, templates and backups.

Layout under the store root::

    clusters/<name>.conf
    templates/<name>.conf
    backups/<cluster>/<label>/manifest.txt
    backups/<cluster>/<label>/cluster.conf
    backups/<cluster>/<label>/<vm>.xml
"""

from __future__ import annotations

import fcntl
import os
import shutil
import tempfile
from pathlib import Path
from typing import IO, Dict, List, Optional

from .exceptions import (
    BackupExistsError,
    BackupNotFoundError,
    ClusterNotFoundError,
    StoreError,
    TemplateNotFoundError,
)
from .logging import logger
from .models import BackupManifest, Cluster, Template
from .records import (
    cluster_from_record,
    cluster_to_record,
    manifest_from_text,
    manifest_to_text,
    template_from_record,
    template_to_record,
)
from .security import SecurityValidator

RECORD_SUFFIX = ".conf"
MANIFEST_FILE = "manifest.txt"
CLUSTER_SNAPSHOT_FILE = "cluster.conf"
CONFIG_SUFFIX = ".xml"
LOCK_SUFFIX = ".lock"


class ClusterStore:
    """Reads and writes cluster, template and backup records under one root."""

    def __init__(self, root: str) -> None:
        self.root = Path(root).expanduser()
        self.clusters_dir = self.root / "clusters"
        self.templates_dir = self.root / "templates"
        self.backups_dir = self.root / "backups"

    def initialize(self) -> None:
        """Create the directory layout if missing."""
        for directory in (self.clusters_dir, self.templates_dir, self.backups_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # -- helpers ---------------------------------------------------------

    def _cluster_path(self, name: str) -> Path:
        SecurityValidator.validate_cluster_name(name)
        return self.clusters_dir / f"{name}{RECORD_SUFFIX}"

    def _template_path(self, name: str) -> Path:
        SecurityValidator.validate_template_name(name)
        return self.templates_dir / f"{name}{RECORD_SUFFIX}"

    def _backup_path(self, cluster_name: str, label: str) -> Path:
        SecurityValidator.validate_cluster_name(cluster_name)
        SecurityValidator.validate_backup_label(label)
        return self.backups_dir / cluster_name / label

    @staticmethod
    def _write_atomic(path: Path, content: str) -> None:
        """Write via a sibling temp file and rename so readers never see partial records."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StoreError(f"Failed to write record: {e}", str(path))

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text()
        except OSError as e:
            raise StoreError(f"Failed to read record: {e}", str(path))

    @staticmethod
    def _list_names(directory: Path) -> List[str]:
        if not directory.is_dir():
            return []
        return sorted(
            p.name[: -len(RECORD_SUFFIX)]
            for p in directory.iterdir()
            if p.is_file() and p.name.endswith(RECORD_SUFFIX) and not p.name.startswith(".")
        )

    # -- locking ---------------------------------------------------------

    def _acquire(self, path: Path) -> IO[str]:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            handle = open(path, "a")
        except OSError as e:
            raise StoreError(f"Failed to open lock file: {e}", str(path))
        try:
            fcntl.flock(handle, fcntl.LOCK_EX)
        except OSError as e:
            handle.close()
            raise StoreError(f"Failed to lock record: {e}", str(path))
        return handle

    def lock_cluster(self, name: str) -> IO[str]:
        """Block until this caller holds the exclusive lock on a cluster record.

        The lock lives on a hidden sibling file and is shared with every
        process using the same store root. Keep the returned handle open
        until ``release_lock``.
        """
        path = self._cluster_path(name)
        return self._acquire(path.with_name(f".{name}{LOCK_SUFFIX}"))

    def lock_template(self, name: str) -> IO[str]:
        """Exclusive lock on a template record; see ``lock_cluster``."""
        path = self._template_path(name)
        return self._acquire(path.with_name(f".{name}{LOCK_SUFFIX}"))

    @staticmethod
    def release_lock(handle: IO[str]) -> None:
        try:
            fcntl.flock(handle, fcntl.LOCK_UN)
        finally:
            handle.close()

    # -- clusters --------------------------------------------------------

    def cluster_exists(self, name: str) -> bool:
        return self._cluster_path(name).is_file()

    def load_cluster(self, name: str) -> Cluster:
        path = self._cluster_path(name)
        if not path.is_file():
            raise ClusterNotFoundError(name)
        return cluster_from_record(self._read(path), str(path))

    def save_cluster(self, cluster: Cluster) -> None:
        path = self._cluster_path(cluster.name)
        self._write_atomic(path, cluster_to_record(cluster))
        logger.debug(f"Saved cluster record {path}", cluster=cluster.name)

    def delete_cluster(self, name: str) -> None:
        path = self._cluster_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            raise ClusterNotFoundError(name)
        except OSError as e:
            raise StoreError(f"Failed to delete record: {e}", str(path))
        logger.debug(f"Deleted cluster record {path}", cluster=name)

    def list_clusters(self) -> List[str]:
        return self._list_names(self.clusters_dir)

    # -- templates -------------------------------------------------------

    def template_exists(self, name: str) -> bool:
        return self._template_path(name).is_file()

    def load_template(self, name: str) -> Template:
        path = self._template_path(name)
        if not path.is_file():
            raise TemplateNotFoundError(name)
        return template_from_record(self._read(path), str(path))

    def save_template(self, template: Template) -> None:
        path = self._template_path(template.name)
        self._write_atomic(path, template_to_record(template))
        logger.debug(f"Saved template record {path}", template=template.name)

    def list_templates(self) -> List[str]:
        return self._list_names(self.templates_dir)

    # -- backups ---------------------------------------------------------

    def backup_exists(self, cluster_name: str, label: str) -> bool:
        return self._backup_path(cluster_name, label).is_dir()

    def save_backup(
        self,
        manifest: BackupManifest,
        cluster: Cluster,
        member_configs: Dict[str, str],
    ) -> BackupManifest:
        """
        Persist a backup: manifest, cluster snapshot and one definition per member.

        Files are written into a staging directory and renamed into place,
        so a partially written backup is never listed.

        Returns:
            BackupManifest: the manifest with ``files`` and ``path`` filled in
        """
        final_dir = self._backup_path(manifest.cluster_name, manifest.label)
        if final_dir.exists():
            raise BackupExistsError(manifest.cluster_name, manifest.label)

        parent = final_dir.parent
        parent.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(tempfile.mkdtemp(dir=parent, prefix=f".{manifest.label}."))

        try:
            files = [CLUSTER_SNAPSHOT_FILE]
            (staging_dir / CLUSTER_SNAPSHOT_FILE).write_text(cluster_to_record(cluster))

            for vm_name, config in member_configs.items():
                SecurityValidator.validate_vm_name(vm_name)
                filename = f"{vm_name}{CONFIG_SUFFIX}"
                (staging_dir / filename).write_text(config)
                files.append(filename)

            manifest.files = files
            manifest.captured_members = list(member_configs)
            manifest.member_configs = dict(member_configs)
            (staging_dir / MANIFEST_FILE).write_text(manifest_to_text(manifest))

            os.rename(staging_dir, final_dir)
        except OSError as e:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise StoreError(f"Failed to write backup: {e}", str(final_dir))

        manifest.path = str(final_dir)
        logger.debug(
            f"Saved backup {manifest.label} of {manifest.cluster_name}",
            cluster=manifest.cluster_name,
            label=manifest.label,
            backup_dir=str(final_dir),
        )
        return manifest

    def load_backup(self, cluster_name: str, label: str) -> BackupManifest:
        """Load a manifest together with its captured member definitions."""
        backup_dir = self._backup_path(cluster_name, label)
        manifest_path = backup_dir / MANIFEST_FILE
        if not manifest_path.is_file():
            raise BackupNotFoundError(cluster_name, label)

        manifest = manifest_from_text(self._read(manifest_path), str(backup_dir))
        for vm_name in manifest.captured_members:
            config_path = backup_dir / f"{vm_name}{CONFIG_SUFFIX}"
            manifest.member_configs[vm_name] = self._read(config_path)
        return manifest

    def load_backup_cluster(self, cluster_name: str, label: str) -> Cluster:
        """The cluster record as it was when the backup was taken."""
        path = self._backup_path(cluster_name, label) / CLUSTER_SNAPSHOT_FILE
        if not path.is_file():
            raise BackupNotFoundError(cluster_name, label)
        return cluster_from_record(self._read(path), str(path))

    def list_backups(self, cluster_name: Optional[str] = None) -> List[BackupManifest]:
        """Manifests sorted by creation time, optionally for one cluster."""
        if not self.backups_dir.is_dir():
            return []

        if cluster_name is not None:
            SecurityValidator.validate_cluster_name(cluster_name)
            cluster_dirs = [self.backups_dir / cluster_name]
        else:
            cluster_dirs = sorted(p for p in self.backups_dir.iterdir() if p.is_dir())

        manifests: List[BackupManifest] = []
        for cluster_dir in cluster_dirs:
            if not cluster_dir.is_dir():
                continue
            for backup_dir in sorted(cluster_dir.iterdir()):
                manifest_path = backup_dir / MANIFEST_FILE
                if backup_dir.name.startswith(".") or not manifest_path.is_file():
                    continue
                try:
                    manifests.append(
                        manifest_from_text(self._read(manifest_path), str(backup_dir))
                    )
                except StoreError as e:
                    logger.warning(
                        f"Skipping unreadable backup manifest: {e}",
                        backup_dir=str(backup_dir),
                    )

        manifests.sort(key=lambda m: (m.created_at, m.cluster_name, m.label))
        return manifests
