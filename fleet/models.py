"""
Data models for servers, installations, packages and queue jobs.
"""

import sqlite3
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================================
# Constants
# ============================================================================

SERVER_TYPE_CPANEL = "CPANEL_WHM"
SERVER_TYPE_PLESK = "PLESK"
SERVER_TYPES = (SERVER_TYPE_CPANEL, SERVER_TYPE_PLESK)

MONITORING_LEVELS = ("off", "normal", "high")
DEFAULT_MONITORING_LEVEL = "normal"


class PackageKind(str, Enum):
    PLUGIN = "plugin"
    THEME = "theme"

    @property
    def table(self) -> str:
        return "plugins" if self is PackageKind.PLUGIN else "themes"

    @property
    def uploaded_table(self) -> str:
        return "uploaded_plugins" if self is PackageKind.PLUGIN else "uploaded_themes"


class PackageOperation(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    DELETE = "delete"


QUEUEABLE_OPERATIONS = (PackageOperation.INSTALL, PackageOperation.UPDATE)
DIRECT_OPERATIONS = (PackageOperation.ACTIVATE, PackageOperation.DEACTIVATE, PackageOperation.DELETE)


class PackageSource(str, Enum):
    REGISTRY = "wordpress.org"
    EXTERNAL = "external"
    UNKNOWN = "unknown"


def normalize_source(value: Optional[str]) -> PackageSource:
    """Anything that is not explicitly external is treated as registry-backed."""
    if value == PackageSource.EXTERNAL.value or value is PackageSource.EXTERNAL:
        return PackageSource.EXTERNAL
    return PackageSource.REGISTRY


class OperationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


def utcnow_iso() -> str:
    return datetime.utcnow().isoformat()


def _bool(value: Any) -> bool:
    return bool(value) if value is not None else False


# ============================================================================
# Inventory records
# ============================================================================

@dataclass
class Server:
    """A remote host reachable over SSH as root."""
    id: str
    name: str
    hostname: str
    ssh_port: int
    server_type: str
    ssh_private_key: str
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'Server':
        return cls(
            id=row['id'],
            name=row['name'],
            hostname=row['hostname'],
            ssh_port=row['ssh_port'],
            server_type=row['server_type'],
            ssh_private_key=row['ssh_private_key'],
            created_at=row['created_at'],
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Server fields without key material."""
        data = asdict(self)
        data.pop('ssh_private_key')
        return data


@dataclass
class Installation:
    """A WordPress site discovered on a server."""
    id: str
    server_id: str
    installation_path: str
    unix_username: str
    site_title: str = ""
    site_description: Optional[str] = None
    site_url: str = ""
    timezone: str = ""
    admin_email: str = ""
    php_version: str = ""
    php_memory_limit: str = ""
    uses_server_cron: bool = False
    monitoring_level: str = DEFAULT_MONITORING_LEVEL
    monitoring_status_min: int = 200
    monitoring_status_max: int = 399
    monitoring_check_login: bool = False
    monitoring_status: Optional[str] = None
    monitoring_status_since: Optional[str] = None
    monitoring_failures: int = 0
    monitoring_checked_at: Optional[str] = None
    auto_login_user: Optional[str] = None
    last_scan_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'Installation':
        data = dict(row)
        data['uses_server_cron'] = _bool(data.get('uses_server_cron'))
        data['monitoring_check_login'] = _bool(data.get('monitoring_check_login'))
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PackageRecord:
    """An installed plugin or theme on one installation."""
    id: str
    installation_id: str
    kind: PackageKind
    name: str
    title: str
    slug: str
    version: str = ""
    is_enabled: bool = False
    auto_update: bool = False
    source: str = PackageSource.UNKNOWN.value
    latest_version: Optional[str] = None
    main_file_path: Optional[str] = None
    is_active_child: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row, kind: PackageKind) -> 'PackageRecord':
        keys = row.keys()
        return cls(
            id=row['id'],
            installation_id=row['installation_id'],
            kind=kind,
            name=row['name'],
            title=row['title'],
            slug=row['slug'],
            version=row['version'] or "",
            is_enabled=_bool(row['is_enabled']),
            auto_update=_bool(row['auto_update']),
            source=row['source'],
            latest_version=row['latest_version'],
            main_file_path=row['main_file_path'] if 'main_file_path' in keys else None,
            is_active_child=_bool(row['is_active_child']) if 'is_active_child' in keys else False,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data


@dataclass
class UploadedPackage:
    """A locally stored plugin/theme archive."""
    id: str
    kind: PackageKind
    name: str
    title: str
    slug: str
    version: str
    archive_path: str
    original_filename: str
    uploaded_at: str
    is_latest: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row, kind: PackageKind) -> 'UploadedPackage':
        return cls(
            id=row['id'],
            kind=kind,
            name=row['name'],
            title=row['title'],
            slug=row['slug'],
            version=row['version'],
            archive_path=row['archive_path'],
            original_filename=row['original_filename'],
            uploaded_at=row['uploaded_at'],
            is_latest=_bool(row['is_latest']),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data


# ============================================================================
# Operations and queue jobs
# ============================================================================

@dataclass
class OperationResult:
    """Outcome of one package operation; exactly one status bucket."""
    status: OperationStatus
    message: str

    @classmethod
    def success(cls, message: str) -> 'OperationResult':
        return cls(OperationStatus.SUCCESS, message)

    @classmethod
    def failed(cls, message: str) -> 'OperationResult':
        return cls(OperationStatus.FAILED, message)

    @classmethod
    def skipped(cls, message: str) -> 'OperationResult':
        return cls(OperationStatus.SKIPPED, message)

    def to_dict(self) -> Dict[str, str]:
        return {'status': self.status.value, 'message': self.message}


@dataclass
class PackageOperationInput:
    """One (installation, kind, slug, operation) request."""
    installation_id: str
    kind: PackageKind
    slug: str
    operation: PackageOperation
    source: Optional[PackageSource] = None


@dataclass
class PackageJob:
    """A queued package operation, alive only for one queue run."""
    job_id: str
    enqueued_at: str
    installation_id: str
    kind: PackageKind
    slug: str
    operation: PackageOperation
    source: Optional[PackageSource] = None
    site_title: Optional[str] = None

    def to_input(self) -> PackageOperationInput:
        return PackageOperationInput(
            installation_id=self.installation_id,
            kind=self.kind,
            slug=self.slug,
            operation=self.operation,
            source=self.source,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'site_id': self.installation_id,
            'site_title': self.site_title or self.installation_id,
            'kind': self.kind.value,
            'slug': self.slug,
            'operation': self.operation.value,
        }


@dataclass
class QueueSnapshot:
    """Progress of one queue run generation."""
    run_id: Optional[str] = None
    total: int = 0
    current: int = 0
    queued: int = 0
    running: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    is_complete: bool = False
    updated_at: str = field(default_factory=utcnow_iso)

    def recompute_current(self):
        self.current = self.success + self.failed + self.skipped

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
