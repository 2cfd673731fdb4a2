"""
SQLite record store for servers, installations, installed packages,
uploaded archives and settings.

Every call opens its own connection so the store can be shared freely
between queue workers, scan workers and request threads. Multi-row writes
that must be atomic (package replacement, latest-version election) run
inside a single BEGIN IMMEDIATE transaction.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from fleet.models import (
    DEFAULT_MONITORING_LEVEL,
    Installation,
    PackageKind,
    PackageRecord,
    PackageSource,
    Server,
    UploadedPackage,
    utcnow_iso,
)
from fleet.versions import compare_versions, sort_by_newest_version_and_date

logger = logging.getLogger(__name__)


INSTALLATION_FIELDS = (
    'unix_username', 'site_title', 'site_description', 'site_url', 'timezone',
    'admin_email', 'php_version', 'php_memory_limit', 'uses_server_cron',
    'monitoring_level', 'monitoring_status_min', 'monitoring_status_max',
    'monitoring_check_login', 'monitoring_status', 'monitoring_status_since',
    'monitoring_failures', 'monitoring_checked_at', 'auto_login_user', 'last_scan_at',
)

SERVER_FIELDS = ('name', 'hostname', 'ssh_port', 'server_type', 'ssh_private_key')

PACKAGE_FIELDS = {
    PackageKind.PLUGIN: (
        'name', 'title', 'version', 'is_enabled', 'auto_update', 'source',
        'latest_version', 'main_file_path',
    ),
    PackageKind.THEME: (
        'name', 'title', 'version', 'is_enabled', 'auto_update', 'source',
        'latest_version', 'is_active_child',
    ),
}


def new_id() -> str:
    return uuid.uuid4().hex


class Database:
    """SQLite database backing the fleet dashboard."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_connection()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS servers (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    hostname TEXT NOT NULL,
                    ssh_port INTEGER NOT NULL DEFAULT 22,
                    server_type TEXT NOT NULL,
                    ssh_private_key TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS installations (
                    id TEXT PRIMARY KEY,
                    server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                    installation_path TEXT NOT NULL,
                    unix_username TEXT NOT NULL,
                    site_title TEXT NOT NULL DEFAULT '',
                    site_description TEXT,
                    site_url TEXT NOT NULL DEFAULT '',
                    timezone TEXT NOT NULL DEFAULT '',
                    admin_email TEXT NOT NULL DEFAULT '',
                    php_version TEXT NOT NULL DEFAULT '',
                    php_memory_limit TEXT NOT NULL DEFAULT '',
                    uses_server_cron INTEGER NOT NULL DEFAULT 0,
                    monitoring_level TEXT NOT NULL DEFAULT 'normal',
                    monitoring_status_min INTEGER NOT NULL DEFAULT 200,
                    monitoring_status_max INTEGER NOT NULL DEFAULT 399,
                    monitoring_check_login INTEGER NOT NULL DEFAULT 0,
                    monitoring_status TEXT,
                    monitoring_status_since TEXT,
                    monitoring_failures INTEGER NOT NULL DEFAULT 0,
                    monitoring_checked_at TEXT,
                    auto_login_user TEXT,
                    last_scan_at TEXT,
                    UNIQUE (server_id, installation_path)
                );

                CREATE TABLE IF NOT EXISTS plugins (
                    id TEXT PRIMARY KEY,
                    installation_id TEXT NOT NULL REFERENCES installations(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    title TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    version TEXT NOT NULL DEFAULT '',
                    is_enabled INTEGER NOT NULL DEFAULT 0,
                    auto_update INTEGER NOT NULL DEFAULT 0,
                    source TEXT NOT NULL DEFAULT 'unknown',
                    latest_version TEXT,
                    main_file_path TEXT,
                    UNIQUE (installation_id, slug)
                );

                CREATE TABLE IF NOT EXISTS themes (
                    id TEXT PRIMARY KEY,
                    installation_id TEXT NOT NULL REFERENCES installations(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    title TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    version TEXT NOT NULL DEFAULT '',
                    is_enabled INTEGER NOT NULL DEFAULT 0,
                    auto_update INTEGER NOT NULL DEFAULT 0,
                    source TEXT NOT NULL DEFAULT 'unknown',
                    latest_version TEXT,
                    is_active_child INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (installation_id, slug)
                );

                CREATE TABLE IF NOT EXISTS uploaded_plugins (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    title TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    version TEXT NOT NULL,
                    archive_path TEXT NOT NULL,
                    original_filename TEXT NOT NULL,
                    uploaded_at TEXT NOT NULL,
                    is_latest INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (slug, version)
                );

                CREATE TABLE IF NOT EXISTS uploaded_themes (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    title TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    version TEXT NOT NULL,
                    archive_path TEXT NOT NULL,
                    original_filename TEXT NOT NULL,
                    uploaded_at TEXT NOT NULL,
                    is_latest INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (slug, version)
                );

                CREATE TABLE IF NOT EXISTS options (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_installations_server ON installations(server_id);
                CREATE INDEX IF NOT EXISTS idx_plugins_slug ON plugins(slug);
                CREATE INDEX IF NOT EXISTS idx_themes_slug ON themes(slug);
                CREATE INDEX IF NOT EXISTS idx_uploaded_plugins_slug ON uploaded_plugins(slug);
                CREATE INDEX IF NOT EXISTS idx_uploaded_themes_slug ON uploaded_themes(slug);
            """)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    def get_option(self, key: str, default: Any = None) -> Any:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT value FROM options WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return default
        try:
            return json.loads(row['value'])
        except ValueError:
            return row['value']

    def set_option(self, key: str, value: Any):
        raw = value if isinstance(value, str) else json.dumps(value)
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT INTO options (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, raw)
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def create_server(
        self,
        name: str,
        hostname: str,
        server_type: str,
        ssh_private_key: str,
        ssh_port: int = 22
    ) -> Server:
        server = Server(
            id=new_id(),
            name=name,
            hostname=hostname,
            ssh_port=int(ssh_port),
            server_type=server_type,
            ssh_private_key=ssh_private_key,
            created_at=utcnow_iso(),
        )
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT INTO servers (id, name, hostname, ssh_port, server_type, ssh_private_key, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (server.id, server.name, server.hostname, server.ssh_port,
                 server.server_type, server.ssh_private_key, server.created_at)
            )
            conn.commit()
        finally:
            conn.close()
        return server

    def get_server(self, server_id: str) -> Optional[Server]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM servers WHERE id = ?", (server_id,)).fetchone()
            return Server.from_row(row) if row else None
        finally:
            conn.close()

    def find_server_by_name(self, name: str) -> Optional[Server]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM servers WHERE name = ?", (name,)).fetchone()
            return Server.from_row(row) if row else None
        finally:
            conn.close()

    def list_servers(self) -> List[Server]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT * FROM servers ORDER BY name").fetchall()
            return [Server.from_row(row) for row in rows]
        finally:
            conn.close()

    def update_server(self, server_id: str, **fields) -> Optional[Server]:
        updates = {k: v for k, v in fields.items() if k in SERVER_FIELDS}
        if updates:
            assignments = ', '.join(f"{column} = ?" for column in updates)
            conn = self._get_connection()
            try:
                conn.execute(
                    f"UPDATE servers SET {assignments} WHERE id = ?",
                    (*updates.values(), server_id)
                )
                conn.commit()
            finally:
                conn.close()
        return self.get_server(server_id)

    def delete_server(self, server_id: str) -> bool:
        """Delete a server; installations and packages cascade."""
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM servers WHERE id = ?", (server_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Installations
    # ------------------------------------------------------------------

    def get_installation(self, installation_id: str) -> Optional[Installation]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM installations WHERE id = ?", (installation_id,)
            ).fetchone()
            return Installation.from_row(row) if row else None
        finally:
            conn.close()

    def list_installations(self, server_id: Optional[str] = None) -> List[Installation]:
        conn = self._get_connection()
        try:
            if server_id:
                rows = conn.execute(
                    "SELECT * FROM installations WHERE server_id = ? ORDER BY site_title",
                    (server_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM installations ORDER BY site_title").fetchall()
            return [Installation.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_site_titles(self, installation_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(set(installation_ids))
        if not ids:
            return {}
        placeholders = ', '.join('?' for _ in ids)
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT id, site_title FROM installations WHERE id IN ({placeholders})", ids
            ).fetchall()
            return {row['id']: row['site_title'] for row in rows}
        finally:
            conn.close()

    def upsert_installation(
        self,
        server_id: str,
        installation_path: str,
        fields: Dict[str, Any],
        default_monitoring_level: str = DEFAULT_MONITORING_LEVEL
    ) -> Installation:
        """Insert or refresh the installation keyed by (server, path).

        monitoring_level is only set on insert, from the global default.
        """
        values = {k: v for k, v in fields.items() if k in INSTALLATION_FIELDS}

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM installations WHERE server_id = ? AND installation_path = ?",
                (server_id, installation_path)
            ).fetchone()

            if row:
                installation_id = row['id']
                if values:
                    assignments = ', '.join(f"{column} = ?" for column in values)
                    conn.execute(
                        f"UPDATE installations SET {assignments} WHERE id = ?",
                        (*values.values(), installation_id)
                    )
            else:
                installation_id = new_id()
                values.setdefault('monitoring_level', default_monitoring_level)
                values.setdefault('unix_username', '')
                columns = ['id', 'server_id', 'installation_path', *values.keys()]
                placeholders = ', '.join('?' for _ in columns)
                conn.execute(
                    f"INSERT INTO installations ({', '.join(columns)}) VALUES ({placeholders})",
                    (installation_id, server_id, installation_path, *values.values())
                )

        return self.get_installation(installation_id)

    def delete_installations(self, installation_ids: Iterable[str]) -> int:
        ids = list(installation_ids)
        if not ids:
            return 0
        placeholders = ', '.join('?' for _ in ids)
        conn = self._get_connection()
        try:
            cursor = conn.execute(f"DELETE FROM installations WHERE id IN ({placeholders})", ids)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Installed packages
    # ------------------------------------------------------------------

    def find_package(self, kind: PackageKind, installation_id: str, slug: str) -> Optional[PackageRecord]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT * FROM {kind.table} WHERE installation_id = ? AND slug = ?",
                (installation_id, slug)
            ).fetchone()
            return PackageRecord.from_row(row, kind) if row else None
        finally:
            conn.close()

    def list_packages(self, kind: PackageKind, installation_id: Optional[str] = None) -> List[PackageRecord]:
        conn = self._get_connection()
        try:
            if installation_id:
                rows = conn.execute(
                    f"SELECT * FROM {kind.table} WHERE installation_id = ? ORDER BY slug",
                    (installation_id,)
                ).fetchall()
            else:
                rows = conn.execute(f"SELECT * FROM {kind.table} ORDER BY slug").fetchall()
            return [PackageRecord.from_row(row, kind) for row in rows]
        finally:
            conn.close()

    def replace_packages(self, kind: PackageKind, installation_id: str, packages: List[Dict[str, Any]]) -> int:
        """Delete all package rows of an installation and insert the given ones.

        Rows that do not carry source/latest_version inherit them from the
        previous row with the same slug, so provenance survives a rescan.
        """
        allowed = PACKAGE_FIELDS[kind]
        with self._transaction() as conn:
            previous = {
                row['slug']: row
                for row in conn.execute(
                    f"SELECT slug, source, latest_version FROM {kind.table} WHERE installation_id = ?",
                    (installation_id,)
                ).fetchall()
            }
            conn.execute(f"DELETE FROM {kind.table} WHERE installation_id = ?", (installation_id,))

            for package in packages:
                slug = package['slug']
                values = {k: v for k, v in package.items() if k in allowed}
                old = previous.get(slug)
                if old is not None:
                    if not values.get('source'):
                        values['source'] = old['source']
                    if not values.get('latest_version'):
                        values['latest_version'] = old['latest_version']
                values.setdefault('source', PackageSource.UNKNOWN.value)
                if not values['source']:
                    values['source'] = PackageSource.UNKNOWN.value

                columns = ['id', 'installation_id', 'slug', *values.keys()]
                placeholders = ', '.join('?' for _ in columns)
                conn.execute(
                    f"INSERT INTO {kind.table} ({', '.join(columns)}) VALUES ({placeholders})",
                    (new_id(), installation_id, slug, *values.values())
                )
        return len(packages)

    def upsert_package(self, kind: PackageKind, installation_id: str, slug: str, fields: Dict[str, Any]) -> PackageRecord:
        """Insert or update the single (installation, slug) row."""
        values = {k: v for k, v in fields.items() if k in PACKAGE_FIELDS[kind]}
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT id FROM {kind.table} WHERE installation_id = ? AND slug = ?",
                (installation_id, slug)
            ).fetchone()
            if row:
                if values:
                    assignments = ', '.join(f"{column} = ?" for column in values)
                    conn.execute(
                        f"UPDATE {kind.table} SET {assignments} WHERE id = ?",
                        (*values.values(), row['id'])
                    )
            else:
                values.setdefault('name', slug)
                values.setdefault('title', slug)
                columns = ['id', 'installation_id', 'slug', *values.keys()]
                placeholders = ', '.join('?' for _ in columns)
                conn.execute(
                    f"INSERT INTO {kind.table} ({', '.join(columns)}) VALUES ({placeholders})",
                    (new_id(), installation_id, slug, *values.values())
                )
        return self.find_package(kind, installation_id, slug)

    def delete_package(self, kind: PackageKind, installation_id: str, slug: str) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"DELETE FROM {kind.table} WHERE installation_id = ? AND slug = ?",
                (installation_id, slug)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def update_packages_by_slug(self, kind: PackageKind, slug: str, **fields) -> int:
        """Patch every installation's row for a slug (registry metadata)."""
        values = {k: v for k, v in fields.items() if k in ('source', 'latest_version')}
        if not values:
            return 0
        assignments = ', '.join(f"{column} = ?" for column in values)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"UPDATE {kind.table} SET {assignments} WHERE slug = ?",
                (*values.values(), slug)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count_packages_with_source(self, kind: PackageKind, source: str) -> int:
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM {kind.table} WHERE source = ?", (source,)
            ).fetchone()
            return row['n']
        finally:
            conn.close()

    def distinct_plugin_files(self) -> Dict[str, Optional[str]]:
        """slug -> one known main file path (or None) across all sites."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT slug, MAX(main_file_path) AS main_file_path FROM plugins GROUP BY slug"
            ).fetchall()
            return {row['slug']: row['main_file_path'] for row in rows}
        finally:
            conn.close()

    def distinct_theme_slugs(self) -> List[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT DISTINCT slug FROM themes ORDER BY slug").fetchall()
            return [row['slug'] for row in rows]
        finally:
            conn.close()

    def list_packages_with_sites(self, kind: PackageKind) -> List[Dict[str, Any]]:
        """Installed package rows joined with their installation's title/url."""
        conn = self._get_connection()
        try:
            rows = conn.execute(f"""
                SELECT p.*, i.site_title AS site_title, i.site_url AS site_url
                FROM {kind.table} p
                JOIN installations i ON i.id = p.installation_id
                ORDER BY p.slug
            """).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Uploaded archives
    # ------------------------------------------------------------------

    def find_uploaded(self, kind: PackageKind, slug: str, version: str) -> Optional[UploadedPackage]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT * FROM {kind.uploaded_table} WHERE slug = ? AND version = ?",
                (slug, version)
            ).fetchone()
            return UploadedPackage.from_row(row, kind) if row else None
        finally:
            conn.close()

    def get_latest_uploaded(self, kind: PackageKind, slug: str) -> Optional[UploadedPackage]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT * FROM {kind.uploaded_table} WHERE slug = ? AND is_latest = 1",
                (slug,)
            ).fetchone()
            return UploadedPackage.from_row(row, kind) if row else None
        finally:
            conn.close()

    def list_uploaded(self, kind: PackageKind, slug: Optional[str] = None) -> List[UploadedPackage]:
        conn = self._get_connection()
        try:
            if slug:
                rows = conn.execute(
                    f"SELECT * FROM {kind.uploaded_table} WHERE slug = ?", (slug,)
                ).fetchall()
            else:
                rows = conn.execute(f"SELECT * FROM {kind.uploaded_table}").fetchall()
            return sort_by_newest_version_and_date(UploadedPackage.from_row(row, kind) for row in rows)
        finally:
            conn.close()

    def latest_uploaded_versions(self, kind: PackageKind) -> Dict[str, str]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT slug, version FROM {kind.uploaded_table} WHERE is_latest = 1"
            ).fetchall()
            return {row['slug']: row['version'] for row in rows}
        finally:
            conn.close()

    def record_upload(
        self,
        kind: PackageKind,
        slug: str,
        title: str,
        version: str,
        archive_path: str,
        original_filename: str
    ) -> Optional[UploadedPackage]:
        """Store an uploaded archive row and elect the latest version.

        The previous latest row is unset before the new row is marked, in
        the same transaction, so a slug never has two latest rows. Returns
        None when the (slug, version) pair is already stored.
        """
        upload = UploadedPackage(
            id=new_id(),
            kind=kind,
            name=slug,
            title=title,
            slug=slug,
            version=version,
            archive_path=archive_path,
            original_filename=original_filename,
            uploaded_at=utcnow_iso(),
        )
        table = kind.uploaded_table

        with self._transaction() as conn:
            duplicate = conn.execute(
                f"SELECT 1 FROM {table} WHERE slug = ? AND version = ?",
                (slug, version)
            ).fetchone()
            if duplicate:
                return None

            current = conn.execute(
                f"SELECT id, version FROM {table} WHERE slug = ? AND is_latest = 1",
                (slug,)
            ).fetchone()

            upload.is_latest = current is None or compare_versions(version, current['version']) > 0
            if upload.is_latest and current is not None:
                conn.execute(f"UPDATE {table} SET is_latest = 0 WHERE slug = ?", (slug,))

            conn.execute(
                f"INSERT INTO {table} (id, name, title, slug, version, archive_path, "
                f"original_filename, uploaded_at, is_latest) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (upload.id, upload.name, upload.title, upload.slug, upload.version,
                 upload.archive_path, upload.original_filename, upload.uploaded_at,
                 1 if upload.is_latest else 0)
            )
        return upload

    def delete_uploaded_versions(
        self,
        kind: PackageKind,
        slug: str,
        versions: Optional[Iterable[str]] = None
    ) -> List[UploadedPackage]:
        """Delete some (or all) versions of a slug and re-elect the latest.

        Returns the deleted rows so callers can remove their archives.
        """
        table = kind.uploaded_table
        wanted = set(versions) if versions is not None else None

        with self._transaction() as conn:
            rows = [
                UploadedPackage.from_row(row, kind)
                for row in conn.execute(f"SELECT * FROM {table} WHERE slug = ?", (slug,)).fetchall()
            ]
            doomed = [row for row in rows if wanted is None or row.version in wanted]
            for row in doomed:
                conn.execute(f"DELETE FROM {table} WHERE id = ?", (row.id,))

            remaining = [row for row in rows if row not in doomed]
            conn.execute(f"UPDATE {table} SET is_latest = 0 WHERE slug = ?", (slug,))
            if remaining:
                newest = sort_by_newest_version_and_date(remaining)[0]
                conn.execute(f"UPDATE {table} SET is_latest = 1 WHERE id = ?", (newest.id,))

        logger.debug(f"Deleted {len(doomed)} uploaded {kind.value} version(s) of {slug}")
        return doomed
