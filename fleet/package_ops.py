"""
Single package operations on one WordPress installation.

Each call performs one install/update/activate/deactivate/delete for one
plugin or theme, then re-reads that package from the site and patches the
local inventory row (never a full rescan). Results are reported as
OperationResult values: "skipped" when the operation does not apply,
"failed" for errors, "success" otherwise.
"""

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set

from fleet.errors import FleetError, PackageOperationError, RemoteCommandError
from fleet.models import (
    Installation,
    OperationResult,
    PackageKind,
    PackageOperation,
    PackageOperationInput,
    PackageRecord,
    PackageSource,
    normalize_source,
)
from fleet.single_flight import SingleFlight
from fleet.versions import compare_versions
from fleet.wp_cli import parse_json, parse_json_array, shell_escape, trim_error

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ('active', 'active-network')
MISSING_PACKAGE_MARKERS = ('not installed', 'could not be found', "doesn't exist", 'does not exist')
_UNSAFE_FILENAME_CHARS = re.compile(r'[^a-zA-Z0-9._-]')


@dataclass
class ExternalAsset:
    """An uploaded archive and where it lives on a target host."""
    asset_key: str
    local_path: str
    remote_dir: str
    remote_path: str
    version: str


def is_missing_package_error(output: str) -> bool:
    normalized = (output or '').lower()
    return any(marker in normalized for marker in MISSING_PACKAGE_MARKERS)


def is_active_status(status: Optional[str]) -> bool:
    return status in ACTIVE_STATUSES


def _label(kind: PackageKind) -> str:
    return kind.value.capitalize()


class SitePackageOperations:
    """Executes package operations against installations over WP-CLI."""

    def __init__(self, db, remote, wp_cli, upload_root: Path = Path('.')):
        self.db = db
        self.remote = remote
        self.wp_cli = wp_cli
        self.upload_root = Path(upload_root)
        self._uploaded_assets: Dict[str, Set[str]] = {}
        self._assets_lock = threading.Lock()
        self._upload_flight = SingleFlight()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def execute(self, op: PackageOperationInput) -> OperationResult:
        """Run one operation. Never raises: errors come back as a failed result."""
        try:
            return self._execute(op)
        except Exception as e:
            logger.error(f"{op.operation.value} {op.kind.value} '{op.slug}' on {op.installation_id} failed: {e}")
            return OperationResult.failed(str(e) or e.__class__.__name__)

    def _execute(self, op: PackageOperationInput) -> OperationResult:
        installation = self.db.get_installation(op.installation_id)
        if installation is None:
            return OperationResult.failed(f"Site not found: {op.installation_id}")

        self.wp_cli.ensure_installed(installation.server_id)

        if op.operation in (PackageOperation.INSTALL, PackageOperation.UPDATE):
            return self._update_or_install(installation, op)
        if op.operation is PackageOperation.ACTIVATE:
            return self._activate(installation, op.kind, op.slug)
        if op.operation is PackageOperation.DEACTIVATE:
            return self._deactivate(installation, op.kind, op.slug)
        if op.operation is PackageOperation.DELETE:
            return self._delete(installation, op.kind, op.slug)

        raise ValueError(f"Unsupported package operation: {op.operation!r}")

    # ------------------------------------------------------------------
    # install / update
    # ------------------------------------------------------------------

    def _update_or_install(self, installation: Installation, op: PackageOperationInput) -> OperationResult:
        kind, slug = op.kind, op.slug
        is_update = op.operation is PackageOperation.UPDATE
        existing = self.db.find_package(kind, installation.id, slug)

        if is_update and existing is None:
            return OperationResult.skipped(f'{_label(kind)} "{slug}" is not installed on this site')

        if op.source in (PackageSource.REGISTRY, PackageSource.EXTERNAL):
            source = op.source
        else:
            source = normalize_source(existing.source if existing else None)

        was_active = bool(existing and existing.is_enabled)
        latest_hint = existing.latest_version if existing else None

        if source is PackageSource.EXTERNAL:
            asset = self._resolve_external_asset(kind, slug)
            latest_hint = asset.version

            if is_update and compare_versions(asset.version, existing.version) <= 0:
                return OperationResult.skipped(f'{_label(kind)} "{slug}" is already up to date')

            remote_path = self._ensure_asset_on_server(installation.server_id, asset)
            self.wp_cli.run(installation, [kind.value, 'install', remote_path, '--force'])
        else:
            if is_update and existing.latest_version and compare_versions(existing.latest_version, existing.version) <= 0:
                return OperationResult.skipped(f'{_label(kind)} "{slug}" is already up to date')

            if is_update:
                self.wp_cli.run(installation, [kind.value, 'update', slug])
            else:
                self.wp_cli.run(installation, [kind.value, 'install', slug, '--force'])

        if is_update:
            self._restore_activation_state(installation, kind, slug, was_active)

        self._sync_package(installation, kind, slug, source=source, latest_hint=latest_hint)

        action = 'updated' if is_update else 'installed'
        return OperationResult.success(f'{_label(kind)} "{slug}" {action}')

    def _restore_activation_state(self, installation: Installation, kind: PackageKind, slug: str, was_active: bool):
        """Updates can silently flip activation; put it back. Best-effort."""
        try:
            if kind is PackageKind.PLUGIN:
                verb = 'activate' if was_active else 'deactivate'
                self.wp_cli.run(installation, ['plugin', verb, slug], allow_failure=True)
            elif was_active:
                self.wp_cli.run(installation, ['theme', 'activate', slug], allow_failure=True)
        except FleetError as e:
            logger.warning(f"Could not restore activation state of {kind.value} '{slug}': {e}")

    # ------------------------------------------------------------------
    # activate / deactivate
    # ------------------------------------------------------------------

    def _activate(self, installation: Installation, kind: PackageKind, slug: str) -> OperationResult:
        existing = self.db.find_package(kind, installation.id, slug)
        if existing is None:
            return OperationResult.skipped(f'{_label(kind)} "{slug}" is not installed on this site')
        if existing.is_enabled:
            return OperationResult.skipped(f'{_label(kind)} "{slug}" is already active')

        if kind is PackageKind.PLUGIN:
            self.wp_cli.run(installation, ['plugin', 'activate', slug])
            self._sync_package(installation, kind, slug)
            return OperationResult.success(f'Plugin "{slug}" activated')

        # Theme activation is exclusive: remember who loses it.
        previous_active = self._active_theme_slug(installation)
        self.wp_cli.run(installation, ['theme', 'activate', slug])
        self._sync_package(installation, kind, slug)
        if previous_active and previous_active != slug:
            self._sync_package(installation, kind, previous_active)

        return OperationResult.success(f'Theme "{slug}" activated')

    def _deactivate(self, installation: Installation, kind: PackageKind, slug: str) -> OperationResult:
        existing = self.db.find_package(kind, installation.id, slug)
        if existing is None:
            return OperationResult.skipped(f'{_label(kind)} "{slug}" is not installed on this site')
        if not existing.is_enabled:
            return OperationResult.skipped(f'{_label(kind)} "{slug}" is already inactive')

        if kind is PackageKind.PLUGIN:
            self.wp_cli.run(installation, ['plugin', 'deactivate', slug])
            self._sync_package(installation, kind, slug)
            return OperationResult.success(f'Plugin "{slug}" deactivated')

        fallback = self._switch_active_theme_away_from(installation, slug)
        self._sync_package(installation, kind, slug)
        if fallback != slug:
            self._sync_package(installation, kind, fallback)

        return OperationResult.success(f'Theme "{slug}" deactivated')

    def _switch_active_theme_away_from(self, installation: Installation, slug: str) -> str:
        """
        Make sure `slug` is not the active theme by activating another one.

        Returns the theme that is active afterwards. WordPress always has an
        active theme, so with no other theme installed this is fatal.
        """
        themes = self._theme_list(installation)
        active = next((theme for theme in themes if is_active_status(theme.get('status'))), None)

        if active is None or active.get('name') != slug:
            return (active or {}).get('name') or slug

        fallback = next((theme for theme in themes if theme.get('name') and theme.get('name') != slug), None)
        if fallback is None:
            raise PackageOperationError(
                f'Unable to deactivate active theme "{slug}" because no fallback theme is installed'
            )

        self.wp_cli.run(installation, ['theme', 'activate', fallback['name']])
        return fallback['name']

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    def _delete(self, installation: Installation, kind: PackageKind, slug: str) -> OperationResult:
        existing = self.db.find_package(kind, installation.id, slug)
        fallback: Optional[str] = None

        if existing is not None and existing.is_enabled:
            try:
                if kind is PackageKind.PLUGIN:
                    self.wp_cli.run(installation, ['plugin', 'deactivate', slug], allow_failure=True)
                else:
                    fallback = self._switch_active_theme_away_from(installation, slug)
            except FleetError as e:
                logger.warning(f"Deactivation before deleting {kind.value} '{slug}' failed: {e}")

        result = self.wp_cli.run(installation, [kind.value, 'delete', slug], allow_failure=True)
        if result.code != 0 and not is_missing_package_error(f"{result.stderr}\n{result.stdout}"):
            return OperationResult.failed(
                f'Failed to delete {kind.value} "{slug}": {trim_error(result.stderr or result.stdout)}'
            )

        self.db.delete_package(kind, installation.id, slug)

        if fallback and fallback != slug:
            self._sync_package(installation, kind, fallback)

        return OperationResult.success(f'{_label(kind)} "{slug}" deleted')

    # ------------------------------------------------------------------
    # Local inventory resync
    # ------------------------------------------------------------------

    def _theme_list(self, installation: Installation) -> List[Dict]:
        result = self.wp_cli.run(
            installation,
            ['theme', 'list', '--format=json', '--fields=name,status,parent'],
            allow_failure=True
        )
        return [theme for theme in parse_json_array(result.stdout) if isinstance(theme, dict)]

    def _active_theme_slug(self, installation: Installation) -> Optional[str]:
        for theme in self._theme_list(installation):
            if is_active_status(theme.get('status')):
                return theme.get('name')
        return None

    def _sync_package(
        self,
        installation: Installation,
        kind: PackageKind,
        slug: str,
        source: Optional[PackageSource] = None,
        latest_hint: Optional[str] = None
    ) -> Optional[PackageRecord]:
        """
        Re-read one package from the site and upsert its row.

        If the site no longer reports the package, the row is removed.
        source=None keeps the row's current provenance.
        """
        existing = self.db.find_package(kind, installation.id, slug)

        result = self.wp_cli.run(
            installation,
            [kind.value, 'get', slug, '--format=json', '--fields=name,title,status,version,auto_update'],
            allow_failure=True
        )
        details = parse_json(result.stdout.strip()) if result.code == 0 and result.stdout.strip() else None

        if not isinstance(details, dict):
            self.db.delete_package(kind, installation.id, slug)
            return None

        if source is not None:
            source_value = source.value
        elif existing is not None:
            source_value = existing.source
        else:
            source_value = PackageSource.UNKNOWN.value

        if 'auto_update' in details:
            auto_update = details.get('auto_update') == 'on'
        else:
            auto_update = existing.auto_update if existing else False

        fields = {
            'name': details.get('name') or slug,
            'title': details.get('title') or details.get('name') or slug,
            'version': details.get('version') or '',
            'is_enabled': is_active_status(details.get('status')),
            'auto_update': auto_update,
            'source': source_value,
            'latest_version': latest_hint or (existing.latest_version if existing else None),
        }

        if kind is PackageKind.THEME:
            themes = self._theme_list(installation)
            active = next((theme for theme in themes if is_active_status(theme.get('status'))), None)
            fields['is_active_child'] = bool(active and active.get('parent') and active.get('parent') == slug)

        return self.db.upsert_package(kind, installation.id, slug, fields)

    # ------------------------------------------------------------------
    # Uploaded (external) archives
    # ------------------------------------------------------------------

    def _resolve_external_asset(self, kind: PackageKind, slug: str) -> ExternalAsset:
        upload = self.db.get_latest_uploaded(kind, slug)
        if upload is None:
            raise PackageOperationError(f'No uploaded {kind.value} version available for "{slug}"')

        local_path = Path(upload.archive_path)
        if not local_path.is_absolute():
            local_path = self.upload_root / local_path
        if not local_path.is_file():
            raise PackageOperationError(f'Uploaded archive for {kind.value} "{slug}" is missing: {local_path}')

        safe_slug = _UNSAFE_FILENAME_CHARS.sub('-', upload.slug)
        safe_version = _UNSAFE_FILENAME_CHARS.sub('-', upload.version)
        remote_dir = f"{self.wp_cli.cli_dir}/assets/{kind.value}s"

        return ExternalAsset(
            asset_key=f"{kind.value}:{upload.slug}:{upload.version}",
            local_path=str(local_path),
            remote_dir=remote_dir,
            remote_path=f"{remote_dir}/{safe_slug}-{safe_version}.zip",
            version=upload.version,
        )

    def _ensure_asset_on_server(self, server_id: str, asset: ExternalAsset) -> str:
        """Upload an archive to a host once; concurrent callers share the upload."""
        with self._assets_lock:
            if asset.asset_key in self._uploaded_assets.get(server_id, set()):
                return asset.remote_path

        return self._upload_flight.do((server_id, asset.asset_key), lambda: self._push_asset(server_id, asset))

    def _push_asset(self, server_id: str, asset: ExternalAsset) -> str:
        mkdir = self.remote.exec(server_id, f"mkdir -p {shell_escape(asset.remote_dir)}", timeout=30)
        if mkdir.code != 0:
            raise RemoteCommandError(f"Could not create {asset.remote_dir}: {trim_error(mkdir.stderr)}", mkdir)

        probe = self.remote.exec(
            server_id,
            f"if [ -f {shell_escape(asset.remote_path)} ]; then echo 1; fi",
            timeout=30
        )
        if probe.stdout.strip():
            logger.debug(f"{asset.asset_key} already present on server {server_id}")
        else:
            logger.info(f"Uploading {asset.asset_key} to server {server_id}")
            self.remote.upload(server_id, asset.local_path, asset.remote_path)

        with self._assets_lock:
            self._uploaded_assets.setdefault(server_id, set()).add(asset.asset_key)
        return asset.remote_path
