"""
WordPress installation discovery over SSH.

A scan finds wp-config.php files under the platform's web root, keeps the
paths that look like complete WordPress installs, and refreshes each one
(metadata, PHP runtime info, plugins, themes) with a small pool of worker
threads. Each worker holds one SSH session for its whole lifetime.
"""

import json
import logging
import re
import secrets
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from fleet.broadcast import CHANNEL_SCAN, EVENT_COMPLETE, EVENT_ERROR, EVENT_LOG, EVENT_PROGRESS
from fleet.errors import FleetError
from fleet.models import (
    DEFAULT_MONITORING_LEVEL,
    SERVER_TYPE_CPANEL,
    Installation,
    PackageKind,
    Server,
    utcnow_iso,
)
from fleet.wp_cli import (
    build_wp_cli_command,
    parse_json,
    run_as_user,
    shell_escape,
    validate_unix_username,
    wp_cli_setup_command,
)

logger = logging.getLogger(__name__)

DEFAULT_SCAN_CONCURRENCY = 8
DEFAULT_SCAN_LOCK_TIMEOUT = 600
DEFAULT_MONITORING_OPTION = 'monitoring.default_new_site_level'

CPANEL_SEARCH_ROOT = '/home*/'
PLESK_SEARCH_ROOT = '/var/www/vhosts/'
PRUNED_DIRS = ('.*', 'cache', 'node_modules', 'vendor', 'tmp', 'logs')

CPANEL_OWNER_DIR_RE = re.compile(r'^/home[^/]*/[^/]+')
PLESK_OWNER_DIR_RE = re.compile(r'^/var/www/vhosts/[^/]+')

PHP_PROBE_SCRIPT = "<?php echo json_encode(['version' => PHP_VERSION, 'memory_limit' => ini_get('memory_limit')]);"

FIND_TIMEOUT = 120
SHORT_TIMEOUT = 10
QUERY_TIMEOUT = 30
LIST_TIMEOUT = 60


@dataclass
class ScanResult:
    success: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {'success': self.success, 'failed': self.failed}


def search_root(server_type: str) -> str:
    return CPANEL_SEARCH_ROOT if server_type == SERVER_TYPE_CPANEL else PLESK_SEARCH_ROOT


def build_find_command(server_type: str) -> str:
    prune = ' -o '.join(f'-name "{name}"' for name in PRUNED_DIRS)
    return (
        f'find {search_root(server_type)} -xdev '
        f'\\( -type d \\( {prune} \\) -prune \\) -o -name "wp-config.php" -type f -print'
    )


def build_validate_command(wp_dir: str) -> str:
    d = shell_escape(wp_dir)
    return (
        f'test -d {d}/wp-admin && test -d {d}/wp-content && test -d {d}/wp-includes '
        f'&& test -f {d}/wp-login.php && echo valid || echo invalid'
    )


def owner_directory(server_type: str, wp_dir: str) -> Optional[str]:
    """The account's home (cPanel) or vhost (Plesk) directory for a path."""
    pattern = CPANEL_OWNER_DIR_RE if server_type == SERVER_TYPE_CPANEL else PLESK_OWNER_DIR_RE
    match = pattern.match(wp_dir)
    return match.group(0) if match else None


def build_main_file_command() -> str:
    """Print "<slug>/<file>.php" for every plugin dir carrying a Plugin Name header."""
    return (
        'for d in wp-content/plugins/*/; do '
        'slug=$(basename "$d"); '
        'if [ -f "$d$slug.php" ] && head -100 "$d$slug.php" 2>/dev/null | grep -qi "Plugin Name:"; then '
        'echo "$slug/$slug.php"; continue; fi; '
        'for f in "$d"*.php; do '
        'if [ -f "$f" ] && head -100 "$f" 2>/dev/null | grep -qi "Plugin Name:"; then '
        'echo "$slug/$(basename "$f")"; break; fi; '
        'done; '
        'done'
    )


def parse_main_files(output: str) -> Dict[str, str]:
    main_files = {}
    for line in (output or '').splitlines():
        line = line.strip()
        if '/' not in line:
            continue
        slug = line.split('/', 1)[0]
        main_files.setdefault(slug, line)
    return main_files


def build_probe_fetch_command(site_url: str, filename: str) -> str:
    """Fetch a file from the site, forcing its hostname to resolve to this host."""
    host = urlparse(site_url).hostname or ''
    url = f"{site_url.rstrip('/')}/{filename}"
    return (
        f"curl -sS -k --max-time 20 "
        f"--resolve {shell_escape(f'{host}:443:127.0.0.1')} "
        f"--resolve {shell_escape(f'{host}:80:127.0.0.1')} "
        f"{shell_escape(url)} 2>/dev/null"
    )


class ServerScanner:
    """Discovers and refreshes the WordPress installations of a server."""

    def __init__(
        self,
        db,
        remote,
        wp_cli,
        broadcaster,
        site_locks,
        concurrency: int = DEFAULT_SCAN_CONCURRENCY,
        scan_lock_timeout: float = DEFAULT_SCAN_LOCK_TIMEOUT
    ):
        self.db = db
        self.remote = remote
        self.wp_cli = wp_cli
        self.broadcaster = broadcaster
        self.site_locks = site_locks
        self.concurrency = max(1, int(concurrency))
        self.scan_lock_timeout = scan_lock_timeout

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_server_scan_by_id(self, server_id: str) -> ScanResult:
        return self.run_server_scan(self.remote.get_server(server_id))

    def run_server_scan(self, server: Server) -> ScanResult:
        """
        Scan one server end to end.

        Always finishes with exactly one "complete" event. Per-installation
        problems are counted as failures; only a failure before any
        installation is processed turns the whole scan into {0, 1}.
        """
        session = None
        try:
            session = self.remote.open_session(server)
            return self._scan(server, session)
        except Exception as e:
            logger.error(f"Scan of {server.name} failed: {e}")
            self._emit(server, EVENT_ERROR, f"Scan error: {e}")
            self._emit(server, EVENT_COMPLETE, "Scan failed", data={'success': 0, 'failed': 1})
            return ScanResult(success=0, failed=1)
        finally:
            if session is not None:
                session.disconnect()

    # ------------------------------------------------------------------
    # Scan phases
    # ------------------------------------------------------------------

    def _scan(self, server: Server, session) -> ScanResult:
        self._emit(server, EVENT_LOG, f"Starting scan on {server.name}...")
        self._emit(server, EVENT_LOG, f"Searching for WordPress installations in {search_root(server.server_type)}...")

        find_result = session.exec(build_find_command(server.server_type), timeout=FIND_TIMEOUT)
        if find_result.code != 0 and not find_result.stdout.strip():
            self._emit(server, EVENT_ERROR, f"Failed to search for WordPress installations: {find_result.stderr.strip()}")
            self._emit(server, EVENT_COMPLETE, "Scan failed", data={'success': 0, 'failed': 1})
            return ScanResult(success=0, failed=1)

        config_paths = [line.strip() for line in find_result.stdout.splitlines() if line.strip()]
        self._emit(server, EVENT_LOG, f"Found {len(config_paths)} potential WordPress installations")

        candidates = self._validate_candidates(server, session, config_paths)
        self._emit(server, EVENT_LOG, f"{len(candidates)} valid WordPress installations found")
        self._emit(server, EVENT_PROGRESS, "Starting detailed scan",
                   data={'total': len(candidates), 'current': 0, 'success': 0, 'failed': 0})

        self._ensure_wp_cli(server, session)

        php = self.wp_cli.php_resolver.resolve(server.id)
        if php.detected:
            self._emit(server, EVENT_LOG, f"Using PHP binary: {php.binary}")
        else:
            self._emit(server, EVENT_ERROR, f"Could not detect PHP binary, falling back to {php.binary}")

        default_level = self.db.get_option(DEFAULT_MONITORING_OPTION, DEFAULT_MONITORING_LEVEL)
        result = self._process_all(server, candidates, php.binary, default_level)

        self._emit(server, EVENT_COMPLETE,
                   f"Scan completed: {result.success} successful, {result.failed} failed",
                   data=result.to_dict())
        logger.info(f"Scan of {server.name}: {result.success} successful, {result.failed} failed")
        return result

    def _validate_candidates(self, server: Server, session, config_paths: Sequence[str]) -> List[str]:
        valid = []
        for config_path in config_paths:
            wp_dir = config_path[:-len('/wp-config.php')] if config_path.endswith('/wp-config.php') else config_path
            check = session.exec(build_validate_command(wp_dir), timeout=SHORT_TIMEOUT)
            if check.stdout.strip() == 'valid':
                valid.append(wp_dir)
            else:
                self._emit(server, EVENT_ERROR, f"Skipping invalid installation: {wp_dir}")
        return valid

    def _ensure_wp_cli(self, server: Server, session):
        self._emit(server, EVENT_LOG, "Checking wp-cli installation...")
        setup = session.exec(wp_cli_setup_command(self.wp_cli.cli_dir), timeout=LIST_TIMEOUT)
        if setup.code != 0:
            raise FleetError(f"Failed to set up wp-cli: {setup.stderr.strip() or setup.stdout.strip()}")

        self.wp_cli.mark_ensured(server.id)
        if setup.stdout.strip() == 'downloaded':
            self._emit(server, EVENT_LOG, "wp-cli downloaded successfully")
        else:
            self._emit(server, EVENT_LOG, "wp-cli already up to date")

    def _process_all(self, server: Server, candidates: List[str], php_binary: str, default_level: str) -> ScanResult:
        pending = list(candidates)
        pending_lock = threading.Lock()
        counters = {'success': 0, 'failed': 0, 'current': 0}
        total = len(candidates)

        def next_candidate() -> Optional[str]:
            with pending_lock:
                return pending.pop(0) if pending else None

        def record(wp_dir: str, ok: bool):
            with pending_lock:
                counters['success' if ok else 'failed'] += 1
                counters['current'] += 1
                data = {'total': total, **counters}
            self._emit(server, EVENT_PROGRESS, f"Processed {wp_dir}", data=data)

        def worker():
            try:
                session = self.remote.open_session(server)
            except FleetError as e:
                self._emit(server, EVENT_ERROR, f"Could not open scan session: {e}")
                return
            try:
                while True:
                    wp_dir = next_candidate()
                    if wp_dir is None:
                        break
                    record(wp_dir, self._process_installation(server, session, wp_dir, php_binary, default_level))
            finally:
                session.disconnect()

        worker_count = min(self.concurrency, total)
        if worker_count:
            with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix='scan') as executor:
                futures = [executor.submit(worker) for _ in range(worker_count)]
                for future in futures:
                    future.result()

        # Left over only if no worker could open a session
        for wp_dir in pending:
            record(wp_dir, False)

        return ScanResult(success=counters['success'], failed=counters['failed'])

    # ------------------------------------------------------------------
    # One installation
    # ------------------------------------------------------------------

    def _process_installation(self, server: Server, session, wp_dir: str, php_binary: str, default_level: str) -> bool:
        try:
            self._emit(server, EVENT_LOG, f"Processing: {wp_dir}")

            unix_user = self._detect_owner(server, session, wp_dir)
            if not unix_user:
                self._emit(server, EVENT_ERROR, f"Could not determine user for {wp_dir}, skipping")
                return False
            self._emit(server, EVENT_LOG, f"Detected user: {unix_user}")

            def option(args: List[str]) -> str:
                return self._wp(session, unix_user, wp_dir, php_binary, args, QUERY_TIMEOUT).stdout.strip()

            site_url = option(['option', 'get', 'siteurl'])
            if not site_url:
                self._emit(server, EVENT_ERROR, f"Could not get site URL for {wp_dir}, skipping")
                return False

            cron = option(['config', 'get', 'DISABLE_WP_CRON'])
            fields: Dict[str, Any] = {
                'unix_username': unix_user,
                'site_title': option(['option', 'get', 'blogname']) or 'Unknown',
                'site_description': option(['option', 'get', 'blogdescription']) or None,
                'site_url': site_url,
                'timezone': option(['option', 'get', 'timezone_string']),
                'uses_server_cron': cron in ('true', '1'),
                'admin_email': option(['option', 'get', 'admin_email']),
                'last_scan_at': utcnow_iso(),
            }
            fields.update(self._probe_php(session, wp_dir, site_url))

            installation = self.db.upsert_installation(server.id, wp_dir, fields, default_monitoring_level=default_level)

            with self.site_locks.hold(installation.id, timeout=self.scan_lock_timeout):
                plugins_ok = self._refresh_plugins(server, session, installation, php_binary)
                themes_ok = self._refresh_themes(server, session, installation, php_binary)

            return plugins_ok and themes_ok

        except Exception as e:
            logger.warning(f"Error processing {wp_dir} on {server.name}: {e}")
            self._emit(server, EVENT_ERROR, f"Error processing {wp_dir}: {e}")
            return False

    def _detect_owner(self, server: Server, session, wp_dir: str) -> Optional[str]:
        owner_dir = owner_directory(server.server_type, wp_dir)
        if not owner_dir:
            return None

        result = session.exec(f"stat -c '%U' {shell_escape(owner_dir)}", timeout=SHORT_TIMEOUT)
        owner = result.stdout.strip()
        if result.code != 0 or not owner:
            return None
        return validate_unix_username(owner)

    def _wp(self, session, unix_user: str, wp_dir: str, php_binary: str, args: List[str], timeout: float):
        command = build_wp_cli_command(unix_user, wp_dir, args, php_binary, cli_dir=self.wp_cli.cli_dir)
        return session.exec(f"{command} 2>/dev/null", timeout=timeout)

    def _probe_php(self, session, wp_dir: str, site_url: str) -> Dict[str, str]:
        """PHP version and memory_limit as served by the site's own web server."""
        filename = f"fleetinfo-{secrets.token_hex(4)}.php"
        probe_path = f"{wp_dir}/{filename}"
        info = {'php_version': '', 'php_memory_limit': ''}

        try:
            session.exec(f"printf '%s' {shell_escape(PHP_PROBE_SCRIPT)} > {shell_escape(probe_path)}", timeout=SHORT_TIMEOUT)
            fetched = session.exec(build_probe_fetch_command(site_url, filename), timeout=QUERY_TIMEOUT)
            parsed = json.loads(fetched.stdout.strip())
            if isinstance(parsed, dict):
                info['php_version'] = str(parsed.get('version') or '')
                info['php_memory_limit'] = str(parsed.get('memory_limit') or '')
        except (FleetError, ValueError) as e:
            logger.debug(f"PHP probe failed for {wp_dir}: {e}")
        finally:
            try:
                session.exec(f"rm -f {shell_escape(probe_path)}", timeout=SHORT_TIMEOUT)
            except FleetError as e:
                logger.warning(f"Could not remove PHP probe {probe_path}: {e}")

        return info

    def _refresh_plugins(self, server: Server, session, installation: Installation, php_binary: str) -> bool:
        self._emit(server, EVENT_LOG, f"Getting plugins for {installation.site_title}...")
        listing = self._wp(
            session, installation.unix_username, installation.installation_path, php_binary,
            ['plugin', 'list', '--format=json', '--fields=name,title,status,update,version,update_version,auto_update'],
            LIST_TIMEOUT
        )
        listed = parse_json(listing.stdout.strip()) if listing.code == 0 else None
        if not isinstance(listed, list):
            # Existing rows stay untouched when the listing is unusable
            self._emit(server, EVENT_ERROR, f"Failed to get plugins for {installation.installation_path}")
            return False

        plugins = [plugin for plugin in listed if isinstance(plugin, dict)]
        main_files = self._detect_main_files(session, installation)

        rows = []
        for plugin in plugins:
            slug = plugin.get('name') or 'unknown'
            rows.append({
                'slug': slug,
                'name': slug,
                'title': plugin.get('title') or slug,
                'version': plugin.get('version') or '',
                'is_enabled': plugin.get('status') in ('active', 'active-network'),
                'auto_update': plugin.get('auto_update') == 'on',
                'latest_version': plugin.get('update_version') or None,
                'main_file_path': main_files.get(slug),
            })

        self.db.replace_packages(PackageKind.PLUGIN, installation.id, rows)
        self._emit(server, EVENT_LOG, f"Saved {len(rows)} plugins")
        return True

    def _detect_main_files(self, session, installation: Installation) -> Dict[str, str]:
        try:
            command = run_as_user(installation.unix_username, installation.installation_path, build_main_file_command())
            return parse_main_files(session.exec(command, timeout=QUERY_TIMEOUT).stdout)
        except FleetError as e:
            logger.debug(f"Main file detection failed for {installation.installation_path}: {e}")
            return {}

    def _refresh_themes(self, server: Server, session, installation: Installation, php_binary: str) -> bool:
        self._emit(server, EVENT_LOG, f"Getting themes for {installation.site_title}...")
        listing = self._wp(
            session, installation.unix_username, installation.installation_path, php_binary,
            ['theme', 'list', '--format=json', '--fields=name,title,status,update,version,update_version,auto_update,parent'],
            LIST_TIMEOUT
        )
        listed = parse_json(listing.stdout.strip()) if listing.code == 0 else None
        if not isinstance(listed, list):
            self._emit(server, EVENT_ERROR, f"Failed to get themes for {installation.installation_path}")
            return False

        themes = [theme for theme in listed if isinstance(theme, dict)]
        active = next((theme for theme in themes if theme.get('status') == 'active'), None)
        parent_slug = (active or {}).get('parent') or None

        rows = []
        for theme in themes:
            slug = theme.get('name') or 'unknown'
            rows.append({
                'slug': slug,
                'name': slug,
                'title': theme.get('title') or slug,
                'version': theme.get('version') or '',
                'is_enabled': theme.get('status') == 'active',
                'auto_update': theme.get('auto_update') == 'on',
                'latest_version': theme.get('update_version') or None,
                'is_active_child': parent_slug is not None and slug == parent_slug,
            })

        self.db.replace_packages(PackageKind.THEME, installation.id, rows)
        self._emit(server, EVENT_LOG, f"Saved {len(rows)} themes")
        return True

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, server: Server, type: str, message: str, data: Optional[Dict[str, Any]] = None):
        if type == EVENT_ERROR:
            logger.warning(f"[{server.name}] {message}")
        else:
            logger.debug(f"[{server.name}] {message}")
        self.broadcaster.emit(CHANNEL_SCAN, type, message, server_id=server.id, data=data or {})
