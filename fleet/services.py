"""
Composition root: builds the long-lived service objects from configuration.

Both the web app and the CLI create exactly one FleetServices per process
and pass it to whatever needs it.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from fleet.broadcast import EventBroadcaster
from fleet.database import Database
from fleet.job_queue import PackageJobQueue
from fleet.package_ops import SitePackageOperations
from fleet.php_binary import PhpBinaryResolver
from fleet.scanner import ServerScanner
from fleet.site_locks import SiteLocks
from fleet.ssh import RemoteShell
from fleet.uploads import PackageUploads
from fleet.wordpress_org import VersionChecker
from fleet.wp_cli import WpCli

logger = logging.getLogger(__name__)


@dataclass
class FleetServices:
    config: Dict[str, Any]
    db: Database
    broadcaster: EventBroadcaster
    remote: RemoteShell
    php_resolver: PhpBinaryResolver
    wp_cli: WpCli
    site_locks: SiteLocks
    operations: SitePackageOperations
    queue: PackageJobQueue
    scanner: ServerScanner
    uploads: PackageUploads
    version_checker: VersionChecker

    def shutdown(self):
        self.queue.shutdown(wait=True)


def build_services(config: Dict[str, Any], broadcaster: Optional[EventBroadcaster] = None) -> FleetServices:
    db_path = Path(config['db_path'])
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = Database(db_path)
    broadcaster = broadcaster or EventBroadcaster()
    remote = RemoteShell(db, Path(config['ssh_key_dir']), connect_timeout=config['ssh_connect_timeout'])
    php_resolver = PhpBinaryResolver(remote, cache_seconds=config['php_binary_cache_seconds'])
    wp_cli = WpCli(remote, php_resolver, cli_dir=config['remote_cli_dir'])
    site_locks = SiteLocks()

    operations = SitePackageOperations(db, remote, wp_cli, upload_root=Path(config['upload_dir']))
    queue = PackageJobQueue(
        operations,
        broadcaster,
        site_locks=site_locks,
        concurrency=config['queue_concurrency'],
        retry_delay=config['queue_retry_delay'],
    )
    scanner = ServerScanner(
        db,
        remote,
        wp_cli,
        broadcaster,
        site_locks,
        concurrency=config['scan_concurrency'],
        scan_lock_timeout=config['scan_lock_timeout'],
    )

    logger.debug(f"Services ready (database {db_path})")

    return FleetServices(
        config=config,
        db=db,
        broadcaster=broadcaster,
        remote=remote,
        php_resolver=php_resolver,
        wp_cli=wp_cli,
        site_locks=site_locks,
        operations=operations,
        queue=queue,
        scanner=scanner,
        uploads=PackageUploads(db, broadcaster, Path(config['upload_dir'])),
        version_checker=VersionChecker(db),
    )
