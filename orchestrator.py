#!/usr/bin/env python3
"""
orchestrator.py - WP Fleet Manager command line

Runs the same services as the web dashboard from a terminal: import
servers, scan them for WordPress installations, refresh registry versions,
upload package archives and run batches of plugin/theme jobs through the
package job queue, with CSV and Markdown reports.
"""

import argparse
import csv
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from fleet.broadcast import CHANNEL_PACKAGE_JOB, EVENT_ERROR, BroadcastEvent
from fleet.config import load_config
from fleet.job_queue import JobOutcome
from fleet.models import (
    OperationStatus,
    PackageKind,
    PackageOperation,
    PackageOperationInput,
    PackageSource,
)
from fleet.services import FleetServices, build_services
from fleet.tasks import scan_all_servers
from fleet.uploads import UploadFile
from gui.server_manager import ServerManager


# ============================================================================
# Configuration & Constants
# ============================================================================

DEFAULT_REPORT_DIR = "reports"
DEFAULT_RUN_TIMEOUT = 6 * 60 * 60
ALL_SITES = "*"


# ============================================================================
# Logging Setup
# ============================================================================

def setup_logging(level=logging.INFO):
    """Configure structured logging with timestamp and level."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


logger = logging.getLogger(__name__)


def log_event(event: BroadcastEvent):
    """Echo scan/upload events to the log (queue events log themselves)."""
    if event.channel == CHANNEL_PACKAGE_JOB:
        return
    level = logging.WARNING if event.type == EVENT_ERROR else logging.INFO
    logger.log(level, f"[{event.channel}] {event.message}")


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class JobRow:
    """One line of a jobs CSV file."""
    site: str
    kind: PackageKind
    slug: str
    operation: PackageOperation
    source: Optional[PackageSource] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'JobRow':
        source = (data.get('source') or '').strip()
        return cls(
            site=(data.get('site') or '').strip(),
            kind=PackageKind((data.get('kind') or '').strip()),
            slug=(data.get('slug') or '').strip(),
            operation=PackageOperation((data.get('operation') or '').strip()),
            source=PackageSource(source) if source else None,
        )


def load_job_rows(csv_path: Path) -> List[JobRow]:
    """Load job rows from a CSV file (columns: site,kind,slug,operation,source)."""
    if not csv_path.exists():
        raise FileNotFoundError(f"Jobs file not found: {csv_path}")

    rows = []
    with open(csv_path, 'r', newline='') as f:
        reader = csv.DictReader(f)
        for line_no, data in enumerate(reader, start=2):
            try:
                row = JobRow.from_dict(data)
            except ValueError as e:
                raise ValueError(f"{csv_path}:{line_no}: {e}")
            if not row.site or not row.slug:
                raise ValueError(f"{csv_path}:{line_no}: site and slug are required")
            rows.append(row)

    return rows


# ============================================================================
# Job Planning
# ============================================================================

def expand_jobs(db, rows: List[JobRow]) -> Tuple[List[PackageOperationInput], List[str]]:
    """
    Turn CSV rows into queue jobs.

    `site` matches an installation id, site URL or site title. "*" expands
    to every installation (for updates: every installation that has the
    package installed).

    Returns:
        (jobs, unmatched site references)
    """
    installations = db.list_installations()
    jobs: List[PackageOperationInput] = []
    unmatched: List[str] = []

    for row in rows:
        if row.site == ALL_SITES:
            targets = installations
            if row.operation is PackageOperation.UPDATE:
                installed_ids = {pkg.installation_id for pkg in db.list_packages(row.kind) if pkg.slug == row.slug}
                targets = [inst for inst in installations if inst.id in installed_ids]
        else:
            wanted = row.site.rstrip('/')
            targets = [
                inst for inst in installations
                if row.site in (inst.id, inst.site_title) or (inst.site_url and wanted == inst.site_url.rstrip('/'))
            ]

        if not targets:
            unmatched.append(row.site)
            continue

        for installation in targets:
            jobs.append(PackageOperationInput(
                installation_id=installation.id,
                kind=row.kind,
                slug=row.slug,
                operation=row.operation,
                source=row.source,
            ))

    return jobs, unmatched


def filter_jobs(
    jobs: List[PackageOperationInput],
    site_titles: Dict[str, str],
    only_sites: Optional[List[str]] = None,
    only_slugs: Optional[List[str]] = None
) -> List[PackageOperationInput]:
    """Filter jobs by site title/id and/or package slug."""
    filtered = jobs

    if only_sites:
        site_set = set(only_sites)
        filtered = [
            j for j in filtered
            if j.installation_id in site_set or site_titles.get(j.installation_id) in site_set
        ]

    if only_slugs:
        slug_set = set(only_slugs)
        filtered = [j for j in filtered if j.slug in slug_set]

    return filtered


# ============================================================================
# Reporting
# ============================================================================

def generate_reports(run_id: str, outcomes: List[JobOutcome], report_dir: Path) -> Dict[str, int]:
    """Generate CSV and Markdown reports for a queue run."""
    report_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.utcnow().strftime('%Y%m%d-%H%M%S')
    csv_path = report_dir / f"run-{timestamp}.csv"
    md_path = report_dir / f"run-{timestamp}.md"

    stats = {'total': len(outcomes)}
    for status in OperationStatus:
        stats[status.value] = sum(1 for o in outcomes if o.result.status is status)

    with open(csv_path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(['site', 'site_id', 'kind', 'slug', 'operation', 'status', 'message', 'finished_at'])

        for outcome in outcomes:
            job = outcome.job
            writer.writerow([
                job.site_title or job.installation_id,
                job.installation_id,
                job.kind.value,
                job.slug,
                job.operation.value,
                outcome.result.status.value,
                outcome.result.message,
                outcome.finished_at,
            ])

    logger.info(f"CSV report written: {csv_path}")

    with open(md_path, 'w') as f:
        f.write(f"# WordPress Package Job Report\n\n")
        f.write(f"**Run ID:** {run_id}\n\n")
        f.write(f"**Timestamp:** {timestamp}\n\n")
        f.write(f"## Summary\n\n")
        f.write(f"| Status | Count |\n")
        f.write(f"|--------|-------|\n")
        f.write(f"| ✅ Success | {stats['success']} |\n")
        f.write(f"| ⏭️  Skipped | {stats['skipped']} |\n")
        f.write(f"| ❌ Failed | {stats['failed']} |\n")
        f.write(f"| **Total** | **{stats['total']}** |\n\n")

        f.write(f"## Job Details\n\n")

        for status, emoji in [
            (OperationStatus.FAILED, '❌'),
            (OperationStatus.SKIPPED, '⏭️'),
            (OperationStatus.SUCCESS, '✅')
        ]:
            selected = [o for o in outcomes if o.result.status is status]
            if not selected:
                continue

            f.write(f"### {emoji} {status.value.upper()}\n\n")

            for outcome in selected:
                job = outcome.job
                f.write(f"**{job.site_title or job.installation_id}** / {job.kind.value} `{job.slug}` ({job.operation.value})\n\n")
                f.write(f"- Result: {outcome.result.message}\n")
                f.write(f"- Finished: {outcome.finished_at}\n\n")

    logger.info(f"Markdown report written: {md_path}")

    return stats


# ============================================================================
# Commands
# ============================================================================

def cmd_import_servers(services: FleetServices, yaml_path: Path) -> int:
    counts = ServerManager(services.db, services.remote).import_inventory(str(yaml_path))
    logger.info(f"Servers imported: {counts['added']} added, {counts['skipped']} already known, {counts['failed']} invalid")
    return 1 if counts['failed'] else 0


def cmd_scan(services: FleetServices, target: str) -> int:
    if target == 'all':
        report = scan_all_servers(services.db, services.scanner, services.version_checker)
        return 1 if report.failed else 0

    server = services.db.get_server(target) or services.db.find_server_by_name(target)
    if server is None:
        logger.error(f"Server not found: {target}")
        return 1

    result = services.scanner.run_server_scan(server)
    logger.info(f"Scan of {server.name}: {result.success} successful, {result.failed} failed")
    return 1 if result.failed else 0


def cmd_upload(services: FleetServices, paths: List[Path]) -> int:
    files = []
    for path in paths:
        if not path.exists():
            logger.error(f"File not found: {path}")
            return 1
        files.append(UploadFile(filename=path.name, data=path.read_bytes()))

    result = services.uploads.process(files)
    return 1 if result['failed'] else 0


def cmd_jobs(services: FleetServices, args) -> int:
    try:
        logger.info(f"Loading jobs from: {args.jobs}")
        rows = load_job_rows(args.jobs)
        logger.info(f"Loaded {len(rows)} job row(s)")
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load jobs: {e}")
        return 1

    jobs, unmatched = expand_jobs(services.db, rows)
    for site in unmatched:
        logger.warning(f"No installation matches '{site}'")
    logger.info(f"Expanded to {len(jobs)} job(s)")

    site_titles = services.db.get_site_titles(job.installation_id for job in jobs)

    only_sites = args.only_sites.split(',') if args.only_sites else None
    only_slugs = args.only_slugs.split(',') if args.only_slugs else None
    if only_sites or only_slugs:
        jobs = filter_jobs(jobs, site_titles, only_sites, only_slugs)
        logger.info(f"Filtered to {len(jobs)} job(s)")

    if not jobs:
        logger.warning("No jobs to execute")
        return 0

    if args.dry_run:
        logger.info("=" * 70)
        logger.info("DRY RUN - Execution Plan")
        logger.info("=" * 70)

        for i, job in enumerate(jobs, 1):
            title = site_titles.get(job.installation_id) or job.installation_id
            source = job.source.value if job.source else 'auto'
            logger.info(
                f"{i:3d}. {title[:30]:30s} | {job.operation.value:10s} | "
                f"{job.kind.value:6s} | {job.slug:30s} | {source}"
            )

        logger.info("=" * 70)
        logger.info(f"Total jobs: {len(jobs)}")
        logger.info(f"Concurrency: {services.queue.concurrency} (one job per site at a time)")
        logger.info("=" * 70)
        logger.info("Dry run complete. Use without --dry-run to execute.")
        return 0

    logger.info("=" * 70)
    logger.info(f"Executing {len(jobs)} job(s) with concurrency {services.queue.concurrency}")
    logger.info("=" * 70)

    enqueued = services.queue.enqueue(jobs, site_titles=site_titles)
    if not services.queue.wait_until_complete(timeout=args.timeout_sec):
        logger.error(f"Run {enqueued.run_id} did not finish within {args.timeout_sec}s")
        return 1

    stats = generate_reports(enqueued.run_id, services.queue.results(), args.report_dir)

    logger.info("=" * 70)
    logger.info("SUMMARY")
    logger.info("=" * 70)
    logger.info(f"Total jobs:  {stats['total']}")
    logger.info(f"✅ Success:   {stats['success']}")
    logger.info(f"⏭️  Skipped:   {stats['skipped']}")
    logger.info(f"❌ Failed:    {stats['failed']}")
    logger.info("=" * 70)

    if stats['failed'] > 0:
        logger.warning("Some jobs did not complete successfully")
        return 1

    logger.info("All jobs completed successfully!")
    return 0


# ============================================================================
# Main
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description='WP Fleet Manager - scan servers and manage plugins/themes across WordPress sites',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Import servers from a YAML inventory
  python orchestrator.py --import-servers inventory/servers.yaml

  # Scan one server (name or id), or all of them
  python orchestrator.py --scan web-01
  python orchestrator.py --scan all

  # Preview a job batch
  python orchestrator.py --jobs jobs/updates.csv --dry-run

  # Run jobs for two sites only, 4 at a time
  python orchestrator.py --jobs jobs/updates.csv --only-sites "Shop,Blog" --concurrency 4

  # Upload premium plugin archives, then refresh registry versions
  python orchestrator.py --upload dist/my-plugin-2.1.0.zip --check-versions
        """
    )

    parser.add_argument('--config', type=str,
                        help='Path to config YAML (default: $FLEET_CONFIG or config.yaml)')
    parser.add_argument('--import-servers', type=Path, metavar='YAML',
                        help='Import servers from a YAML inventory file')
    parser.add_argument('--scan', type=str, metavar='SERVER',
                        help='Scan a server by name or id, or "all"')
    parser.add_argument('--upload', type=Path, nargs='+', metavar='ZIP',
                        help='Upload plugin/theme ZIP archives')
    parser.add_argument('--check-versions', action='store_true',
                        help='Refresh latest versions from WordPress.org')
    parser.add_argument('--jobs', type=Path, metavar='CSV',
                        help='Run package jobs from a CSV file (site,kind,slug,operation,source)')
    parser.add_argument('--only-sites', type=str,
                        help='Comma-separated site titles or ids to target')
    parser.add_argument('--only-slugs', type=str,
                        help='Comma-separated package slugs to target')
    parser.add_argument('--dry-run', action='store_true',
                        help='Print the job plan without running it')
    parser.add_argument('--concurrency', type=int,
                        help='Number of parallel job workers (default: queue_concurrency from config)')
    parser.add_argument('--timeout-sec', type=int, default=DEFAULT_RUN_TIMEOUT,
                        help=f'Maximum time to wait for a job run (default: {DEFAULT_RUN_TIMEOUT})')
    parser.add_argument('--report-dir', type=Path, default=Path(DEFAULT_REPORT_DIR),
                        help=f'Directory for output reports (default: {DEFAULT_REPORT_DIR})')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args(argv)

    if not any([args.import_servers, args.scan, args.upload, args.check_versions, args.jobs]):
        parser.print_help()
        return 1

    log_level = logging.DEBUG if args.debug else logging.INFO
    setup_logging(log_level)

    logger.info("=" * 70)
    logger.info("WP Fleet Manager")
    logger.info("=" * 70)

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    if args.concurrency:
        config['queue_concurrency'] = args.concurrency

    services = build_services(config)
    services.broadcaster.subscribe(log_event)

    exit_code = 0
    try:
        if args.import_servers:
            exit_code |= cmd_import_servers(services, args.import_servers)
        if args.upload:
            exit_code |= cmd_upload(services, args.upload)
        if args.scan:
            exit_code |= cmd_scan(services, args.scan)
        if args.check_versions:
            services.version_checker.check_plugin_updates()
            services.version_checker.check_theme_updates()
        if args.jobs:
            exit_code |= cmd_jobs(services, args)
    finally:
        services.shutdown()

    return exit_code


if __name__ == '__main__':
    sys.exit(main())
