"""
Scheduled maintenance: scan every server, then refresh registry versions.
"""

import logging
import time
from dataclasses import dataclass, asdict
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class DailyScanReport:
    total_servers: int = 0
    scanned: int = 0
    failed: int = 0
    version_checks_ran: bool = False

    def to_dict(self):
        return asdict(self)


def scan_all_servers(db, scanner, version_checker=None) -> DailyScanReport:
    """
    Scan servers one after another. A server counts as scanned when at
    least one installation was refreshed.
    """
    servers = db.list_servers()
    report = DailyScanReport(total_servers=len(servers))

    for server in servers:
        try:
            result = scanner.run_server_scan(server)
        except Exception as e:
            logger.error(f"Failed scanning {server.name}: {e}")
            report.failed += 1
            continue

        if result.success > 0:
            report.scanned += 1
        else:
            report.failed += 1

    if version_checker is not None:
        report.version_checks_ran = version_checker.run_if_needed()

    logger.info(f"Scheduled scan: {report.scanned}/{report.total_servers} servers scanned, {report.failed} failed")
    return report


def run_every(
    interval_seconds: float,
    job: Callable[[], object],
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Optional[Callable[[], bool]] = None
):
    """Call job every interval_seconds (first call after one interval)."""
    should_stop = should_stop or (lambda: False)
    while not should_stop():
        sleep(interval_seconds)
        if should_stop():
            break
        try:
            job()
        except Exception as e:
            logger.error(f"Scheduled task failed: {e}")
