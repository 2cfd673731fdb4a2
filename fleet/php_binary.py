"""
PHP binary detection per server type.

- PLESK: latest version directory under /opt/plesk/php/
- CPANEL_WHM: /usr/local/bin/php
- anything else, or any detection failure: plain 'php' from PATH
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Tuple

from fleet.errors import FleetError
from fleet.models import SERVER_TYPE_CPANEL, SERVER_TYPE_PLESK

logger = logging.getLogger(__name__)

FALLBACK_PHP = "php"
CPANEL_PHP = "/usr/local/bin/php"
PLESK_PHP_ROOT = "/opt/plesk/php"
DETECT_PLESK_PHP_CMD = f"ls -1 {PLESK_PHP_ROOT}/ 2>/dev/null | sort -V | tail -1"


@dataclass
class PhpBinaryResult:
    binary: str
    detected: bool


def plesk_php_path(version_dir: str) -> str:
    return f"{PLESK_PHP_ROOT}/{version_dir}/bin/php"


class PhpBinaryResolver:
    """Resolves and caches the PHP interpreter path for each server."""

    def __init__(self, remote, cache_seconds: float = 300):
        self.remote = remote
        self.cache_seconds = cache_seconds
        self._cache: Dict[str, Tuple[float, PhpBinaryResult]] = {}
        self._lock = threading.Lock()

    def resolve(self, server_id: str) -> PhpBinaryResult:
        with self._lock:
            cached = self._cache.get(server_id)
            if cached and time.monotonic() - cached[0] < self.cache_seconds:
                return cached[1]

        result = self._detect(server_id)

        if result.detected:
            with self._lock:
                self._cache[server_id] = (time.monotonic(), result)
        return result

    def invalidate(self, server_id: str):
        with self._lock:
            self._cache.pop(server_id, None)

    def _detect(self, server_id: str) -> PhpBinaryResult:
        try:
            server = self.remote.get_server(server_id)
        except FleetError:
            return PhpBinaryResult(FALLBACK_PHP, False)

        if server.server_type == SERVER_TYPE_CPANEL:
            return PhpBinaryResult(CPANEL_PHP, True)

        if server.server_type == SERVER_TYPE_PLESK:
            try:
                result = self.remote.exec(server_id, DETECT_PLESK_PHP_CMD, timeout=10)
            except FleetError as e:
                logger.warning(f"PHP detection failed on {server.name}, using '{FALLBACK_PHP}': {e}")
                return PhpBinaryResult(FALLBACK_PHP, False)

            latest = result.stdout.strip()
            if latest and result.code == 0:
                return PhpBinaryResult(plesk_php_path(latest), True)

            logger.warning(f"No Plesk PHP version found on {server.name}, using '{FALLBACK_PHP}'")

        return PhpBinaryResult(FALLBACK_PHP, False)
