"""
WordPress.org update-check client.

Asks the public update-check API which installed plugins/themes it knows.
Known slugs get source 'wordpress.org' and their newest version; the rest
are marked 'external' (only installable from uploaded archives).
"""

import json
import logging
import time
from typing import Dict, Optional

import requests

from fleet.models import PackageKind, PackageSource

logger = logging.getLogger(__name__)

PLUGINS_UPDATE_CHECK_URL = "https://api.wordpress.org/plugins/update-check/1.1/"
THEMES_UPDATE_CHECK_URL = "https://api.wordpress.org/themes/update-check/1.1/"
VERSION_CHECK_OPTION_KEY = "wordpress_org_version_check_last"
VERSION_CHECK_INTERVAL_SECONDS = 60 * 60
REQUEST_TIMEOUT = 30


class VersionChecker:

    def __init__(self, db, session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self.db = db
        self.session = session or requests.Session()
        self.timeout = timeout

    def should_run(self) -> bool:
        """Always when provenance of some rows is unknown, else at most hourly."""
        for kind in PackageKind:
            if self.db.count_packages_with_source(kind, PackageSource.UNKNOWN.value) > 0:
                return True

        last_check = self.db.get_option(VERSION_CHECK_OPTION_KEY)
        if not last_check:
            return True
        return time.time() - float(last_check) >= VERSION_CHECK_INTERVAL_SECONDS

    def run_if_needed(self) -> bool:
        if not self.should_run():
            logger.debug("WordPress.org version check not due yet")
            return False

        self.check_plugin_updates()
        self.check_theme_updates()
        self.db.set_option(VERSION_CHECK_OPTION_KEY, time.time())
        return True

    def _post(self, url: str, payload: Dict[str, str]) -> Optional[Dict]:
        try:
            response = self.session.post(url, data=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"WordPress.org update check failed: {e}")
            return None

        if response.status_code != 200:
            logger.error(f"WordPress.org update check failed (HTTP {response.status_code})")
            return None

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from WordPress.org: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _mark_registry(self, kind: PackageKind, slug: str, info):
        fields = {'source': PackageSource.REGISTRY.value}
        if isinstance(info, dict) and info.get('new_version'):
            fields['latest_version'] = info['new_version']
        self.db.update_packages_by_slug(kind, slug, **fields)

    def check_plugin_updates(self) -> int:
        """Returns the number of slugs WordPress.org knows."""
        plugin_files = self.db.distinct_plugin_files()
        if not plugin_files:
            return 0

        # The API is keyed by "dir/main-file.php"
        path_to_slug = {}
        for slug, main_file in plugin_files.items():
            path_to_slug[main_file or f"{slug}/{slug}.php"] = slug

        data = self._post(PLUGINS_UPDATE_CHECK_URL, {
            'plugins': json.dumps({'plugins': {path: {} for path in path_to_slug}, 'active': []}),
            'translations': '[]',
            'locale': '["en_US"]',
            'all': 'true',
        })
        if data is None:
            return 0

        found = set()
        for section in ('plugins', 'no_update'):
            for path, info in (data.get(section) or {}).items():
                slug = path_to_slug.get(path)
                if not slug:
                    continue
                found.add(slug)
                self._mark_registry(PackageKind.PLUGIN, slug, info)

        for slug in set(plugin_files) - found:
            self.db.update_packages_by_slug(PackageKind.PLUGIN, slug, source=PackageSource.EXTERNAL.value)

        logger.info(f"WordPress.org knows {len(found)} of {len(plugin_files)} plugins")
        return len(found)

    def check_theme_updates(self) -> int:
        slugs = self.db.distinct_theme_slugs()
        if not slugs:
            return 0

        data = self._post(THEMES_UPDATE_CHECK_URL, {
            'themes': json.dumps({'themes': {slug: {} for slug in slugs}, 'active': slugs[0]}),
            'translations': '[]',
            'locale': '["en_US"]',
            'all': 'true',
        })
        if data is None:
            return 0

        found = set()
        for section in ('themes', 'no_update'):
            for slug, info in (data.get(section) or {}).items():
                if slug not in slugs:
                    continue
                found.add(slug)
                self._mark_registry(PackageKind.THEME, slug, info)

        for slug in set(slugs) - found:
            self.db.update_packages_by_slug(PackageKind.THEME, slug, source=PackageSource.EXTERNAL.value)

        logger.info(f"WordPress.org knows {len(found)} of {len(slugs)} themes")
        return len(found)
