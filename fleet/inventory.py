"""
Fleet-wide view of installed plugins/themes, grouped by slug.
"""

from functools import cmp_to_key
from typing import Any, Dict, List, Optional

from fleet.models import PackageKind, PackageSource
from fleet.versions import compare_versions, is_version_newer


def _best_latest(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return current
    if not current or is_version_newer(candidate, current):
        return candidate
    return current


def installed_packages(db, kind: PackageKind) -> List[Dict[str, Any]]:
    """
    Aggregate installed packages across all installations.

    The best-known latest version of a row is its registry latest_version,
    else the latest uploaded archive version for the slug. An installation
    is outdated when that version is newer than what it runs.
    """
    uploaded_latest = db.latest_uploaded_versions(kind)
    rows = db.list_packages_with_sites(kind)

    # First pass: best-known latest version per slug
    latest_by_slug: Dict[str, Optional[str]] = {}
    for row in rows:
        latest = row.get('latest_version') or uploaded_latest.get(row['slug'])
        latest_by_slug[row['slug']] = _best_latest(latest_by_slug.get(row['slug']), latest)

    grouped: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        slug = row['slug']
        entry = grouped.get(slug)
        if entry is None:
            entry = grouped[slug] = {
                'slug': slug,
                'name': row['name'],
                'title': row['title'],
                'versions': {},
                'source': row['source'],
                'latest_version': latest_by_slug[slug],
                'has_newer_version': False,
                'total_installations': 0,
                'up_to_date_count': 0,
                'outdated_count': 0,
                'outdated_installation_ids': [],
            }

        version = row['version'] or ''
        entry['versions'][version] = entry['versions'].get(version, 0) + 1
        entry['total_installations'] += 1

        if entry['latest_version'] and is_version_newer(entry['latest_version'], version):
            entry['outdated_count'] += 1
            entry['outdated_installation_ids'].append(row['installation_id'])
            entry['has_newer_version'] = True
        else:
            entry['up_to_date_count'] += 1

        if row['source'] != PackageSource.UNKNOWN.value:
            entry['source'] = row['source']

    result = []
    for entry in grouped.values():
        versions = sorted(entry['versions'].items(), key=cmp_to_key(lambda a, b: compare_versions(b[0], a[0])))
        entry['versions'] = [{'version': version, 'sites_count': count} for version, count in versions]
        result.append(entry)

    result.sort(key=lambda entry: (entry['title'] or entry['slug']).lower())
    return result


def package_sites(db, kind: PackageKind, slug: str) -> List[Dict[str, Any]]:
    """Installations that have a slug installed, with their installed state."""
    return [
        {
            'installation_id': row['installation_id'],
            'site_title': row['site_title'],
            'site_url': row['site_url'],
            'version': row['version'],
            'is_enabled': bool(row['is_enabled']),
            'source': row['source'],
            'latest_version': row['latest_version'],
        }
        for row in db.list_packages_with_sites(kind)
        if row['slug'] == slug
    ]
