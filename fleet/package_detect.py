"""
Classify a ZIP archive as a WordPress plugin or theme.

Reads the standard file headers ("Plugin Name:" in a root PHP file,
"Theme Name:" in style.css) the same way WordPress' get_file_data() does.
"""

import re
import zipfile
from dataclasses import dataclass
from typing import List, Optional

from fleet.models import PackageKind

HEADER_MAX_BYTES = 128 * 1024
DEFAULT_VERSION = '0.0.0'


@dataclass
class DetectedPackage:
    kind: Optional[PackageKind]
    slug: str = ''
    title: str = ''
    version: str = ''

    @property
    def is_known(self) -> bool:
        return self.kind is not None


def to_safe_slug(value: str) -> str:
    slug = re.sub(r'[^a-z0-9_]+', '-', (value or '').lower().strip())
    return slug.strip('-')


def _header_pattern(name: str):
    return re.compile(r'^(?:[ \t]*<\?php)?[ \t/*#@]*' + re.escape(name) + r'[ \t]*:(.*)$', re.IGNORECASE | re.MULTILINE)


def parse_headers(content: str, title_header: str) -> Optional[dict]:
    """Title and version from a file header, or None without a title."""
    text = content[:HEADER_MAX_BYTES]
    title_match = _header_pattern(title_header).search(text)
    if not title_match or not title_match.group(1).strip():
        return None

    version_match = _header_pattern('Version').search(text)
    version = version_match.group(1).strip() if version_match else ''
    return {'title': title_match.group(1).strip(), 'version': version or DEFAULT_VERSION}


def _read_text(archive: zipfile.ZipFile, name: str) -> Optional[str]:
    try:
        with archive.open(name) as f:
            return f.read(HEADER_MAX_BYTES).decode('utf-8', errors='replace')
    except (KeyError, OSError, zipfile.BadZipFile):
        return None


def _top_level_dirs(entries: List[str]) -> List[str]:
    roots = []
    for entry in entries:
        if '/' in entry:
            root = entry.split('/', 1)[0]
            if root and root not in roots:
                roots.append(root)
    return roots


def _detect_theme(archive: zipfile.ZipFile, entries: List[str], roots: List[str]) -> Optional[DetectedPackage]:
    candidates = [f"{root}/style.css" for root in roots if f"{root}/style.css" in entries]
    if not candidates and 'style.css' in entries:
        candidates.append('style.css')

    for style_path in candidates:
        content = _read_text(archive, style_path)
        parsed = parse_headers(content, 'Theme Name') if content else None
        if not parsed:
            continue

        base = parsed['title'] if style_path == 'style.css' else style_path.split('/', 1)[0]
        slug = to_safe_slug(base)
        if slug:
            return DetectedPackage(PackageKind.THEME, slug, parsed['title'], parsed['version'])
    return None


def _detect_plugin(archive: zipfile.ZipFile, entries: List[str], roots: List[str]) -> Optional[DetectedPackage]:
    candidates = []
    for root in roots:
        root_php = [
            entry for entry in entries
            if entry.startswith(f"{root}/") and entry.lower().endswith('.php')
            and '/' not in entry[len(root) + 1:]
        ]
        # <root>/<root>.php first
        root_php.sort(key=lambda entry: 0 if entry.lower().endswith(f"/{root.lower()}.php") else 1)
        candidates.extend(entry for entry in root_php if entry not in candidates)

    if not candidates:
        candidates = [entry for entry in entries if entry.lower().endswith('.php') and '/' not in entry]

    for candidate in candidates:
        content = _read_text(archive, candidate)
        parsed = parse_headers(content, 'Plugin Name') if content else None
        if not parsed:
            continue

        root = candidate.split('/', 1)[0] if '/' in candidate else re.sub(r'\.php$', '', candidate, flags=re.IGNORECASE)
        slug = to_safe_slug(root)
        if slug:
            return DetectedPackage(PackageKind.PLUGIN, slug, parsed['title'], parsed['version'])
    return None


def detect_package(zip_path) -> DetectedPackage:
    """
    Inspect an archive. kind is None when it is not a recognisable plugin
    or theme, or when it looks like both.
    """
    try:
        with zipfile.ZipFile(zip_path) as archive:
            entries = [name for name in archive.namelist() if name and not name.startswith('__MACOSX/')]
            if not entries:
                return DetectedPackage(None)

            roots = _top_level_dirs(entries)
            theme = _detect_theme(archive, entries, roots)
            plugin = _detect_plugin(archive, entries, roots)
    except (zipfile.BadZipFile, OSError):
        return DetectedPackage(None)

    if theme and plugin:
        return DetectedPackage(None)
    return theme or plugin or DetectedPackage(None)
