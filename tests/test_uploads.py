import io
import sqlite3
import zipfile
from pathlib import Path

import pytest

from conftest import RecordingBroadcaster
from fleet.broadcast import CHANNEL_UPLOAD, EVENT_COMPLETE
from fleet.errors import UploadError
from fleet.inventory import installed_packages, package_sites
from fleet.models import PackageKind
from fleet.package_detect import detect_package, parse_headers, to_safe_slug
from fleet.uploads import PackageUploads, UploadFile, is_zip_file


def make_zip(files):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def plugin_zip(slug='my-plugin', version='1.2.0', title='My Plugin'):
    header = f"<?php\n/**\n * Plugin Name: {title}\n * Version: {version}\n */\n"
    return make_zip({f'{slug}/{slug}.php': header, f'{slug}/readme.txt': 'readme'})


def theme_zip(slug='brand', version='3.1', title='Brand Theme'):
    style = f"/*\nTheme Name: {title}\nVersion: {version}\n*/\n"
    return make_zip({f'{slug}/style.css': style, f'{slug}/index.php': '<?php'})


@pytest.fixture
def uploads(db, tmp_path):
    return PackageUploads(db, RecordingBroadcaster(), tmp_path / 'uploads')


def test_parse_headers_defaults_version():
    assert parse_headers(" * Plugin Name: Foo\n", 'Plugin Name') == {'title': 'Foo', 'version': '0.0.0'}
    assert parse_headers("nothing here", 'Plugin Name') is None


def test_to_safe_slug():
    assert to_safe_slug('  My Fancy_Theme!! ') == 'my-fancy_theme'


def test_detect_plugin_and_theme():
    plugin = detect_package(io.BytesIO(plugin_zip()))
    theme = detect_package(io.BytesIO(theme_zip()))

    assert (plugin.kind, plugin.slug, plugin.version) == (PackageKind.PLUGIN, 'my-plugin', '1.2.0')
    assert (theme.kind, theme.slug, theme.title) == (PackageKind.THEME, 'brand', 'Brand Theme')


def test_archive_that_looks_like_both_is_unknown():
    both = make_zip({
        'odd/style.css': "/*\nTheme Name: Odd\n*/",
        'odd/odd.php': "<?php\n/* Plugin Name: Odd */",
    })
    assert not detect_package(io.BytesIO(both)).is_known


def test_is_zip_file_needs_name_and_signature():
    assert is_zip_file('a.zip', plugin_zip())
    assert not is_zip_file('a.tar', plugin_zip())
    assert not is_zip_file('a.zip', b'not a zip')


def test_process_classifies_each_file_once(uploads, db):
    result = uploads.process([
        UploadFile('my-plugin.zip', plugin_zip()),
        UploadFile('my-plugin-again.zip', plugin_zip()),
        UploadFile('notes.txt', b'hello'),
        UploadFile('brand.zip', theme_zip()),
    ])

    assert (result['total'], result['success'], result['skipped'], result['failed']) == (4, 2, 1, 1)
    assert [r['result'] for r in result['results']] == ['success', 'skipped', 'failed', 'success']
    assert db.get_latest_uploaded(PackageKind.PLUGIN, 'my-plugin').version == '1.2.0'

    completes = uploads.broadcaster.of(CHANNEL_UPLOAD, EVENT_COMPLETE)
    assert len(completes) == 1
    assert completes[0].upload_id == result['upload_id']


def test_process_rejects_empty_batch(uploads):
    with pytest.raises(UploadError):
        uploads.process([])


def test_oversized_file_fails(db, tmp_path):
    small = PackageUploads(db, RecordingBroadcaster(), tmp_path, max_bytes=10)

    result = small.process([UploadFile('my-plugin.zip', plugin_zip())])

    assert result['failed'] == 1
    assert 'limit' in result['results'][0]['message']


def test_delete_versions_removes_archives(uploads, db):
    uploads.process([UploadFile('a.zip', plugin_zip(version='1.0')), UploadFile('b.zip', plugin_zip(version='2.0'))])
    stored = {u.version: u.archive_path for u in uploads.list_versions(PackageKind.PLUGIN, 'my-plugin')}

    deleted = uploads.delete_versions(PackageKind.PLUGIN, 'my-plugin', ['2.0'])

    assert [d.version for d in deleted] == ['2.0']
    assert not Path(stored['2.0']).exists()
    assert Path(stored['1.0']).exists()
    assert db.get_latest_uploaded(PackageKind.PLUGIN, 'my-plugin').version == '1.0'


def test_inventory_uses_uploaded_latest_when_registry_unknown(db, server, installation, uploads):
    other = db.upsert_installation(server.id, '/home/blog/public_html', {'unix_username': 'blog', 'site_title': 'Blog'})
    db.upsert_package(PackageKind.PLUGIN, installation.id, 'my-plugin', {'version': '1.0', 'source': 'external'})
    db.upsert_package(PackageKind.PLUGIN, other.id, 'my-plugin', {'version': '1.2.0', 'source': 'unknown'})
    uploads.process([UploadFile('my-plugin.zip', plugin_zip(version='1.2.0'))])

    [entry] = installed_packages(db, PackageKind.PLUGIN)

    assert entry['latest_version'] == '1.2.0'
    assert entry['source'] == 'external'
    assert entry['has_newer_version']
    assert (entry['total_installations'], entry['outdated_count'], entry['up_to_date_count']) == (2, 1, 1)
    assert entry['outdated_installation_ids'] == [installation.id]
    assert entry['versions'] == [{'version': '1.2.0', 'sites_count': 1}, {'version': '1.0', 'sites_count': 1}]

    sites = package_sites(db, PackageKind.PLUGIN, 'my-plugin')
    assert {s['site_title'] for s in sites} == {'Shop', 'Blog'}


def test_inventory_prefers_newest_registry_version(db, installation):
    db.upsert_package(PackageKind.THEME, installation.id, 'astra', {'version': '4.0', 'latest_version': '4.6', 'source': 'wordpress.org'})

    [entry] = installed_packages(db, PackageKind.THEME)

    assert entry['latest_version'] == '4.6'
    assert entry['outdated_count'] == 1


def test_version_stored_between_check_and_record_is_skipped(db, uploads):
    class RacingDb:
        def __init__(self, real):
            self.real = real

        def find_uploaded(self, *args):
            return None

        def record_upload(self, kind, **fields):
            self.real.record_upload(kind, **{**fields, 'archive_path': '/elsewhere.zip'})
            return self.real.record_upload(kind, **fields)

    uploads.db = RacingDb(db)

    result = uploads.process([UploadFile('p.zip', plugin_zip())])

    assert (result['success'], result['skipped']) == (0, 1)
    assert list((uploads.upload_dir / 'plugins').iterdir()) == []
    assert len(db.list_uploaded(PackageKind.PLUGIN, 'my-plugin')) == 1


def test_database_error_fails_file_and_still_completes(db, uploads):
    class LockedDb:
        def find_uploaded(self, *args):
            return None

        def record_upload(self, *args, **kwargs):
            raise sqlite3.OperationalError('database is locked')

    uploads.db = LockedDb()

    result = uploads.process([UploadFile('p.zip', plugin_zip()), UploadFile('t.zip', theme_zip())])

    assert (result['failed'], result['current']) == (2, 2)
    assert result['results'][0]['message'] == 'database is locked'
    assert list((uploads.upload_dir / 'plugins').iterdir()) == []
    completes = uploads.broadcaster.of(CHANNEL_UPLOAD, EVENT_COMPLETE)
    assert len(completes) == 1
