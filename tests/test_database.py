from fleet.models import PackageKind, PackageSource


def test_new_installation_gets_default_monitoring_level_only_on_insert(db, server):
    first = db.upsert_installation(server.id, '/home/a/public_html', {'unix_username': 'a'}, default_monitoring_level='high')
    assert first.monitoring_level == 'high'

    again = db.upsert_installation(server.id, '/home/a/public_html', {'site_title': 'A'}, default_monitoring_level='off')
    assert again.id == first.id
    assert again.monitoring_level == 'high'
    assert again.site_title == 'A'


def test_replace_packages_keeps_provenance_of_known_slugs(db, installation):
    db.replace_packages(PackageKind.PLUGIN, installation.id, [
        {'slug': 'akismet', 'name': 'akismet', 'title': 'Akismet', 'version': '5.0'},
    ])
    db.update_packages_by_slug(PackageKind.PLUGIN, 'akismet', source=PackageSource.REGISTRY.value, latest_version='5.3')

    db.replace_packages(PackageKind.PLUGIN, installation.id, [
        {'slug': 'akismet', 'name': 'akismet', 'title': 'Akismet', 'version': '5.1'},
        {'slug': 'hello', 'name': 'hello', 'title': 'Hello Dolly', 'version': '1.7'},
    ])

    akismet = db.find_package(PackageKind.PLUGIN, installation.id, 'akismet')
    hello = db.find_package(PackageKind.PLUGIN, installation.id, 'hello')
    assert akismet.version == '5.1'
    assert akismet.source == PackageSource.REGISTRY.value
    assert akismet.latest_version == '5.3'
    assert hello.source == PackageSource.UNKNOWN.value


def test_replace_packages_drops_rows_no_longer_reported(db, installation):
    db.replace_packages(PackageKind.THEME, installation.id, [
        {'slug': 'astra', 'name': 'astra', 'title': 'Astra', 'version': '4.0'},
    ])
    db.replace_packages(PackageKind.THEME, installation.id, [])

    assert db.list_packages(PackageKind.THEME, installation.id) == []


def test_latest_upload_is_elected_by_version_not_upload_order(db):
    db.record_upload(PackageKind.PLUGIN, 'pro', 'Pro', '2.0.0', '/x/pro-2.zip', 'pro.zip')
    older = db.record_upload(PackageKind.PLUGIN, 'pro', 'Pro', '1.5.0', '/x/pro-1.zip', 'pro.zip')

    assert not older.is_latest
    assert db.get_latest_uploaded(PackageKind.PLUGIN, 'pro').version == '2.0.0'

    db.record_upload(PackageKind.PLUGIN, 'pro', 'Pro', '2.1.0', '/x/pro-3.zip', 'pro.zip')
    latest = [u for u in db.list_uploaded(PackageKind.PLUGIN, 'pro') if u.is_latest]
    assert [u.version for u in latest] == ['2.1.0']


def test_record_upload_refuses_same_version_twice(db):
    first = db.record_upload(PackageKind.PLUGIN, 'pro', 'Pro', '1.0', '/x/a.zip', 'pro.zip')

    assert db.record_upload(PackageKind.PLUGIN, 'pro', 'Pro', '1.0', '/x/b.zip', 'pro.zip') is None
    assert [u.id for u in db.list_uploaded(PackageKind.PLUGIN, 'pro')] == [first.id]


def test_deleting_latest_upload_reelects_next_newest(db):
    db.record_upload(PackageKind.THEME, 'brand', 'Brand', '1.0', '/x/b1.zip', 'brand.zip')
    db.record_upload(PackageKind.THEME, 'brand', 'Brand', '1.2', '/x/b2.zip', 'brand.zip')

    deleted = db.delete_uploaded_versions(PackageKind.THEME, 'brand', ['1.2'])

    assert [d.version for d in deleted] == ['1.2']
    assert db.get_latest_uploaded(PackageKind.THEME, 'brand').version == '1.0'

    db.delete_uploaded_versions(PackageKind.THEME, 'brand')
    assert db.get_latest_uploaded(PackageKind.THEME, 'brand') is None


def test_deleting_server_cascades_to_installations_and_packages(db, server, installation):
    db.upsert_package(PackageKind.PLUGIN, installation.id, 'akismet', {'version': '5.0'})

    assert db.delete_server(server.id)
    assert db.get_installation(installation.id) is None
    assert db.list_packages(PackageKind.PLUGIN) == []


def test_options_round_trip_json_values(db):
    db.set_option('monitoring.default_new_site_level', 'high')
    db.set_option('last_check', 1700000000.5)

    assert db.get_option('monitoring.default_new_site_level') == 'high'
    assert db.get_option('last_check') == 1700000000.5
    assert db.get_option('missing', 'fallback') == 'fallback'
