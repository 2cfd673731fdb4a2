import json

import requests

from fleet.models import PackageKind, PackageSource
from fleet.wordpress_org import (
    PLUGINS_UPDATE_CHECK_URL,
    THEMES_UPDATE_CHECK_URL,
    VERSION_CHECK_OPTION_KEY,
    VersionChecker,
)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.posts = []

    def post(self, url, data=None, timeout=None):
        self.posts.append((url, data))
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


def test_plugin_check_marks_known_and_external_slugs(db, installation):
    db.upsert_package(PackageKind.PLUGIN, installation.id, 'akismet', {'version': '5.0', 'main_file_path': 'akismet/akismet.php'})
    db.upsert_package(PackageKind.PLUGIN, installation.id, 'hello', {'version': '1.7'})
    db.upsert_package(PackageKind.PLUGIN, installation.id, 'premium', {'version': '2.0'})
    session = FakeSession({PLUGINS_UPDATE_CHECK_URL: FakeResponse({
        'plugins': {'akismet/akismet.php': {'slug': 'akismet', 'new_version': '5.3'}},
        'no_update': {'hello/hello.php': {'slug': 'hello', 'new_version': '1.7'}},
    })})

    known = VersionChecker(db, session=session).check_plugin_updates()

    assert known == 2
    sent = json.loads(session.posts[0][1]['plugins'])['plugins']
    assert set(sent) == {'akismet/akismet.php', 'hello/hello.php', 'premium/premium.php'}

    rows = {p.slug: p for p in db.list_packages(PackageKind.PLUGIN)}
    assert (rows['akismet'].source, rows['akismet'].latest_version) == (PackageSource.REGISTRY.value, '5.3')
    assert rows['hello'].source == PackageSource.REGISTRY.value
    assert rows['premium'].source == PackageSource.EXTERNAL.value


def test_theme_check_failure_leaves_rows_untouched(db, installation):
    db.upsert_package(PackageKind.THEME, installation.id, 'astra', {'version': '4.0', 'source': 'unknown'})
    session = FakeSession({THEMES_UPDATE_CHECK_URL: requests.ConnectionError('offline')})

    assert VersionChecker(db, session=session).check_theme_updates() == 0
    assert db.find_package(PackageKind.THEME, installation.id, 'astra').source == 'unknown'


def test_http_error_and_bad_json_are_ignored(db, installation):
    db.upsert_package(PackageKind.THEME, installation.id, 'astra', {'version': '4.0'})

    for response in (FakeResponse({}, status_code=503), FakeResponse(ValueError('not json'))):
        checker = VersionChecker(db, session=FakeSession({THEMES_UPDATE_CHECK_URL: response}))
        assert checker.check_theme_updates() == 0


def test_run_if_needed_is_throttled_once_provenance_is_known(db, installation):
    db.upsert_package(PackageKind.THEME, installation.id, 'astra', {'version': '4.0', 'source': 'unknown'})
    session = FakeSession({THEMES_UPDATE_CHECK_URL: FakeResponse({'themes': {'astra': {'new_version': '4.6'}}})})
    checker = VersionChecker(db, session=session)

    assert checker.run_if_needed()
    assert db.get_option(VERSION_CHECK_OPTION_KEY)
    assert not checker.should_run()
    assert not checker.run_if_needed()
    assert len(session.posts) == 1
