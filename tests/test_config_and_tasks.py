import pytest

from fleet.broadcast import EventBroadcaster
from fleet.config import DEFAULTS, load_config
from fleet.scanner import ScanResult
from fleet.tasks import run_every, scan_all_servers


def test_load_config_defaults_when_file_missing(tmp_path, monkeypatch):
    monkeypatch.delenv('FLEET_CONFIG', raising=False)
    monkeypatch.delenv('SECRET_KEY', raising=False)
    monkeypatch.delenv('FLEET_DB_PATH', raising=False)
    monkeypatch.delenv('FLEET_UPLOAD_DIR', raising=False)

    config = load_config(str(tmp_path / 'absent.yaml'))

    assert config == DEFAULTS


def test_load_config_overlays_yaml_then_environment(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text("queue_concurrency: '3'\nqueue_retry_delay: 2\nmystery: 1\ndb_path: from-yaml.sqlite\n")
    monkeypatch.setenv('FLEET_DB_PATH', '/data/fleet.sqlite')

    config = load_config(str(path))

    assert config['queue_concurrency'] == 3
    assert config['queue_retry_delay'] == 2.0
    assert config['db_path'] == '/data/fleet.sqlite'
    assert 'mystery' not in config


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("- just\n- a list\n")

    with pytest.raises(ValueError):
        load_config(str(path))


class StubScanner:
    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.scanned = []

    def run_server_scan(self, server):
        self.scanned.append(server.name)
        outcome = self.outcomes[server.name]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class StubChecker:
    def __init__(self):
        self.calls = 0

    def run_if_needed(self):
        self.calls += 1
        return True


def test_scan_all_servers_counts_each_server(db):
    for name in ('a', 'b', 'c'):
        db.create_server(name, f'{name}.example.com', 'CPANEL_WHM', 'key')
    scanner = StubScanner({
        'a': ScanResult(success=3, failed=1),
        'b': ScanResult(success=0, failed=1),
        'c': RuntimeError('boom'),
    })
    checker = StubChecker()

    report = scan_all_servers(db, scanner, checker)

    assert scanner.scanned == ['a', 'b', 'c']
    assert (report.total_servers, report.scanned, report.failed) == (3, 1, 2)
    assert report.version_checks_ran
    assert checker.calls == 1


def test_run_every_keeps_going_after_job_errors():
    calls = []
    sleeps = []

    def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError('first run fails')

    run_every(60, job, sleep=sleeps.append, should_stop=lambda: len(calls) >= 3)

    assert len(calls) == 3
    assert sleeps == [60, 60, 60]


def test_broadcaster_drops_failing_subscriber():
    broadcaster = EventBroadcaster()
    received = []

    def broken(event):
        raise RuntimeError('socket closed')

    broadcaster.subscribe(broken)
    broadcaster.subscribe(received.append)
    broadcaster.emit('scan', 'log', 'hello', server_id='s1')
    broadcaster.emit('scan', 'log', 'again')

    assert [e.message for e in received] == ['hello', 'again']
    assert broadcaster.subscriber_count() == 1
    assert received[0].to_dict() == {'channel': 'scan', 'type': 'log', 'message': 'hello', 'server_id': 's1'}
