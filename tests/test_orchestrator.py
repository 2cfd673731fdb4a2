import csv

import pytest

import orchestrator
from fleet.database import Database
from fleet.job_queue import JobOutcome
from fleet.models import (
    OperationResult,
    PackageJob,
    PackageKind,
    PackageOperation,
    PackageOperationInput,
    PackageSource,
)


def write_jobs(tmp_path, rows):
    path = tmp_path / 'jobs.csv'
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(['site', 'kind', 'slug', 'operation', 'source'])
        writer.writerows(rows)
    return path


def test_load_job_rows_parses_enums(tmp_path):
    path = write_jobs(tmp_path, [['Shop', 'plugin', 'akismet', 'update', ''], ['*', 'theme', 'astra', 'install', 'wordpress.org']])

    rows = orchestrator.load_job_rows(path)

    assert rows[0].source is None
    assert rows[1].kind is PackageKind.THEME
    assert rows[1].source is PackageSource.REGISTRY


def test_load_job_rows_reports_bad_line(tmp_path):
    path = write_jobs(tmp_path, [['Shop', 'plugin', 'akismet', 'explode', '']])

    with pytest.raises(ValueError, match='jobs.csv:2'):
        orchestrator.load_job_rows(path)


def test_expand_jobs_matches_sites_and_wildcards(db, server, installation):
    blog = db.upsert_installation(server.id, '/home/blog/public_html', {
        'unix_username': 'blog', 'site_title': 'Blog', 'site_url': 'https://blog.example.com',
    })
    db.upsert_package(PackageKind.PLUGIN, blog.id, 'akismet', {'version': '5.0'})

    rows = [
        orchestrator.JobRow('*', PackageKind.PLUGIN, 'akismet', PackageOperation.UPDATE),
        orchestrator.JobRow('*', PackageKind.PLUGIN, 'hello', PackageOperation.INSTALL),
        orchestrator.JobRow('https://shop.example.com/', PackageKind.THEME, 'astra', PackageOperation.ACTIVATE),
        orchestrator.JobRow('Nowhere', PackageKind.PLUGIN, 'akismet', PackageOperation.UPDATE),
    ]

    jobs, unmatched = orchestrator.expand_jobs(db, rows)

    assert [(j.installation_id, j.slug) for j in jobs] == [
        (blog.id, 'akismet'),
        (blog.id, 'hello'),
        (installation.id, 'hello'),
        (installation.id, 'astra'),
    ]
    assert unmatched == ['Nowhere']


def test_filter_jobs_by_site_title_and_slug():
    jobs = [
        PackageOperationInput('s1', PackageKind.PLUGIN, 'a', PackageOperation.UPDATE),
        PackageOperationInput('s2', PackageKind.PLUGIN, 'b', PackageOperation.UPDATE),
    ]

    assert orchestrator.filter_jobs(jobs, {'s1': 'Shop'}, only_sites=['Shop']) == jobs[:1]
    assert orchestrator.filter_jobs(jobs, {}, only_slugs=['b']) == jobs[1:]


def test_generate_reports_writes_csv_and_markdown(tmp_path):
    def outcome(slug, result):
        job = PackageJob('j-' + slug, 'now', 's1', PackageKind.PLUGIN, slug, PackageOperation.UPDATE, site_title='Shop')
        return JobOutcome(job=job, result=result, finished_at='2024-01-01T00:00:00')

    stats = orchestrator.generate_reports('run-1', [
        outcome('a', OperationResult.success('Plugin "a" updated')),
        outcome('b', OperationResult.failed('boom')),
        outcome('c', OperationResult.skipped('already up to date')),
    ], tmp_path)

    assert stats == {'total': 3, 'success': 1, 'failed': 1, 'skipped': 1}
    [csv_path] = tmp_path.glob('run-*.csv')
    [md_path] = tmp_path.glob('run-*.md')
    with open(csv_path, newline='') as f:
        rows = list(csv.DictReader(f))
    assert [r['status'] for r in rows] == ['success', 'failed', 'skipped']
    assert '**Run ID:** run-1' in md_path.read_text()


def test_main_without_command_prints_help():
    assert orchestrator.main([]) == 1


def test_main_dry_run_does_not_execute(tmp_path, monkeypatch):
    monkeypatch.delenv('FLEET_DB_PATH', raising=False)
    db_path = tmp_path / 'fleet.sqlite'
    config = tmp_path / 'config.yaml'
    config.write_text(f"db_path: {db_path}\nupload_dir: {tmp_path / 'uploads'}\nssh_key_dir: {tmp_path / 'keys'}\n")

    db = Database(db_path)
    server = db.create_server('web-01', 'web-01.example.com', 'CPANEL_WHM', 'key')
    db.upsert_installation(server.id, '/home/shop/public_html', {'unix_username': 'shop', 'site_title': 'Shop'})
    jobs = write_jobs(tmp_path, [['Shop', 'plugin', 'akismet', 'install', '']])

    exit_code = orchestrator.main(['--config', str(config), '--jobs', str(jobs), '--dry-run', '--report-dir', str(tmp_path / 'reports')])

    assert exit_code == 0
    assert not (tmp_path / 'reports').exists()
