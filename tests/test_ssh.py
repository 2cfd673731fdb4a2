import os
import stat
import subprocess

import pytest

from fleet.errors import ServerNotFoundError, SshConnectionError, SshTimeoutError
from fleet.ssh import RemoteShell, SshConnection, _to_result, build_ssh_command, exec_ssh_command


def completed(returncode, stdout='', stderr=''):
    return subprocess.CompletedProcess(args=['ssh'], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def conn():
    return SshConnection(host='web-01.example.com', port=2222, key_file='/tmp/key')


def test_build_ssh_command_uses_batch_mode_and_control_path(conn):
    cmd = build_ssh_command(conn, control_path='/tmp/cm.sock')

    assert cmd[:3] == ['ssh', '-p', '2222']
    assert 'BatchMode=yes' in cmd
    assert 'ControlPath=/tmp/cm.sock' in cmd
    assert cmd[-1] == 'root@web-01.example.com'


def test_nonzero_exit_is_a_result_not_an_error(conn):
    result = _to_result(completed(3, stdout='partial', stderr='Error: nope'), conn)

    assert (result.code, result.stdout, result.ok) == (3, 'partial', False)


def test_transport_failure_raises(conn):
    with pytest.raises(SshConnectionError, match='Connection refused'):
        _to_result(completed(255, stderr='ssh: connect to host: Connection refused\n'), conn)


def test_remote_exit_255_is_reported_as_transport_failure(conn):
    with pytest.raises(SshConnectionError, match="ssh exited with code 255"):
        _to_result(completed(255, stdout="remote output"), conn)


def test_killed_process_reports_signal(conn):
    result = _to_result(completed(-9), conn)

    assert result.code is None
    assert result.signal == 'SIGKILL'


def test_timeout_raises(conn, monkeypatch):
    def fake_run(*args, **kwargs):
        raise subprocess.TimeoutExpired(cmd='ssh', timeout=kwargs['timeout'])

    monkeypatch.setattr(subprocess, 'run', fake_run)

    with pytest.raises(SshTimeoutError):
        exec_ssh_command(conn, 'sleep 100', timeout=1)


def test_remote_shell_writes_private_key_once_with_0600(db, server, tmp_path):
    shell = RemoteShell(db, tmp_path / 'keys')

    first = shell.connection_for(server)
    second = shell.connection_for(server)

    assert first.key_file == second.key_file
    assert stat.S_IMODE(os.stat(first.key_file).st_mode) == 0o600
    assert (first.host, first.port) == ('web-01.example.com', 22)


def test_remote_shell_unknown_server(db, tmp_path):
    with pytest.raises(ServerNotFoundError):
        RemoteShell(db, tmp_path).exec('missing', 'true')
