"""
SSH/SCP operations against managed servers.

Commands run through the system OpenSSH client in batch mode. A plain
call opens a fresh connection; an SshSession keeps one authenticated
control master open so a worker can issue many commands over a single
transport.
"""

import hashlib
import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from fleet.errors import ServerNotFoundError, SshConnectionError, SshTimeoutError, UploadError
from fleet.models import Server

logger = logging.getLogger(__name__)

DEFAULT_SSH_USER = "root"
DEFAULT_CONNECT_TIMEOUT = 15
SSH_TRANSPORT_FAILURE = 255


@dataclass
class SshConnection:
    """Everything needed to reach one host."""
    host: str
    port: int
    key_file: str
    username: str = DEFAULT_SSH_USER
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}"


@dataclass
class SshExecResult:
    """Output of one remote command."""
    stdout: str
    stderr: str
    code: Optional[int]
    signal: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == 0


def _common_options(conn: SshConnection) -> List[str]:
    return [
        '-i', conn.key_file,
        '-o', 'BatchMode=yes',
        '-o', 'IdentitiesOnly=yes',
        '-o', 'StrictHostKeyChecking=no',
        '-o', 'UserKnownHostsFile=/dev/null',
        '-o', 'LogLevel=ERROR',
        '-o', f'ConnectTimeout={conn.connect_timeout}',
    ]


def build_ssh_command(conn: SshConnection, control_path: Optional[str] = None) -> List[str]:
    """Build SSH command with standard options."""
    cmd = ['ssh', '-p', str(conn.port)]
    cmd.extend(_common_options(conn))

    if control_path:
        cmd.extend(['-o', f'ControlPath={control_path}'])

    cmd.append(conn.target)
    return cmd


def _first_line(text: str) -> str:
    for line in (text or '').splitlines():
        if line.strip():
            return line.strip()
    return ''


def _to_result(process: subprocess.CompletedProcess, conn: SshConnection) -> SshExecResult:
    if process.returncode == SSH_TRANSPORT_FAILURE:
        message = _first_line(process.stderr) or f"ssh exited with code {SSH_TRANSPORT_FAILURE}"
        raise SshConnectionError(f"SSH connection to {conn.host}:{conn.port} failed: {message}")

    sig = None
    code: Optional[int] = process.returncode
    if process.returncode < 0:
        try:
            sig = signal.Signals(-process.returncode).name
        except ValueError:
            sig = str(-process.returncode)
        code = None

    return SshExecResult(stdout=process.stdout or '', stderr=process.stderr or '', code=code, signal=sig)


def exec_ssh_command(
    conn: SshConnection,
    command: str,
    timeout: Optional[float] = None,
    control_path: Optional[str] = None
) -> SshExecResult:
    """
    Run one command on the remote host.

    A nonzero exit status is returned, not raised. Transport failures
    raise SshConnectionError; exceeding timeout kills the ssh client and
    raises SshTimeoutError.

    The ssh client reports its own failures as exit status 255, so a
    remote command that itself exits 255 is indistinguishable and also
    raises SshConnectionError.
    """
    cmd = build_ssh_command(conn, control_path)
    cmd.append(command)

    logger.debug(f"SSH {conn.target}: {command[:200]}")

    try:
        process = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            encoding='utf-8',
            errors='replace',
            timeout=timeout
        )
    except subprocess.TimeoutExpired:
        raise SshTimeoutError(timeout, command)
    except OSError as e:
        raise SshConnectionError(f"Could not start ssh: {e}")

    return _to_result(process, conn)


def scp_file(conn: SshConnection, local_path: str, remote_path: str, timeout: int) -> Tuple[bool, str]:
    """
    Copy file to remote host via SCP.

    Returns: (success: bool, error_message: str)
    """
    cmd = ['scp', '-q', '-P', str(conn.port)]
    cmd.extend(_common_options(conn))
    cmd.extend([local_path, f'{conn.target}:{remote_path}'])

    logger.debug(f"Running SCP: {local_path} -> {conn.target}:{remote_path}")

    try:
        result = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout
        )

        if result.returncode != 0:
            return False, f"SCP failed: {_first_line(result.stderr)}"

        return True, ""

    except subprocess.TimeoutExpired:
        return False, f"SCP timeout after {timeout}s"
    except OSError as e:
        return False, f"SCP exception: {str(e)}"


class SshSession:
    """A reusable authenticated connection (OpenSSH control master)."""

    def __init__(self, conn: SshConnection):
        self.conn = conn
        self._control_dir = tempfile.mkdtemp(prefix='fleet-ssh-')
        self.control_path = os.path.join(self._control_dir, 'cm.sock')
        self._connected = False

    def connect(self) -> 'SshSession':
        cmd = ['ssh', '-p', str(self.conn.port)]
        cmd.extend(_common_options(self.conn))
        cmd.extend([
            '-M', '-N', '-f',
            '-o', f'ControlPath={self.control_path}',
            '-o', 'ControlPersist=yes',
            self.conn.target,
        ])

        # The backgrounded master keeps inherited descriptors open, so
        # stderr goes to a file rather than a pipe.
        with tempfile.TemporaryFile(mode='w+') as err:
            try:
                process = subprocess.run(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=err,
                    timeout=self.conn.connect_timeout + 5
                )
            except subprocess.TimeoutExpired:
                self._cleanup_dir()
                raise SshTimeoutError(self.conn.connect_timeout + 5, 'connect')
            except OSError as e:
                self._cleanup_dir()
                raise SshConnectionError(f"Could not start ssh: {e}")

            if process.returncode != 0:
                err.seek(0)
                self._cleanup_dir()
                raise SshConnectionError(
                    f"SSH connection to {self.conn.host}:{self.conn.port} failed: "
                    f"{_first_line(err.read()) or 'unknown error'}"
                )

        self._connected = True
        logger.debug(f"Opened SSH session to {self.conn.target}")
        return self

    def exec(self, command: str, timeout: Optional[float] = None) -> SshExecResult:
        if not self._connected:
            raise SshConnectionError("SSH session is not connected")
        return exec_ssh_command(self.conn, command, timeout=timeout, control_path=self.control_path)

    def disconnect(self):
        if self._connected:
            cmd = build_ssh_command(self.conn, self.control_path)
            cmd[1:1] = ['-O', 'exit']
            try:
                subprocess.run(cmd, stdin=subprocess.DEVNULL, capture_output=True, timeout=10)
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.warning(f"Failed to close SSH session to {self.conn.target}: {e}")
            self._connected = False
        self._cleanup_dir()

    def _cleanup_dir(self):
        shutil.rmtree(self._control_dir, ignore_errors=True)

    def __enter__(self) -> 'SshSession':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()


class RemoteShell:
    """
    Server-id based access to SSH for the rest of the application.

    Resolves connection parameters from the database and materialises each
    server's private key to a 0600 file under key_dir.
    """

    def __init__(self, db, key_dir: Path, connect_timeout: int = DEFAULT_CONNECT_TIMEOUT):
        self.db = db
        self.key_dir = Path(key_dir)
        self.connect_timeout = connect_timeout
        self._key_lock = threading.Lock()

    def _key_file(self, private_key: str) -> str:
        material = private_key.strip() + "\n"
        digest = hashlib.sha256(material.encode('utf-8')).hexdigest()[:32]
        path = self.key_dir / f"{digest}.key"

        with self._key_lock:
            if not path.exists():
                self.key_dir.mkdir(parents=True, exist_ok=True)
                os.chmod(self.key_dir, 0o700)
                fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, 'w') as f:
                    f.write(material)
        return str(path)

    def connection_for(self, server: Server) -> SshConnection:
        return SshConnection(
            host=server.hostname,
            port=server.ssh_port,
            key_file=self._key_file(server.ssh_private_key),
            username=DEFAULT_SSH_USER,
            connect_timeout=self.connect_timeout,
        )

    def get_server(self, server_id: str) -> Server:
        server = self.db.get_server(server_id)
        if server is None:
            raise ServerNotFoundError(f"Server not found: {server_id}")
        return server

    def exec(self, server_id: str, command: str, timeout: Optional[float] = None) -> SshExecResult:
        conn = self.connection_for(self.get_server(server_id))
        return exec_ssh_command(conn, command, timeout=timeout)

    def upload(self, server_id: str, local_path: str, remote_path: str, timeout: int = 600):
        conn = self.connection_for(self.get_server(server_id))
        success, error_msg = scp_file(conn, local_path, remote_path, timeout)
        if not success:
            raise UploadError(error_msg)

    def open_session(self, server: Server) -> SshSession:
        return SshSession(self.connection_for(server)).connect()
