"""
WP-CLI access on managed servers.

WP-CLI is kept as a phar under a shared directory on each host and run
as the site's own unix account (su -), so file ownership on the site is
never changed by the dashboard. Every argument is single-quote escaped.
"""

import json
import logging
import re
import threading
from typing import Any, List, Optional, Sequence, Set

from fleet.errors import InvalidUnixUsernameError, RemoteCommandError
from fleet.single_flight import SingleFlight
from fleet.ssh import SshExecResult

logger = logging.getLogger(__name__)

DEFAULT_CLI_DIR = "/opt/wpfleet-cli"
WP_CLI_DOWNLOAD_URL = "https://raw.githubusercontent.com/wp-cli/builds/gh-pages/phar/wp-cli.phar"
WP_CLI_MAX_AGE_DAYS = 14
DEFAULT_WP_CLI_TIMEOUT = 180

UNIX_USERNAME_RE = re.compile(r'^[a-z_][a-z0-9._-]*[$]?$', re.IGNORECASE)


def shell_escape(value: Any) -> str:
    """Quote a value for POSIX sh: wrap in single quotes, escape embedded ones."""
    return "'" + str(value).replace("'", "'\\''") + "'"


def validate_unix_username(username: str) -> str:
    cleaned = (username or '').strip()
    if not UNIX_USERNAME_RE.match(cleaned):
        raise InvalidUnixUsernameError(f'Invalid unix username "{username}"')
    return cleaned


def trim_error(message: str) -> str:
    """First non-empty line of a WP-CLI error."""
    for line in (message or '').strip().splitlines():
        if line.strip():
            return line.strip()
    return 'Unknown error'


def parse_json(raw: str) -> Optional[Any]:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def parse_json_array(raw: str) -> List[Any]:
    parsed = parse_json((raw or '').strip() or '[]')
    return parsed if isinstance(parsed, list) else []


def wp_cli_phar(cli_dir: str = DEFAULT_CLI_DIR) -> str:
    return f"{cli_dir}/wp-cli.phar"


def wp_cli_setup_command(cli_dir: str = DEFAULT_CLI_DIR) -> str:
    """
    Idempotent install/refresh of the phar.

    Prints "downloaded" when it fetched a new copy, "exists" otherwise.
    """
    phar = shell_escape(wp_cli_phar(cli_dir))
    return (
        f"mkdir -p {shell_escape(cli_dir)} && "
        f"if [ ! -f {phar} ] || [ $(find {phar} -mtime +{WP_CLI_MAX_AGE_DAYS} 2>/dev/null | wc -l) -gt 0 ]; then "
        f"curl -sSf -o {phar} {shell_escape(WP_CLI_DOWNLOAD_URL)} && chmod +x {phar} && echo downloaded; "
        f"else echo exists; fi"
    )


def run_as_user(unix_username: str, installation_path: str, command: str) -> str:
    """Wrap a shell command so it runs as the site owner inside its docroot."""
    username = validate_unix_username(unix_username)
    wrapped = f"cd {shell_escape(installation_path)} && {command}"
    return f"su - {username} -s /bin/bash -c {shell_escape(wrapped)}"


def build_wp_cli_command(
    unix_username: str,
    installation_path: str,
    args: Sequence[str],
    php_binary: str,
    cli_dir: str = DEFAULT_CLI_DIR,
    skip_plugins: bool = True,
    skip_themes: bool = True
) -> str:
    command_args = list(args)
    if skip_plugins:
        command_args.append('--skip-plugins')
    if skip_themes:
        command_args.append('--skip-themes')

    command = ' '.join(shell_escape(part) for part in [php_binary, wp_cli_phar(cli_dir), *command_args])
    return run_as_user(unix_username, installation_path, command)


class WpCli:
    """Runs WP-CLI commands for installations and keeps the phar present."""

    def __init__(self, remote, php_resolver, cli_dir: str = DEFAULT_CLI_DIR):
        self.remote = remote
        self.php_resolver = php_resolver
        self.cli_dir = cli_dir
        self._ensured: Set[str] = set()
        self._ensured_lock = threading.Lock()
        self._ensure_flight = SingleFlight()

    def is_ensured(self, server_id: str) -> bool:
        with self._ensured_lock:
            return server_id in self._ensured

    def mark_ensured(self, server_id: str):
        with self._ensured_lock:
            self._ensured.add(server_id)

    def ensure_installed(self, server_id: str):
        """Make sure the phar exists on the host, once per process per server.

        Concurrent callers for the same server share a single remote call.
        """
        if self.is_ensured(server_id):
            return
        self._ensure_flight.do(server_id, lambda: self._ensure(server_id))

    def _ensure(self, server_id: str):
        if self.is_ensured(server_id):
            return
        result = self.remote.exec(server_id, wp_cli_setup_command(self.cli_dir), timeout=120)
        if result.code != 0:
            raise RemoteCommandError(
                f"Failed to ensure wp-cli is available: {trim_error(result.stderr or result.stdout)}",
                result
            )
        logger.info(f"wp-cli {result.stdout.strip() or 'ready'} on server {server_id}")
        self.mark_ensured(server_id)

    def run(
        self,
        installation,
        args: Sequence[str],
        allow_failure: bool = False,
        timeout: float = DEFAULT_WP_CLI_TIMEOUT,
        skip_plugins: bool = True,
        skip_themes: bool = True
    ) -> SshExecResult:
        """
        Run `wp <args>` for an installation.

        Raises RemoteCommandError on nonzero exit unless allow_failure is set,
        in which case the caller inspects the returned result.
        """
        username = validate_unix_username(installation.unix_username)
        php = self.php_resolver.resolve(installation.server_id)

        command = build_wp_cli_command(
            username,
            installation.installation_path,
            args,
            php.binary,
            cli_dir=self.cli_dir,
            skip_plugins=skip_plugins,
            skip_themes=skip_themes,
        )

        result = self.remote.exec(installation.server_id, command, timeout=timeout)

        if not allow_failure and result.code != 0:
            raise RemoteCommandError(trim_error(result.stderr or result.stdout), result)

        return result
