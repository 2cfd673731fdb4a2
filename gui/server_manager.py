"""
Server Manager - CRUD operations for managed servers.

Servers live in the database. They can also be bulk-imported from a YAML
inventory file (see servers.example.yaml).
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from fleet.errors import FleetError, SshTimeoutError
from fleet.models import SERVER_TYPES, Server

logger = logging.getLogger(__name__)


class ServerManager:
    """Manages the server inventory."""

    def __init__(self, db, remote=None, php_resolver=None):
        """
        Initialize the server manager.

        Args:
            db: Database instance
            remote: RemoteShell used for connectivity tests
            php_resolver: PhpBinaryResolver whose cache is dropped on updates
        """
        self.db = db
        self.remote = remote
        self.php_resolver = php_resolver

    def load_inventory(self, yaml_path: str) -> List[Dict]:
        """
        Load server entries from a YAML inventory.

        Returns:
            List of server dictionaries (empty if the file does not exist)
        """
        path = Path(yaml_path)
        if not path.exists():
            return []

        with open(path, 'r') as f:
            servers = yaml.safe_load(f) or []

        return servers if isinstance(servers, list) else []

    def _private_key(self, server_data: Dict) -> Optional[str]:
        if server_data.get('ssh_private_key'):
            return server_data['ssh_private_key']
        key_file = server_data.get('ssh_key_file')
        if key_file:
            return Path(key_file).expanduser().read_text()
        return None

    def validate(self, server_data: Dict) -> Optional[str]:
        """Error message for invalid server data, None when valid."""
        for field in ('name', 'hostname', 'server_type'):
            if not server_data.get(field):
                return f"Missing required field: {field}"

        if server_data['server_type'] not in SERVER_TYPES:
            return f"Invalid server_type '{server_data['server_type']}' (expected one of {', '.join(SERVER_TYPES)})"

        try:
            port = int(server_data.get('ssh_port') or 22)
        except (TypeError, ValueError):
            return "ssh_port must be a number"
        if not 0 < port < 65536:
            return "ssh_port out of range"

        if not server_data.get('ssh_private_key') and not server_data.get('ssh_key_file'):
            return "Missing required field: ssh_private_key (or ssh_key_file)"

        return None

    def add_server(self, server_data: Dict) -> tuple[bool, str]:
        """
        Add a new server.

        Args:
            server_data: name, hostname, server_type, ssh_port and either
                ssh_private_key or ssh_key_file

        Returns:
            Tuple of (success: bool, message: str)
        """
        error = self.validate(server_data)
        if error:
            return False, error

        if self.db.find_server_by_name(server_data['name']):
            return False, f"Server with name '{server_data['name']}' already exists"

        try:
            private_key = self._private_key(server_data)
        except OSError as e:
            return False, f"Could not read SSH key: {e}"

        server = self.db.create_server(
            name=server_data['name'],
            hostname=server_data['hostname'],
            server_type=server_data['server_type'],
            ssh_private_key=private_key,
            ssh_port=int(server_data.get('ssh_port') or 22),
        )
        logger.info(f"Added server {server.name} ({server.hostname})")
        return True, f"Server '{server.name}' added successfully"

    def update_server(self, server_id: str, changes: Dict) -> tuple[bool, str]:
        """
        Update an existing server.

        Fields missing from changes keep their current value, so the key
        only has to be sent when it changes.

        Returns:
            Tuple of (success: bool, message: str)
        """
        server = self.db.get_server(server_id)
        if server is None:
            return False, f"Server '{server_id}' not found"

        server_data = {
            'name': server.name,
            'hostname': server.hostname,
            'server_type': server.server_type,
            'ssh_port': server.ssh_port,
            'ssh_private_key': server.ssh_private_key,
        }
        server_data.update({k: v for k, v in changes.items() if k in server_data and v not in (None, '')})

        error = self.validate(server_data)
        if error:
            return False, error

        existing = self.db.find_server_by_name(server_data['name'])
        if existing and existing.id != server_id:
            return False, f"Server with name '{server_data['name']}' already exists"

        server_data['ssh_port'] = int(server_data['ssh_port'])
        self.db.update_server(server_id, **server_data)

        # Hostname or type may have changed
        if self.php_resolver is not None:
            self.php_resolver.invalidate(server_id)

        logger.info(f"Updated server {server_data['name']} ({server_data['hostname']})")
        return True, f"Server '{server_data['name']}' updated successfully"

    def import_inventory(self, yaml_path: str) -> Dict[str, int]:
        """
        Add every server of a YAML inventory that is not known yet.

        Returns:
            Dict with added/skipped/failed counts
        """
        counts = {'added': 0, 'skipped': 0, 'failed': 0}

        for entry in self.load_inventory(yaml_path):
            if not isinstance(entry, dict):
                counts['failed'] += 1
                continue

            if entry.get('name') and self.db.find_server_by_name(entry['name']):
                logger.debug(f"Server {entry['name']} already imported")
                counts['skipped'] += 1
                continue

            success, message = self.add_server(entry)
            if success:
                counts['added'] += 1
            else:
                logger.warning(f"Skipping inventory entry {entry.get('name', '?')}: {message}")
                counts['failed'] += 1

        return counts

    def list_servers(self) -> List[Server]:
        return self.db.list_servers()

    def delete_server(self, server_id: str) -> tuple[bool, str]:
        """Delete a server together with its installations."""
        server = self.db.get_server(server_id)
        if server is None:
            return False, f"Server '{server_id}' not found"

        self.db.delete_server(server_id)
        return True, f"Server '{server.name}' deleted successfully"

    def test_ssh_connection(self, server_id: str) -> tuple[bool, str]:
        """
        Test SSH connectivity to a server.

        Returns:
            Tuple of (success: bool, message: str)
        """
        try:
            result = self.remote.exec(server_id, 'uname -n', timeout=30)
        except SshTimeoutError as e:
            return False, f"✗ Connection timed out: {e}"
        except FleetError as e:
            return False, f"✗ Connection failed: {e}"

        if result.code == 0:
            return True, f"✓ Connected successfully. Hostname: {result.stdout.strip()}"
        return False, f"✗ Command failed: {result.stderr.strip()}"
