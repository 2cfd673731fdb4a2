"""
Flask routes for the WP Fleet Manager API.

Handles all HTTP endpoints. Long-running work (scans, package jobs) is
started here and reported through Socket.IO events.
"""

import logging
from typing import Any, Dict, List, Optional

from flask import current_app, jsonify, request

from fleet.errors import ServerNotFoundError, UploadError
from fleet.inventory import installed_packages, package_sites
from fleet.job_queue import run_direct_actions
from fleet.models import (
    DIRECT_OPERATIONS,
    QUEUEABLE_OPERATIONS,
    PackageKind,
    PackageOperation,
    PackageOperationInput,
    PackageSource,
)
from fleet.uploads import UploadFile
from gui.server_manager import ServerManager

logger = logging.getLogger(__name__)

PATH_KINDS = {'plugins': PackageKind.PLUGIN, 'themes': PackageKind.THEME}


# ============================================================================
# Request normalisation
# ============================================================================

def _parse_operation(raw: Any, allowed) -> Optional[PackageOperationInput]:
    if not isinstance(raw, dict):
        return None

    installation_id = raw.get('installation_id')
    slug = raw.get('slug')
    if not isinstance(installation_id, str) or not installation_id:
        return None
    if not isinstance(slug, str) or not slug:
        return None

    try:
        kind = PackageKind(raw.get('kind'))
        operation = PackageOperation(raw.get('operation'))
    except ValueError:
        return None
    if operation not in allowed:
        return None

    source = raw.get('source')
    return PackageOperationInput(
        installation_id=installation_id,
        kind=kind,
        slug=slug,
        operation=operation,
        source=PackageSource(source) if source in (PackageSource.REGISTRY.value, PackageSource.EXTERNAL.value) else None,
    )


def normalize_jobs(raw_jobs: Any) -> List[PackageOperationInput]:
    """Valid install/update requests; anything malformed is dropped."""
    if not isinstance(raw_jobs, list):
        return []
    jobs = (_parse_operation(raw, QUEUEABLE_OPERATIONS) for raw in raw_jobs)
    return [job for job in jobs if job is not None]


def normalize_actions(raw_actions: Any) -> List[PackageOperationInput]:
    """Valid activate/deactivate/delete requests (never carry a source)."""
    if not isinstance(raw_actions, list):
        return []
    actions = []
    for raw in raw_actions:
        action = _parse_operation(raw, DIRECT_OPERATIONS)
        if action is not None:
            action.source = None
            actions.append(action)
    return actions


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _error(message: str, status: int):
    return jsonify({'success': False, 'message': message}), status


def init_routes(app):
    """Initialize all routes for the application."""

    def services():
        return current_app.extensions['fleet']

    def parse_kind(kind: str) -> Optional[PackageKind]:
        return PATH_KINDS.get(kind)

    # ------------------------------------------------------------------
    # Package jobs
    # ------------------------------------------------------------------

    @app.route('/api/packages/jobs', methods=['POST'])
    def enqueue_jobs():
        """Queue install/update jobs."""
        body = _json_body()
        jobs = normalize_jobs(body.get('jobs'))
        if not jobs:
            return _error('No valid package jobs were provided', 400)

        svc = services()
        site_titles = svc.db.get_site_titles(job.installation_id for job in jobs)
        result = svc.queue.enqueue(jobs, site_titles=site_titles)
        return jsonify(result.to_dict())

    @app.route('/api/packages/jobs', methods=['GET'])
    def job_status():
        """Current run snapshot plus finished job results."""
        queue = services().queue
        return jsonify({
            'snapshot': queue.snapshot().to_dict(),
            'results': [outcome.to_dict() for outcome in queue.results()],
        })

    @app.route('/api/packages/actions', methods=['POST'])
    def direct_actions():
        """Activate/deactivate/delete immediately (busy sites fail)."""
        body = _json_body()
        actions = normalize_actions(body.get('actions'))
        if not actions:
            return _error('No valid package actions were provided', 400)

        svc = services()
        return jsonify(run_direct_actions(svc.operations, svc.queue, actions))

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    @app.route('/api/sites/scan', methods=['POST'])
    def scan_server():
        """Start a scan in the background; progress arrives as events."""
        body = _json_body()
        server_id = body.get('server_id')
        if not server_id:
            return _error('server_id is required', 400)

        svc = services()
        try:
            server = svc.remote.get_server(server_id)
        except ServerNotFoundError:
            return _error('Server not found', 404)

        current_app.extensions['fleet_background'](svc.scanner.run_server_scan, server)
        return jsonify({'status': 'started', 'server_id': server_id}), 202

    @app.route('/api/sites', methods=['GET'])
    def list_sites():
        server_id = request.args.get('server_id')
        installations = services().db.list_installations(server_id=server_id)
        return jsonify({'sites': [installation.to_dict() for installation in installations]})

    @app.route('/api/sites/batch-delete', methods=['POST'])
    def batch_delete_sites():
        """Forget installations; nothing is removed on the servers."""
        site_ids = _json_body().get('site_ids')
        if not isinstance(site_ids, list) or not site_ids or not all(isinstance(i, str) for i in site_ids):
            return _error('At least one site ID is required', 400)

        deleted = services().db.delete_installations(site_ids)
        logger.info(f"Removed {deleted} site(s) from the inventory")
        return jsonify({'deleted': deleted, 'message': f"{deleted} site(s) have been removed from the inventory."})

    # ------------------------------------------------------------------
    # Installed packages
    # ------------------------------------------------------------------

    @app.route('/api/packages/installed/<kind>', methods=['GET'])
    def installed(kind):
        """Installed plugins/themes across the fleet, grouped by slug."""
        package_kind = parse_kind(kind)
        if package_kind is None:
            return _error('Invalid package type', 400)

        svc = services()
        svc.version_checker.run_if_needed()
        return jsonify({kind: installed_packages(svc.db, package_kind)})

    @app.route('/api/packages/installed/<kind>/<slug>/sites', methods=['GET'])
    def installed_sites(kind, slug):
        package_kind = parse_kind(kind)
        if package_kind is None:
            return _error('Invalid package type', 400)
        return jsonify({'sites': package_sites(services().db, package_kind, slug)})

    # ------------------------------------------------------------------
    # Uploaded archives
    # ------------------------------------------------------------------

    @app.route('/api/packages/upload', methods=['POST'])
    def upload_packages():
        files = [
            UploadFile(filename=storage.filename or '', data=storage.read())
            for storage in request.files.getlist('files')
            if storage and storage.filename
        ]
        try:
            result = services().uploads.process(files)
        except UploadError as e:
            return _error(str(e), 400)
        return jsonify(result)

    @app.route('/api/packages/<kind>/<slug>/versions', methods=['GET'])
    def package_versions(kind, slug):
        package_kind = parse_kind(kind)
        if package_kind is None:
            return _error('Invalid package type', 400)

        versions = services().uploads.list_versions(package_kind, slug)
        return jsonify({'versions': [version.to_dict() for version in versions]})

    @app.route('/api/packages/<kind>/<slug>/versions', methods=['DELETE'])
    def delete_package_versions(kind, slug):
        """Delete the listed versions, or all versions when none are listed."""
        package_kind = parse_kind(kind)
        if package_kind is None:
            return _error('Invalid package type', 400)

        body = _json_body()
        versions = body.get('versions')
        if versions is not None and not isinstance(versions, list):
            return _error('versions must be a list', 400)

        deleted = services().uploads.delete_versions(package_kind, slug, versions)
        if not deleted:
            return _error('No matching versions found', 404)
        return jsonify({'success': True, 'deleted': [upload.version for upload in deleted]})

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def server_manager() -> ServerManager:
        svc = services()
        return ServerManager(svc.db, svc.remote, svc.php_resolver)

    @app.route('/api/servers', methods=['GET'])
    def list_servers():
        return jsonify({'servers': [server.to_public_dict() for server in server_manager().list_servers()]})

    @app.route('/api/servers', methods=['POST'])
    def add_server():
        server_data: Dict[str, Any] = _json_body()
        server_data.pop('ssh_key_file', None)

        success, message = server_manager().add_server(server_data)
        return jsonify({'success': success, 'message': message}), (201 if success else 400)

    @app.route('/api/servers/<server_id>', methods=['PUT'])
    def update_server(server_id):
        """Update a server; omitted fields (including the key) are kept."""
        manager = server_manager()
        if services().db.get_server(server_id) is None:
            return jsonify({'success': False, 'message': f"Server '{server_id}' not found"}), 404

        changes: Dict[str, Any] = _json_body()
        changes.pop('ssh_key_file', None)

        success, message = manager.update_server(server_id, changes)
        return jsonify({'success': success, 'message': message}), (200 if success else 400)

    @app.route('/api/servers/<server_id>', methods=['DELETE'])
    def delete_server(server_id):
        success, message = server_manager().delete_server(server_id)
        return jsonify({'success': success, 'message': message}), (200 if success else 404)

    @app.route('/api/servers/<server_id>/test', methods=['POST'])
    def test_server(server_id):
        """Test SSH connection to a server."""
        manager = server_manager()
        if services().db.get_server(server_id) is None:
            return jsonify({'success': False, 'message': f"Server '{server_id}' not found"}), 404

        success, message = manager.test_ssh_connection(server_id)
        return jsonify({'success': success, 'message': message})
