#!/usr/bin/env python3
"""
Flask application entry point for the WP Fleet Manager dashboard API.

Exposes the JSON API (gui/routes.py) and pushes live scan, upload and
package-job events to browsers over Socket.IO ("fleet_event").
"""

import logging
from typing import Any, Dict, Optional

from flask import Flask
from flask_socketio import SocketIO

from fleet.config import load_config
from fleet.services import FleetServices, build_services
from fleet.tasks import run_every, scan_all_servers
from gui.routes import init_routes

logger = logging.getLogger(__name__)

SOCKET_EVENT = 'fleet_event'
MAX_REQUEST_BYTES = 512 * 1024 * 1024

socketio = SocketIO(cors_allowed_origins="*", async_mode='threading')


def create_app(config: Optional[Dict[str, Any]] = None, services: Optional[FleetServices] = None) -> Flask:
    """
    Build the Flask app.

    Args:
        config: Configuration dict (defaults to load_config())
        services: Prebuilt services (tests inject fakes here)
    """
    config = config or load_config()

    app = Flask(__name__)
    app.config['SECRET_KEY'] = config['secret_key']
    app.config['MAX_CONTENT_LENGTH'] = MAX_REQUEST_BYTES
    app.config['FLEET'] = config

    services = services or build_services(config)
    app.extensions['fleet'] = services
    app.extensions['fleet_background'] = socketio.start_background_task

    socketio.init_app(app)
    services.broadcaster.subscribe(lambda event: socketio.emit(SOCKET_EVENT, event.to_dict()))

    init_routes(app)
    return app


def start_daily_scan(services: FleetServices):
    """Scan all servers every daily_scan_interval_hours in a background task."""
    interval = services.config['daily_scan_interval_hours'] * 3600
    if interval <= 0:
        return

    socketio.start_background_task(
        run_every,
        interval,
        lambda: scan_all_servers(services.db, services.scanner, services.version_checker),
        socketio.sleep,
    )


if __name__ == '__main__':
    from orchestrator import setup_logging

    setup_logging()
    app = create_app()
    start_daily_scan(app.extensions['fleet'])

    print("\n" + "="*60)
    print("WP Fleet Manager")
    print("="*60)
    print(f"Starting server at http://localhost:5000")
    print("Press CTRL+C to stop")
    print("="*60 + "\n")

    socketio.run(app, debug=False, allow_unsafe_werkzeug=True, host='0.0.0.0', port=5000)
