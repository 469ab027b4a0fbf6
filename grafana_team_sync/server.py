"""
HTTP trigger for reconciliation passes.

GET /sync runs a pass and answers 200 on success, 500 when anything failed and
409 when another pass is already running. GET /health reports the health check.
"""

import logging
from typing import Any

from flask import Flask, jsonify

from grafana_team_sync.config import parse_listen_address
from grafana_team_sync.errors import SyncError, SyncInProgressError

logger = logging.getLogger(__name__)


def create_app(orchestrator) -> Flask:
    """Create the Flask application bound to an orchestrator."""
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False

    @app.route("/sync", methods=["GET"])
    def sync():
        try:
            result = orchestrator.run_pass(blocking=False)
        except SyncInProgressError as e:
            logger.warning(f"sync request rejected: {e}")
            return _json_response(409, f"sync error: {e}")
        except SyncError as e:
            logger.error(f"sync error: {e}")
            return _json_response(500, f"sync error: {e}")

        if not result.ok:
            errors = "; ".join(str(failure) for failure in result.failures)
            logger.error(f"sync error: {errors}")
            return _json_response(500, f"sync error: {errors}")
        return _json_response(200, "success")

    @app.route("/health", methods=["GET"])
    def health():
        status = orchestrator.health_check()
        code = 200 if status['status'] == 'healthy' else 503
        return jsonify(status), code

    return app


def _json_response(status: int, data: Any):
    return jsonify({"data": data}), status


def serve(orchestrator, listen_address: str) -> None:
    """
    Serve the HTTP trigger until interrupted.

    Raises:
        ValueError: If listen_address is malformed
        OSError: If the address cannot be bound
    """
    host, port = parse_listen_address(listen_address)
    app = create_app(orchestrator)
    logger.info(f"serving traffic on {host}:{port}")
    app.run(host=host, port=port, threaded=True, use_reloader=False)
