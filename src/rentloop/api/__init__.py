"""Flask application factory for the rental engine's HTTP ingress."""

from __future__ import annotations

from typing import Any, Optional

from flask import Flask, jsonify

from rentloop.api.routes import bp
from rentloop.service import RentalService


def create_app(service: RentalService, config: Optional[dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    if config:
        app.config.update(config)

    app.extensions["rentloop"] = service
    app.register_blueprint(bp)

    @app.get("/health")
    def health():
        return jsonify({"ok": True})

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({
            "ok": False,
            "error": {"code": "not_found", "message": "No such endpoint"},
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return jsonify({
            "ok": False,
            "error": {"code": "invalid_argument", "message": "Method not allowed"},
        }), 405

    return app
