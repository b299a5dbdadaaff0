"""
Rating Engine API Package.

This package contains the Flask blueprints for the rating engine API.

Blueprints:
- ratings: identity, subjects, rating submission, statistics and admin routes
- monitoring: health checks and metrics

Usage:
    from api import create_app

    app = create_app()
    app.run()
"""

from flask import Flask, jsonify

from api.monitoring import monitoring_bp
from api.ratings import ratings_bp
from api.state import set_engine
from monitoring import setup_request_logging

# List of all blueprints for registration
# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (ratings_bp, ''),
    (monitoring_bp, ''),
]


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def create_app(engine=None) -> Flask:
    """
    Build the Flask application.

    Args:
        engine: RatingEngine to serve (built from the environment on first
                request when None)
    """
    app = Flask(__name__)
    app.json.sort_keys = False

    if engine is not None:
        set_engine(engine)

    register_blueprints(app)
    setup_request_logging(app)

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Endpoint not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "Internal server error"}), 500

    return app
