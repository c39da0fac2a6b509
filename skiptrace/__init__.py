"""
Flask application factory.

Creates and configures the Flask app and registers all blueprints.
"""
import importlib

from flask import Flask


def create_app():
    """Create and configure the Flask application."""
    from skiptrace.logging_config import configure_logging

    app = Flask(__name__)

    configure_logging(app)

    from skiptrace.routes.runs import bp as runs_bp
    from skiptrace.routes.lookups import bp as lookups_bp
    from skiptrace.routes.health import bp as health_bp

    app.register_blueprint(runs_bp)
    app.register_blueprint(lookups_bp)
    app.register_blueprint(health_bp)

    # Circuit breakers for the providers the engine can call
    from skiptrace.extensions import redis_client
    from skiptrace.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Import models so Base.metadata knows about them. Schema is managed by Alembic.
    for module in MODEL_MODULES:
        importlib.import_module(module)

    return app


MODEL_MODULES = (
    'skiptrace.models.cache_entry',
    'skiptrace.models.provider_call',
    'skiptrace.models.run',
    'skiptrace.models.run_item',
    'skiptrace.models.lookup_activity',
    'skiptrace.models.subject',
)
