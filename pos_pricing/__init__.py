"""Flask application factory."""
from flask import Flask, jsonify
from pos_pricing.database import init_db
import os


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Sentry error tracking in production only
    if os.getenv('SENTRY_DSN') and (app.config.get('ENV') == 'production' or os.getenv('FLASK_ENV') == 'production'):
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    # Redis cache for store catalogs
    from pos_pricing.services.cache_service import init_cache
    init_cache(app)

    # Prometheus metrics instrumentation
    from pos_pricing.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Initialize database
    init_db(app)

    # Live carts are owned by this process
    from pos_pricing.services.cart_service import CartStore
    app.extensions['cart_store'] = CartStore(idle_ttl=app.config.get('CART_IDLE_TTL_SECONDS'))

    from pos_pricing.middleware import load_store_context

    @app.before_request
    def before_request_handler():
        """Load store and cashier context for each request."""
        load_store_context()

    # Error Handlers
    from pos_pricing.exceptions import PricingError

    @app.errorhandler(PricingError)
    def handle_pricing_error(error):
        """Handle custom application exceptions."""
        if error.status_code >= 500:
            app.logger.error(f"PricingError [{error.status_code}]: {error.message}")
        else:
            app.logger.info(f"PricingError [{error.status_code}]: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'status': 'error', 'message': 'Not Found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'status': 'error', 'message': 'Method Not Allowed'}), 405

    @app.errorhandler(500)
    @app.errorhandler(Exception)
    def internal_error(error):
        import traceback
        from werkzeug.exceptions import HTTPException
        if isinstance(error, HTTPException):
            return jsonify({'status': 'error', 'message': error.description}), error.code
        app.logger.error(f"Unhandled Exception: {error}")
        app.logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify({'status': 'error', 'message': 'Internal Server Error'}), 500

    # Register blueprints
    from pos_pricing.blueprints.carts import carts_bp
    from pos_pricing.blueprints.refunds import refunds_bp
    from pos_pricing.blueprints.metrics import metrics_bp

    app.register_blueprint(carts_bp)
    app.register_blueprint(refunds_bp)
    app.register_blueprint(metrics_bp)

    # Register CLI commands
    from pos_pricing.cli_commands import init_cli_commands
    init_cli_commands(app)

    return app
