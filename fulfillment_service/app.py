"""
Fulfillment Service: Flask application
Purchase payment saga, access tokens and user notifications for shared subscription slots.
"""

import logging
import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from flask import Flask, jsonify
from flasgger import Swagger
from sqlalchemy.exc import SQLAlchemyError

from fulfillment_service.cache import TTLCache
from fulfillment_service.errors import FulfillmentError
from fulfillment_service.extensions import db, jwt
from fulfillment_service import models  # noqa: F401  registers the tables
from fulfillment_service.services.dispute_service import DisputeOpener
from fulfillment_service.services.notification_service import NotificationEngine
from fulfillment_service.services.payment_service import PaymentService
from fulfillment_service.services.realtime import RealtimePublisher
from fulfillment_service.services.token_service import AccessTokenIssuer

load_dotenv()

logger = logging.getLogger(__name__)


def _database_url():
    url = os.environ.get('DATABASE_URL')
    if url:
        return url
    db_user = os.environ.get('DB_USER', 'fulfillment_svc_user')
    db_pass = os.environ.get('DB_PASS', 'password')
    db_host = os.environ.get('DB_HOST', 'fulfillment-db')
    db_name = os.environ.get('DB_NAME', 'fulfillment_db')
    return f"postgresql://{db_user}:{db_pass}@{db_host}/{db_name}"


def _load_config(app):
    app.config['SQLALCHEMY_DATABASE_URI'] = _database_url()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['JWT_SECRET_KEY'] = os.environ.get('JWT_SECRET', 'dev-secret-change-me')

    app.config['TOKEN_SALT'] = os.environ.get('TOKEN_SALT', '')
    app.config['APP_BASE_URL'] = os.environ.get('APP_BASE_URL', 'http://localhost:3000')
    app.config['PAYMENT_WEBHOOK_SECRET'] = os.environ.get('PAYMENT_WEBHOOK_SECRET')
    app.config['PLATFORM_FEE_PERCENT'] = float(os.environ.get('PLATFORM_FEE_PERCENT', '0.05'))
    app.config['ACCESS_TOKEN_TTL_MINUTES'] = int(os.environ.get('ACCESS_TOKEN_TTL_MINUTES', '30'))
    app.config['REGENERATED_TOKEN_TTL_MINUTES'] = int(os.environ.get('REGENERATED_TOKEN_TTL_MINUTES', '60'))
    app.config['NOTIFICATION_DEDUP_WINDOW_MINUTES'] = int(os.environ.get('NOTIFICATION_DEDUP_WINDOW_MINUTES', '30'))
    app.config['NOTIFICATION_MAX_ATTEMPTS'] = int(os.environ.get('NOTIFICATION_MAX_ATTEMPTS', '3'))
    app.config['NOTIFICATION_RETRY_BASE_SECONDS'] = float(os.environ.get('NOTIFICATION_RETRY_BASE_SECONDS', '0.1'))
    app.config['ENTITY_CACHE_TTL_SECONDS'] = int(os.environ.get('ENTITY_CACHE_TTL_SECONDS', '300'))
    app.config['REALTIME_PUBLISH_URL'] = os.environ.get('REALTIME_PUBLISH_URL')
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')


def _build_services(app):
    config = app.config

    publisher = RealtimePublisher(config['REALTIME_PUBLISH_URL'])
    notifications = NotificationEngine(
        existence_cache=TTLCache(default_ttl=config['ENTITY_CACHE_TTL_SECONDS']),
        publisher=publisher,
        dedup_window_minutes=config['NOTIFICATION_DEDUP_WINDOW_MINUTES'],
        max_attempts=config['NOTIFICATION_MAX_ATTEMPTS'],
        retry_base_seconds=config['NOTIFICATION_RETRY_BASE_SECONDS'],
    )
    tokens = AccessTokenIssuer(salt=config['TOKEN_SALT'], base_url=config['APP_BASE_URL'])
    payments = PaymentService(
        notifications=notifications,
        tokens=tokens,
        disputes=DisputeOpener(notifications),
        platform_fee_percent=config['PLATFORM_FEE_PERCENT'],
        access_token_ttl_minutes=config['ACCESS_TOKEN_TTL_MINUTES'],
        regenerated_token_ttl_minutes=config['REGENERATED_TOKEN_TTL_MINUTES'],
    )

    app.extensions['notification_engine'] = notifications
    app.extensions['token_issuer'] = tokens
    app.extensions['payment_service'] = payments


def _register_error_handlers(app):
    @app.errorhandler(FulfillmentError)
    def handle_fulfillment_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(e):
        db.session.rollback()
        logger.error("Database error: %s", e, exc_info=True)
        return jsonify({
            "success": False,
            "error_code": "DATABASE_ERROR",
            "message": "A database error occurred."
        }), 500

    @app.errorhandler(500)
    def handle_internal_error(e):
        return jsonify({
            "success": False,
            "error_code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred."
        }), 500


def create_app(test_config=None):
    app = Flask(__name__)

    # Configuration
    _load_config(app)
    if test_config:
        app.config.update(test_config)

    # Initialize Extensions
    db.init_app(app)
    jwt.init_app(app)
    Swagger(app)

    _build_services(app)
    _register_error_handlers(app)

    # Register Blueprints
    from fulfillment_service.routes.purchase_routes import purchase_bp
    app.register_blueprint(purchase_bp, url_prefix='/api')

    from fulfillment_service.routes.webhook_routes import webhook_bp
    app.register_blueprint(webhook_bp, url_prefix='/api')

    from fulfillment_service.routes.notification_routes import notification_bp
    app.register_blueprint(notification_bp, url_prefix='/api')

    @app.route('/health')
    def health():
        try:
            db.session.execute(db.text('SELECT 1'))
            return {
                "service": "fulfillment-service",
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }, 200
        except SQLAlchemyError as e:
            db.session.rollback()
            return {"service": "fulfillment-service", "status": "unhealthy", "error": str(e)}, 503

    return app


if __name__ == '__main__':
    logging.basicConfig(
        level=os.environ.get('LOG_LEVEL', 'INFO'),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app()
    app.run(host='0.0.0.0', port=5004)
