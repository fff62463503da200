# subsync/extensions.py
"""
Flask extensions initialization module.
"""

import logging

from flask_cors import CORS
from flask_mail import Mail
from flask_sqlalchemy import SQLAlchemy

# Initialize extensions
db = SQLAlchemy()
cors = CORS()
mail = Mail()

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""
    try:
        db.init_app(app)
        logger.info("SQLAlchemy initialized")

        init_cors(app)
        logger.info("CORS initialized")

        mail.init_app(app)
        logger.info("Flask-Mail initialized")

        if app.config.get("ENVIRONMENT") in ("development", "testing") or app.config.get("CREATE_TABLES_ON_START", False):
            create_tables(app)

        logger.info("All extensions initialized successfully")

    except Exception as e:
        logger.error(f"Failed to initialize extensions: {e}")
        if app.config.get("ENVIRONMENT") != "development":
            raise
        logger.warning("Continuing in development mode despite extension errors")

    return app


def init_cors(app):
    cors.init_app(
        app,
        resources={r"/api/*": {"origins": app.config.get("CORS_ORIGINS", [])}},
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "User-Id", "Stripe-Signature"],
        max_age=600,
    )


def create_tables(app):
    # Import models so their tables are registered on the metadata
    from subsync import models  # noqa: F401

    with app.app_context():
        db.create_all()
        logger.info("Database tables created")
