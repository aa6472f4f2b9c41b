import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (skipped when LOG_DIR is unset, e.g. in tests)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'dbkeep.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    # botocore logs every request at DEBUG
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None):
    """Flask application factory"""
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('DBKEEP_ENV', 'production')

    from dbkeep.config import config, environment_overrides
    app.config.from_object(config[config_name])
    if app.config.get('LOAD_ENVIRONMENT'):
        app.config.from_mapping(environment_overrides(os.environ))

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///'):
        os.makedirs(os.path.dirname(database_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    from dbkeep.routes import catalog_routes
    app.register_blueprint(catalog_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize catalog schema and run migrations
    from dbkeep import models
    from dbkeep.migrations import init_database_schema
    init_database_schema(app)

    from dbkeep.backup.catalog import Catalog
    app.extensions['dbkeep_catalog'] = Catalog()

    return app


def get_catalog(app):
    """The process-wide catalog of an application."""
    return app.extensions['dbkeep_catalog']
