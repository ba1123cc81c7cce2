import os
import base64
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import inspect


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
            os.path.join(log_dir, 'exportjob.log'),
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

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def init_database_schema(app):
    """Create job store tables if they don't exist yet."""
    with app.app_context():
        existing_tables = inspect(db.engine).get_table_names()
        if 'export_jobs' not in existing_tables:
            app.logger.info("No job store tables found - creating database schema")
        db.create_all()


def init_encryption(app):
    """
    Initialize the install secret from ENCRYPTION_PASSWORD.

    The KDF salt is generated on first start and kept in the encryption_key
    table so the same key is derived on every start.
    """
    from exportjob.models import EncryptionKey
    from exportjob.utils.crypto import crypto_manager

    password = app.config.get('ENCRYPTION_PASSWORD')
    if not password:
        app.logger.warning("ENCRYPTION_PASSWORD not set - export jobs will fail until it is configured")
        return

    with app.app_context():
        record = EncryptionKey.query.first()
        if record:
            crypto_manager.initialize(password, base64.b64decode(record.salt))
        else:
            salt = crypto_manager.initialize(password)
            db.session.add(EncryptionKey(salt=base64.b64encode(salt).decode()))
            db.session.commit()
            app.logger.info("Generated new install secret salt")

    app.logger.info("Crypto manager initialized")


def create_app(config_name=None, config_overrides=None):
    """
    Flask application factory

    Args:
        config_name: Key of exportjob.config.config (defaults to FLASK_ENV or 'production')
        config_overrides: Optional dict applied on top of the selected config
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from exportjob.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    db_path = app.config['SQLALCHEMY_DATABASE_URI'].replace('sqlite:///', '')
    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///') and db_path != ':memory:':
        os.makedirs(os.path.dirname(db_path), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    from exportjob import models  # noqa: F401 (register tables)
    init_database_schema(app)
    init_encryption(app)

    # Operator CLI: flask exports ...
    from exportjob.cli import exports_cli
    app.cli.add_command(exports_cli)

    # Health check endpoint
    @app.route('/health')
    def health():
        from exportjob.scheduler import is_scheduler_running
        from exportjob.utils.crypto import crypto_manager
        return {
            'status': 'healthy',
            'scheduler_running': is_scheduler_running(),
            'encryption_ready': crypto_manager.is_initialized,
        }, 200

    # Start the worker only in the designated process:
    # - Development mode: only in the Flask reloader child process
    # - Production mode: only where SCHEDULER_WORKER=true (set by run.py and gunicorn_conf.py)
    if app.config.get('DEBUG', False):
        should_start_worker = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    else:
        should_start_worker = os.environ.get('SCHEDULER_WORKER', 'false').lower() == 'true'

    if should_start_worker and not app.config.get('TESTING', False):
        from exportjob.scheduler import start_worker, stop_scheduler
        import atexit

        app.logger.info("Starting export worker in this process...")
        start_worker(app)
        atexit.register(stop_scheduler)
    else:
        app.logger.info("Export worker not started in this process (not designated worker)")

    return app
