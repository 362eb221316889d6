import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


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

    # File handler (skipped when no log directory is configured)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'dbkeeper.log'),
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


def _should_start_scheduler(app) -> bool:
    """
    Decide whether this process owns the scheduler.

    - Development mode: only the Flask reloader child process
    - Production mode: only the designated gunicorn worker (SCHEDULER_WORKER=true)
    """
    if not app.config.get('SCHEDULER_ENABLED', True):
        return False

    if app.config.get('DEBUG', False):
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
        return is_reloader_child

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")
    return is_scheduler_worker


def create_app(config_name=None, config_overrides=None, start_scheduler=None, driver_factory=None):
    """
    Flask application factory.

    Args:
        config_name: Key of dbkeeper.config.config (default: FLASK_ENV or production)
        config_overrides: Mapping applied on top of the config class
        start_scheduler: Force the scheduler on or off (default: decided per process)
        driver_factory: Database driver factory (default: create_driver)

    Raises:
        ConfigurationError: If the settings are invalid
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from dbkeeper.config import Settings, config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    settings = Settings.from_mapping(app.config).validate()
    if settings.backup.temp_dir:
        os.makedirs(settings.backup.temp_dir, exist_ok=True)

    from dbkeeper.backup.drivers import create_driver
    from dbkeeper.services import EXTENSION_KEY, build_components
    components = build_components(settings, driver_factory=driver_factory or create_driver)
    app.extensions[EXTENSION_KEY] = components

    # Register blueprints
    from dbkeeper.routes import backups_routes, status_routes
    app.register_blueprint(status_routes.bp)
    app.register_blueprint(backups_routes.bp)

    from dbkeeper.cli import register_commands
    register_commands(app)

    if start_scheduler is None:
        start_scheduler = _should_start_scheduler(app)

    if start_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        components.scheduler.start()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(components.scheduler.stop)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    app.logger.info(
        f"dbkeeper ready (database: {settings.database.type}, storage: {settings.storage.backend}, "
        f"schedule: {settings.schedule})"
    )

    return app
