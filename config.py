# Classbook Configuration

import os
import logging
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s [in %(pathname)s:%(lineno)d]'


def _env(name, default=None):
    return os.environ.get(name) or default


def _env_int(name, default):
    return int(os.environ.get(name) or default)


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() in ['true', 'on', '1']


class Config:
    """Settings shared by every environment"""

    SECRET_KEY = _env('SECRET_KEY', 'classbook-secret-key-change-me')

    # Document store
    DATABASE_PATH = _env('DATABASE_PATH', BASE_DIR / 'database' / 'classbook.db')

    # Exported reports
    REPORTS_FOLDER = BASE_DIR / 'reports'
    MAX_CONTENT_LENGTH = 4 * 1024 * 1024  # JSON payloads only

    # Flask session (issued by the sign-in service, read here)
    PERMANENT_SESSION_LIFETIME = timedelta(hours=10)
    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Outgoing mail for notification emails
    MAIL_SERVER = _env('MAIL_SERVER', 'localhost')
    MAIL_PORT = _env_int('MAIL_PORT', 587)
    MAIL_USE_TLS = _env_flag('MAIL_USE_TLS', 'true')
    MAIL_USERNAME = _env('MAIL_USERNAME')
    MAIL_PASSWORD = _env('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = _env('MAIL_DEFAULT_SENDER', 'noreply@classbook.local')
    APP_BASE_URL = _env('APP_BASE_URL', '')

    # Threads used to process one attendance submission
    ATTENDANCE_MAX_WORKERS = _env_int('ATTENDANCE_MAX_WORKERS', 8)

    # Notifications
    NOTIFICATION_BATCH_SIZE = _env_int('NOTIFICATION_BATCH_SIZE', 500)
    NOTIFICATION_RETENTION_DAYS = _env_int('NOTIFICATION_RETENTION_DAYS', 30)
    NOTIFICATIONS_PUSH_ENABLED = _env_flag('NOTIFICATIONS_PUSH_ENABLED', 'true')
    NOTIFICATIONS_EMAIL_ENABLED = _env_flag('NOTIFICATIONS_EMAIL_ENABLED')

    # Logging
    LOG_LEVEL = _env('LOG_LEVEL', 'INFO')
    LOG_FILE = BASE_DIR / 'logs' / 'classbook.log'
    LOG_MAX_BYTES = 5 * 1024 * 1024
    LOG_BACKUP_COUNT = 10

    DEBUG = _env_flag('DEBUG')
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Create the folders the settings point at and load them into app.config"""
        folders = [Path(cls.REPORTS_FOLDER)]
        if str(cls.DATABASE_PATH) != ':memory:':
            folders.append(Path(cls.DATABASE_PATH).parent)

        for folder in folders:
            folder.mkdir(parents=True, exist_ok=True)

        app.config.update({
            key: getattr(cls, key) for key in dir(cls) if key.isupper()
        })


class DevelopmentConfig(Config):
    """Local development"""
    DEBUG = True
    DATABASE_PATH = BASE_DIR / 'database' / 'classbook_dev.db'
    LOG_LEVEL = 'DEBUG'

    # Local mail catcher
    MAIL_PORT = 1025
    MAIL_USE_TLS = False


class TestingConfig(Config):
    """Test runs: in-memory store, no outgoing channels"""
    TESTING = True
    DEBUG = True
    DATABASE_PATH = ':memory:'
    NOTIFICATIONS_PUSH_ENABLED = False
    NOTIFICATIONS_EMAIL_ENABLED = False
    ATTENDANCE_MAX_WORKERS = 4


class ProductionConfig(Config):
    """Deployed service"""
    DEBUG = False
    SESSION_COOKIE_SECURE = True
    DATABASE_PATH = _env('DATABASE_PATH', BASE_DIR / 'database' / 'classbook_prod.db')
    LOG_LEVEL = 'WARNING'
    NOTIFICATIONS_EMAIL_ENABLED = _env_flag('NOTIFICATIONS_EMAIL_ENABLED', 'true')

    @classmethod
    def init_app(cls, app):
        super().init_app(app)

        if app.debug:
            return

        # Rotating log file shared by Flask and the classbook package
        Path(cls.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(cls.LOG_FILE, maxBytes=cls.LOG_MAX_BYTES,
                                      backupCount=cls.LOG_BACKUP_COUNT)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.setLevel(logging.INFO)

        for target in (app.logger, logging.getLogger('classbook')):
            target.addHandler(handler)
            target.setLevel(logging.INFO)
        app.logger.info('Classbook started')


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Look up a configuration class by name, falling back to FLASK_ENV"""
    return config.get(config_name or os.environ.get('FLASK_ENV', 'default'), DevelopmentConfig)


def validate_config(config_class=Config):
    """Return a list of problems with a configuration class"""
    problems = []

    if not 1 <= config_class.NOTIFICATION_BATCH_SIZE <= 500:
        problems.append("NOTIFICATION_BATCH_SIZE must be between 1 and 500")
    if config_class.NOTIFICATION_RETENTION_DAYS < 1:
        problems.append("NOTIFICATION_RETENTION_DAYS must be at least 1")
    if config_class.ATTENDANCE_MAX_WORKERS < 1:
        problems.append("ATTENDANCE_MAX_WORKERS must be at least 1")

    if config_class.NOTIFICATIONS_EMAIL_ENABLED:
        for key in ('MAIL_SERVER', 'MAIL_USERNAME'):
            if not getattr(config_class, key):
                problems.append(f"{key} must be set when notification emails are enabled")

    return problems


def init_config(app, config_name=None):
    """Apply a configuration class to the app and refuse to start if it is invalid"""
    config_class = get_config(config_name)
    config_class.init_app(app)

    problems = validate_config(config_class)
    for problem in problems:
        app.logger.error(f"Configuration error: {problem}")
    if problems:
        raise RuntimeError("Invalid configuration: " + "; ".join(problems))

    return config_class
