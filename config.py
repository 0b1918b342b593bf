# QR Attendance Token Service Configuration

import os
import tempfile
from datetime import timedelta
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()

# Only ever used outside production
DEVELOPMENT_QR_SECRET = 'local-development-qr-secret'
DEVELOPMENT_SECRET_KEY = 'qr-attendance-secret-key-2025'


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or DEVELOPMENT_SECRET_KEY

    # Database Configuration
    DATABASE_PATH = BASE_DIR / 'database' / 'attendance.db'
    STORE_TIMEOUT_SECONDS = 5.0
    STORE_RETRY_ATTEMPTS = 3
    STORE_RETRY_BASE_DELAY = 0.1  # seconds, doubled on every retry

    # QR Token Configuration
    QR_SECRET = os.environ.get('QR_SECRET')
    QR_TOKEN_TTL_SECONDS = 30
    QR_CLOCK_SKEW_SECONDS = 5
    QR_EXPIRING_SOON_SECONDS = 5
    QR_SCAN_BASE_URL = os.environ.get('QR_SCAN_BASE_URL') or 'http://localhost:5000'

    # QR Code Image Configuration
    QR_CODE_SIZE = 10
    QR_CODE_BORDER = 1
    QR_CODE_ERROR_CORRECT = 'M'  # Medium error correction
    QR_CODE_FILL_COLOR = 'black'
    QR_CODE_BACK_COLOR = 'white'

    # Session Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    MAX_CONTENT_LENGTH = 64 * 1024

    # Attendance Configuration
    ATTENDANCE_LATE_THRESHOLD_MINUTES = 5

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'attendance.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = os.environ.get('DEBUG', 'False').lower() in ['true', 'on', '1']
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        if cls.DATABASE_PATH != ':memory:':
            Path(cls.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)

        app.config.update({
            'SECRET_KEY': cls.SECRET_KEY,
            'PERMANENT_SESSION_LIFETIME': cls.PERMANENT_SESSION_LIFETIME,
            'SESSION_COOKIE_SECURE': cls.SESSION_COOKIE_SECURE,
            'SESSION_COOKIE_HTTPONLY': cls.SESSION_COOKIE_HTTPONLY,
            'SESSION_COOKIE_SAMESITE': cls.SESSION_COOKIE_SAMESITE,
            'MAX_CONTENT_LENGTH': cls.MAX_CONTENT_LENGTH,
            'TESTING': cls.TESTING,
            'DEBUG': cls.DEBUG,
        })


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_dev.db'

    # Local fallback so the display works without any environment setup
    QR_SECRET = os.environ.get('QR_SECRET') or DEVELOPMENT_QR_SECRET

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    # One file shared by every thread's connection
    DATABASE_PATH = Path(tempfile.gettempdir()) / 'qr_attendance_test.db'
    QR_SECRET = 'testing-qr-secret'

    # Keep retry loops fast under test
    STORE_TIMEOUT_SECONDS = 1.0
    STORE_RETRY_BASE_DELAY = 0


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Enhanced security for production
    SESSION_COOKIE_SECURE = True  # Requires HTTPS

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_prod.db'

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        super().init_app(app)

        # Production-specific initialization
        import logging
        from logging.handlers import RotatingFileHandler

        # Setup file logging
        if not app.debug:
            Path(cls.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('QR Attendance System startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Get configuration by name, falling back to the FLASK_ENV environment variable.

    ``config_name`` may also be a ``Config`` subclass, returned unchanged.

    Raises:
        ValueError: Unknown configuration name
    """
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')

    if isinstance(config_name, type) and issubclass(config_name, Config):
        return config_name

    # Unknown names are refused, never mapped to development
    if config_name not in config:
        raise ValueError(f"Unknown configuration: {config_name!r}")
    return config[config_name]


# Validation functions
def validate_config(config_class):
    """Validate configuration settings"""
    errors = []

    if not config_class.QR_SECRET:
        errors.append("QR_SECRET must be set in the environment")
    elif issubclass(config_class, ProductionConfig) and config_class.QR_SECRET == DEVELOPMENT_QR_SECRET:
        errors.append("QR_SECRET must not use the development fallback in production")

    if not config_class.SECRET_KEY:
        errors.append("SECRET_KEY must be set in the environment")
    elif issubclass(config_class, ProductionConfig) and config_class.SECRET_KEY == DEVELOPMENT_SECRET_KEY:
        errors.append("SECRET_KEY must not use the development fallback in production")

    if config_class.QR_TOKEN_TTL_SECONDS <= 0:
        errors.append("QR_TOKEN_TTL_SECONDS must be positive")

    if config_class.STORE_RETRY_ATTEMPTS < 1:
        errors.append("STORE_RETRY_ATTEMPTS must be at least 1")

    return errors


# Initialize configuration
def init_config(app, config_name=None):
    """Initialize application with configuration.

    ``config_name`` is a key of ``config`` or a ``Config`` subclass.
    """
    try:
        config_class = get_config(config_name)
    except ValueError as e:
        app.logger.error(f"Configuration error: {str(e)}")
        raise RuntimeError("Configuration validation failed") from e

    # Validate configuration
    errors = validate_config(config_class)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    config_class.init_app(app)
    return config_class
