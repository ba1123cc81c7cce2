import os


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_list(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return [item.strip() for item in value.split(',') if item.strip()]


class Config:
    """Base configuration"""

    SECRET_KEY = os.environ.get('SECRET_KEY') or 'exportjob-dev-secret'

    # Job store
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/exportjob.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Install secret for passphrases and at-rest encrypted source files
    ENCRYPTION_PASSWORD = os.environ.get('ENCRYPTION_PASSWORD')

    # Paths
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    SOURCE_ROOT = os.environ.get('SOURCE_ROOT') or '/data/sources'
    SOURCE_EXCLUDE_PATTERNS = _env_list('SOURCE_EXCLUDE_PATTERNS', ['*.tmp', '.DS_Store'])
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Retry policy
    EXPORT_MAX_ATTEMPTS = _env_int('EXPORT_MAX_ATTEMPTS', 3)
    EXPORT_LIFESPAN_SECONDS = _env_int('EXPORT_LIFESPAN_SECONDS', 24 * 60 * 60)
    EXPORT_INITIAL_BACKOFF_SECONDS = _env_int('EXPORT_INITIAL_BACKOFF_SECONDS', 30)
    EXPORT_MAX_BACKOFF_SECONDS = _env_int('EXPORT_MAX_BACKOFF_SECONDS', 60 * 60)

    # Artifacts
    EXPORT_CHUNK_SIZE = _env_int('EXPORT_CHUNK_SIZE', 1024 * 1024)
    EXPORT_KDF_ITERATIONS = _env_int('EXPORT_KDF_ITERATIONS', 480000)
    ARTIFACT_SWEEP_MAX_AGE_HOURS = _env_int('ARTIFACT_SWEEP_MAX_AGE_HOURS', 48)

    # Upload
    UPLOAD_CHUNK_SIZE = _env_int('UPLOAD_CHUNK_SIZE', 1024 * 1024)
    UPLOAD_TIMEOUT_SECONDS = _env_int('UPLOAD_TIMEOUT_SECONDS', 30)
    UPLOAD_AUTH_TOKEN = os.environ.get('UPLOAD_AUTH_TOKEN')
    S3_CHUNK_SIZE = _env_int('S3_CHUNK_SIZE', 10 * 1024 * 1024)
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_REGION = os.environ.get('AWS_REGION') or 'us-east-1'

    # Scheduler
    DISPATCH_INTERVAL_SECONDS = _env_int('DISPATCH_INTERVAL_SECONDS', 30)
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "exportjob.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    SOURCE_ROOT = os.path.join(DATA_DIR, 'sources')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory job store, no background scheduler"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    ENCRYPTION_PASSWORD = None
    EXPORT_KDF_ITERATIONS = 1000
    EXPORT_INITIAL_BACKOFF_SECONDS = 0
    LOG_DIR = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
