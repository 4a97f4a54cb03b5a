import os
import secrets


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_list(name):
    value = os.environ.get(name, '')
    return [item.strip() for item in value.split(',') if item.strip()]


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or fall back to a persistent file in /data
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            # Cached license secrets become unreadable after a restart with a new key
            SECRET_KEY = secrets.token_hex(32)
            print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.")

    # Own state (option store, run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/sitekeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Site being backed up
    SITE_URL = os.environ.get('SITE_URL') or 'http://localhost'
    SITE_DATABASE_URL = os.environ.get('SITE_DATABASE_URL')
    CONTENT_DIR = os.environ.get('CONTENT_DIR') or '/var/www/html/wp-content'
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or os.path.join(CONTENT_DIR, 'backups')
    BACKUP_EXCLUDE_DIRS = _env_list('BACKUP_EXCLUDE_DIRS')
    DUMP_BATCH_SIZE = _env_int('DUMP_BATCH_SIZE', 500)

    # Upload
    MULTIPART_THRESHOLD = _env_int('MULTIPART_THRESHOLD', 1024 * 1024 * 1024)
    MULTIPART_CHUNK_SIZE = _env_int('MULTIPART_CHUNK_SIZE', 200 * 1024 * 1024)
    UPLOAD_MAX_RETRIES = _env_int('UPLOAD_MAX_RETRIES', 3)

    # Run lock and retention
    BACKUP_LOCK_TTL = _env_int('BACKUP_LOCK_TTL', 6 * 60 * 60)
    KEEP_BACKUPS = _env_int('KEEP_BACKUPS', 1000)

    # License server supplying S3 credentials
    LICENSE_SERVER_URL = os.environ.get('LICENSE_SERVER_URL')
    LICENSE_SHARED_SECRET = os.environ.get('LICENSE_SHARED_SECRET', '')
    LICENSE_CACHE_SECONDS = _env_int('LICENSE_CACHE_SECONDS', 12 * 60 * 60)

    # Static S3 credentials (used instead of the license server when set)
    S3_ACCESS_KEY = os.environ.get('S3_ACCESS_KEY')
    S3_SECRET_KEY = os.environ.get('S3_SECRET_KEY')
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_ENDPOINT = os.environ.get('S3_ENDPOINT')
    WEBHOOK_SECRET = os.environ.get('WEBHOOK_SECRET')

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "sitekeeper.db")}'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory store, no scheduler, no network at startup"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    LICENSE_SERVER_URL = None
    S3_ACCESS_KEY = None
    S3_SECRET_KEY = None
    S3_BUCKET = None
    WEBHOOK_SECRET = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
