import os


def _env_bool(name, default):
    return os.getenv(name, str(default)).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'your-secret-key-here-change-in-production')
    BASE_DIR = os.path.abspath(os.path.dirname(__file__))

    # SQLite by default, any SQLAlchemy URL via DATABASE_URL
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL', 'sqlite:///' + os.path.join(BASE_DIR, 'mail_tracker.db'))
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # File storage
    UPLOAD_DIR = os.getenv('UPLOAD_DIR', os.path.join(BASE_DIR, 'uploads'))
    TEMPLATE_DIR = os.path.join(UPLOAD_DIR, 'templates')
    REPLY_DIR = os.path.join(UPLOAD_DIR, 'replies')
    AGGREGATE_DIR = os.path.join(UPLOAD_DIR, 'aggregated')
    MAX_CONTENT_LENGTH = int(os.getenv('MAX_UPLOAD_MB', '16')) * 1024 * 1024

    # Bearer tokens
    TOKEN_EXPIRE_MINUTES = int(os.getenv('TOKEN_EXPIRE_MINUTES', str(60 * 24)))

    # Mail transport (per-user server settings live on the users table)
    SMTP_TIMEOUT = int(os.getenv('SMTP_TIMEOUT', '30'))
    MAIL_LOOKBACK_DAYS = int(os.getenv('MAIL_LOOKBACK_DAYS', '30'))
    MAIL_MAX_PROCESS = int(os.getenv('MAIL_MAX_PROCESS', '200'))

    # Background work
    ENABLE_EMAIL_SCHEDULER = _env_bool('ENABLE_EMAIL_SCHEDULER', True)
    EMAIL_FETCH_INTERVAL = int(os.getenv('EMAIL_FETCH_INTERVAL', '10'))  # minutes
    AGGREGATE_WORKERS = int(os.getenv('AGGREGATE_WORKERS', '2'))

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    ENABLE_EMAIL_SCHEDULER = False
    TOKEN_EXPIRE_MINUTES = 5


config = Config()
