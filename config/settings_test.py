"""
Settings used by the test suite.
"""
from .settings import *  # noqa: F401,F403

# File-backed so the threaded race tests share one database. BEGIN IMMEDIATE
# takes the write lock up front, so competing writers queue on the timeout.
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': str(BASE_DIR / 'test_db.sqlite3'),  # noqa: F405
        'OPTIONS': {
            'transaction_mode': 'IMMEDIATE',
            'timeout': 20,
        },
        'TEST': {
            'NAME': str(BASE_DIR / 'test_db.sqlite3'),  # noqa: F405
        },
    }
}

if os.environ.get('POSTGRES_DB'):  # noqa: F405
    # Lets the concurrency tests run against real row locks in CI
    DATABASES['default'] = {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ['POSTGRES_DB'],  # noqa: F405
        'USER': os.environ.get('POSTGRES_USER', 'postgres'),  # noqa: F405
        'PASSWORD': os.environ.get('POSTGRES_PASSWORD', ''),  # noqa: F405
        'HOST': os.environ.get('POSTGRES_HOST', 'localhost'),  # noqa: F405
        'PORT': os.environ.get('POSTGRES_PORT', '5432'),  # noqa: F405
    }

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

REDIS_URL = ''
RATE_LIMIT_ENABLED = False

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = False
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

STRIPE_WEBHOOK_SECRET = 'whsec_test_secret'
ANTI_REPLAY_WINDOW_SECONDS = 300

LOG_LEVEL = 'WARNING'
LOGGING['root']['level'] = LOG_LEVEL  # noqa: F405
