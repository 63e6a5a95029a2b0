from .settings import *  # noqa
from pathlib import Path

# Local SQLite database for clean rebuilds and tests
BASE_DIR = Path(__file__).resolve().parent.parent
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'haven-relay-local',
    }
}

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
CELERY_TASK_ALWAYS_EAGER = True

# Make local checks easy
DEBUG = True
ALLOWED_HOSTS = ['*']

SECRET_KEY = 'local-only-secret-key'
GRAPHQL_JWT = {**GRAPHQL_JWT, 'JWT_SECRET_KEY': 'local-only-session-secret'}  # noqa: F405
CLAIM_TOKEN_SECRET = 'local-only-claim-token-secret'

# Fixed devnet identities; the sponsor signs with a local keypair
TREASURY_OWNER_ADDRESS = '7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU'
SPONSOR_ADDRESS = '9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM'
ESCROW_OWNER_ADDRESS = SPONSOR_ADDRESS
PRIVY_APP_ID = 'local-app'
PRIVY_APP_SECRET = 'local-secret'
