"""
Django settings for the RT water billing project.

Values are read from the environment; a local ``.env`` file is loaded
first when present.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / '.env')


def env_bool(key, default=False):
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-change-me')
DEBUG = env_bool('DEBUG', False)
ALLOWED_HOSTS = [h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',') if h.strip()]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'waterbill',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'pamrt.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'pamrt.wsgi.application'

# ── Database ──────────────────────────────────────────────
DB_TYPE = os.getenv('DB_TYPE', 'sqlite')

if DB_TYPE == 'postgres':
    DATABASES = {
        'default': {
            'ENGINE':   'django.db.backends.postgresql',
            'NAME':     os.getenv('DB_NAME', 'pamrt'),
            'USER':     os.getenv('DB_USER', ''),
            'PASSWORD': os.getenv('DB_PASSWORD', ''),
            'HOST':     os.getenv('DB_HOST', 'localhost'),
            'PORT':     os.getenv('DB_PORT', '5432'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME':   os.getenv('DB_PATH', str(BASE_DIR / 'db.sqlite3')),
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ── Offline cache store ───────────────────────────────────
OFFLINE_CACHE_DIR = os.getenv('OFFLINE_CACHE_DIR')

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'pamrt-default',
    },
    'offline': (
        {
            'BACKEND':  'django.core.cache.backends.filebased.FileBasedCache',
            'LOCATION': OFFLINE_CACHE_DIR,
            'TIMEOUT':  None,
        }
        if OFFLINE_CACHE_DIR else
        {
            'BACKEND':  'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'pamrt-offline',
            'TIMEOUT':  None,
        }
    ),
}

WATERBILL_CACHE_ALIAS = os.getenv('WATERBILL_CACHE_ALIAS', 'offline')

# ── Remote store (system of record) ───────────────────────
WATERBILL_REMOTE = {
    'BACKEND': os.getenv('REMOTE_BACKEND', 'django'),
    'URL':     os.getenv('SUPABASE_URL', ''),
    'KEY':     os.getenv('SUPABASE_KEY', ''),
    'TIMEOUT': float(os.getenv('REMOTE_TIMEOUT', '15')),
}

WATERBILL_FEATURES = {
    'customer_discounts':     env_bool('FEATURE_DISCOUNTS', True),
    'meter_adjustments':      env_bool('FEATURE_METER_ADJUSTMENTS', True),
    'financial_transactions': env_bool('FEATURE_FINANCE', True),
    'transaction_categories': env_bool('FEATURE_FINANCE', True),
}

WATERBILL_PRICING = {
    'UNIT_RATE':  int(os.getenv('UNIT_RATE', '1500')),
    'TENS_RATE':  int(os.getenv('TENS_RATE', '2000')),
    'FIXED_FEE':  int(os.getenv('FIXED_FEE', '5000')),
    'TIER_LIMIT': int(os.getenv('TIER_LIMIT', '10')),
}

# ── Auth ──────────────────────────────────────────────────
AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
]

LOGIN_URL = '/accounts/login/'

# ── i18n ──────────────────────────────────────────────────
LANGUAGE_CODE = 'id'
TIME_ZONE = os.getenv('TIME_ZONE', 'Asia/Jakarta')
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# ── Logging ───────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'standard': {
            'format':  '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
            'datefmt': '%Y-%m-%d %H:%M:%S',
        },
    },
    'handlers': {
        'console': {
            'class':     'logging.StreamHandler',
            'formatter': 'standard',
        },
    },
    'loggers': {
        'waterbill': {
            'handlers':  ['console'],
            'level':     LOG_LEVEL,
            'propagate': False,
        },
        'django': {
            'handlers': ['console'],
            'level':    'WARNING',
        },
    },
}
