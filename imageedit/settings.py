import os
from pathlib import Path

from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "django-insecure-imageedit-dev-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [
    h.strip() for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if h.strip()
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "billing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "billing.middleware.RequestLoggingMiddleware",
]

ROOT_URLCONF = "imageedit.urls"
WSGI_APPLICATION = "imageedit.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

# Row locks on the account table must not wait forever.
BILLING_LOCK_TIMEOUT_MS = int(os.environ.get("BILLING_LOCK_TIMEOUT_MS", "5000"))
BILLING_STATEMENT_TIMEOUT_MS = int(os.environ.get("BILLING_STATEMENT_TIMEOUT_MS", "30000"))

if os.environ.get("DB_ENGINE", "sqlite") == "postgresql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ.get("DB_NAME", "image_edit"),
            "USER": os.environ.get("DB_USER", "postgres"),
            "PASSWORD": os.environ.get("DB_PASSWORD", ""),
            "HOST": os.environ.get("DB_HOST", "localhost"),
            "PORT": os.environ.get("DB_PORT", "5432"),
            "CONN_MAX_AGE": int(os.environ.get("DB_CONN_MAX_AGE", "60")),
            "OPTIONS": {
                "connect_timeout": 5,
                # Also bounds reads that run outside a billing transaction.
                "options": f"-c statement_timeout={BILLING_STATEMENT_TIMEOUT_MS}",
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.environ.get("DB_NAME", str(BASE_DIR / "db.sqlite3")),
            # BEGIN IMMEDIATE takes the write lock up front, which is what
            # serializes concurrent balance mutations on SQLite.
            "OPTIONS": {
                "transaction_mode": "IMMEDIATE",
                "timeout": BILLING_LOCK_TIMEOUT_MS / 1000,
            },
            # File-backed so threaded tests share one database.
            "TEST": {"NAME": str(BASE_DIR / "test_db.sqlite3")},
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
MEDIA_ROOT = os.environ.get("MEDIA_ROOT", str(BASE_DIR / "media"))
MEDIA_URL = "media/"

REST_FRAMEWORK = {
    # Callers are authenticated upstream by the WeChat login gateway.
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
}

# Billing
BILLING_DATABASE = os.environ.get("BILLING_DATABASE", "default")
BILLING_ACTION_PRICES = {
    # Minor currency units (fen).
    "image_edit": int(os.environ.get("BILLING_IMAGE_EDIT_PRICE", "100")),
}
BILLING_FREE_DAILY_ACTIONS = int(os.environ.get("BILLING_FREE_DAILY_ACTIONS", "3"))
BILLING_RECHARGE_EXPIRY_HOURS = int(os.environ.get("BILLING_RECHARGE_EXPIRY_HOURS", "24"))

# Generative editing API
EDIT_API_ENDPOINT = os.environ.get(
    "EDIT_API_ENDPOINT", "https://api.apiyi.com/v1/chat/completions"
)
EDIT_API_KEY = os.environ.get("EDIT_API_KEY", "")
EDIT_API_MODEL = os.environ.get("EDIT_API_MODEL", "gemini-2.5-flash-image")
EDIT_API_TIMEOUT = int(os.environ.get("EDIT_API_TIMEOUT", "120"))
EDIT_STALE_AFTER_MINUTES = int(os.environ.get("EDIT_STALE_AFTER_MINUTES", "15"))

# Celery
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_BEAT_SCHEDULE = {
    "fail-stale-edit-operations": {
        "task": "billing.tasks.fail_stale_edit_operations",
        "schedule": crontab(minute="*/5"),
    },
    "expire-pending-recharges": {
        "task": "billing.tasks.expire_pending_recharges",
        "schedule": crontab(minute=0),
    },
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "django.db.backends": {"level": "WARNING"},
    },
}
