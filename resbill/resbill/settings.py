from decimal import Decimal
import os
from pathlib import Path

from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "resbill-insecure-dev-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost").split(",")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "billing_core.apps.BillingCoreConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "resbill.urls"

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

# Postgres in deployments (row locks are real there),
# SQLite for local runs and the test suite
if os.environ.get("RESBILL_DB_NAME"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ["RESBILL_DB_NAME"],
            "USER": os.environ.get("RESBILL_DB_USER", "resbill"),
            "PASSWORD": os.environ.get("RESBILL_DB_PASSWORD", ""),
            "HOST": os.environ.get("RESBILL_DB_HOST", "localhost"),
            "PORT": os.environ.get("RESBILL_DB_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

# ---------- Billing engine ----------
BILLING = {
    "BASE_CURRENCY": os.environ.get("RESBILL_BASE_CURRENCY", "USD"),
    "RATE_FRESHNESS_HOURS": 24,
    "RETRY_BACKOFF_DAYS": [1, 3, 7],
    "DEFAULT_MAX_RETRY_ATTEMPTS": 3,
    "SUBSCRIPTION_PAYMENT_TERMS_DAYS": 7,
    "REFUND_LOSS_APPROVAL_THRESHOLD": Decimal("50.00"),
    "GATEWAY_TIMEOUT_SECONDS": 30,
    "PENDING_TRANSACTION_TIMEOUT_MINUTES": 30,
    "PENDING_RECHECK_MINUTES": 60,
    "PROCESSING_LEASE_MINUTES": 15,
    "ALLOCATION_MAX_RETRIES": 3,
    "AUTO_APPLY_CREDIT": True,
    "PAYMENT_GATEWAY": os.environ.get("RESBILL_PAYMENT_GATEWAY"),
    "TAX_SERVICE": "billing_core.services.tax.RuleTableTaxService",
}

# ---------- Celery ----------
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_TASK_ACKS_LATE = True
CELERY_BEAT_SCHEDULE = {
    "subscription-billing-sweep": {
        "task": "billing_core.tasks.sweep_due_subscriptions",
        "schedule": crontab(minute="*/5"),
    },
    "pending-transaction-reconciliation": {
        "task": "billing_core.tasks.reconcile_pending_transactions",
        "schedule": crontab(minute="*/15"),
    },
    "overdue-invoice-sweep": {
        "task": "billing_core.tasks.mark_overdue_invoices",
        "schedule": crontab(minute=0, hour=1),
    },
}

# ---------- Logging ----------
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
    "loggers": {
        "billing_core": {
            "handlers": ["console"],
            "level": os.environ.get("RESBILL_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
