import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.staticfiles",
    "rest_framework",
    "drf_spectacular",
    "discounts",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
            ],
        },
    },
]

# IMMEDIATE takes the write lock when a reserve/release transaction begins
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("DJANGO_DB_PATH", str(BASE_DIR / "db.sqlite3")),
        # general busy wait; reserve/release narrow it to RESERVE_LOCK_TIMEOUT_MS
        "OPTIONS": {
            "timeout": int(os.environ.get("DJANGO_DB_TIMEOUT", "20")),
            "transaction_mode": "IMMEDIATE",
        },
        # file-backed so threaded tests share one database
        "TEST": {"NAME": str(BASE_DIR / "test_db.sqlite3")},
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

REST_FRAMEWORK = {
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "COERCE_DECIMAL_TO_STRING": True,
}

SPECTACULAR_SETTINGS = {
    "TITLE": "Discount Engine API",
    "DESCRIPTION": "Discount eligibility, pricing and usage accounting for the point of sale.",
    "VERSION": "0.1.0",
}

DISCOUNTS = {
    "RESERVE_LOCK_TIMEOUT_MS": int(os.environ.get("DISCOUNTS_RESERVE_LOCK_TIMEOUT_MS", "2000")),
    "AMOUNT_QUANTUM": os.environ.get("DISCOUNTS_AMOUNT_QUANTUM", "1"),
    "MEMBER_RESOLVER": "discounts.eligibility.customer_is_member",
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s - %(levelname)s - %(name)s - %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "discounts": {
            "handlers": ["console"],
            "level": os.environ.get("DISCOUNTS_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
