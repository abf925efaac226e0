# givers/settings.py
from pathlib import Path
import os
import urllib.parse

# -----------------------------------------------------------------------------
# Core
# -----------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent.parent

DEBUG = os.getenv("DJANGO_DEBUG", "False").lower() == "true"
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "change-me")

ALLOWED_HOSTS = ["*"] if DEBUG else [h for h in os.getenv("ALLOWED_HOSTS", "").split(",") if h]

# -----------------------------------------------------------------------------
# Apps / Middleware
# -----------------------------------------------------------------------------
INSTALLED_APPS = [
    # Django
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Local
    "donations",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "givers.urls"
WSGI_APPLICATION = "givers.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

# -----------------------------------------------------------------------------
# Database (SQLite by default)
# -----------------------------------------------------------------------------
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        "OPTIONS": {"timeout": 10},
    }
}

DATABASE_URL = os.getenv("DATABASE_URL", "")
if DATABASE_URL and (DATABASE_URL.startswith("postgres://") or DATABASE_URL.startswith("postgresql://")):
    urllib.parse.uses_netloc.append("postgres")
    url = urllib.parse.urlparse(DATABASE_URL)
    DATABASES["default"] = {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": url.path.lstrip("/"),
        "USER": url.username,
        "PASSWORD": url.password,
        "HOST": url.hostname,
        "PORT": url.port or 5432,
        "CONN_MAX_AGE": 60,
        "OPTIONS": {
            "sslmode": os.getenv("DATABASE_SSLMODE", "disable"),
            # a statement hitting this surfaces as Cancelled (SQLSTATE 57014)
            "options": f"-c statement_timeout={os.getenv('GIVERS_STATEMENT_TIMEOUT_MS', '10000')}",
        },
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# -----------------------------------------------------------------------------
# i18n / tz
# -----------------------------------------------------------------------------
LANGUAGE_CODE = "ja"
# Calendar months (milestones, monthly sums) are bucketed in this zone.
TIME_ZONE = os.getenv("GIVERS_TIME_ZONE", "Asia/Tokyo")
USE_I18N = True
USE_TZ = True

# -----------------------------------------------------------------------------
# Static files (nginx should serve STATIC_ROOT in prod)
# -----------------------------------------------------------------------------
STATIC_URL = "/static/"
STATIC_ROOT = os.getenv("STATIC_ROOT", str(BASE_DIR / "staticfiles"))

# -----------------------------------------------------------------------------
# Security (reverse proxy + TLS)
# -----------------------------------------------------------------------------
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
SESSION_COOKIE_SECURE = not DEBUG
CSRF_COOKIE_SECURE = not DEBUG
SECURE_SSL_REDIRECT = (not DEBUG) and (os.getenv("SECURE_SSL_REDIRECT", "true").lower() == "true")

_csrf_origins = [o for o in os.getenv("CSRF_TRUSTED_ORIGINS", "").split(",") if o]
CSRF_TRUSTED_ORIGINS = _csrf_origins if not DEBUG else []

# -----------------------------------------------------------------------------
# Celery / Redis
# -----------------------------------------------------------------------------
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TIMEZONE = TIME_ZONE
CELERY_ENABLE_UTC = True
CELERY_TASK_ROUTES = {
    "donations.notify_milestones_task": {"queue": os.getenv("GIVERS_MILESTONE_QUEUE", "celery")},
    "donations.sweep_milestones_task": {"queue": os.getenv("GIVERS_MILESTONE_QUEUE", "celery")},
}

# Re-check milestones for every active project, in case an inline check failed
CELERY_BEAT_SCHEDULE = {
    "sweep-milestones-hourly": {
        "task": "donations.sweep_milestones_task",
        "schedule": float(os.getenv("GIVERS_MILESTONE_SWEEP_SECONDS", "3600")),
    }
}

# -----------------------------------------------------------------------------
# Givers
# -----------------------------------------------------------------------------
# Checked high -> low; must not increase.
GIVERS_MILESTONE_THRESHOLDS = [
    int(t) for t in os.getenv("GIVERS_MILESTONE_THRESHOLDS", "100,50").split(",") if t.strip()
]
# Hand milestone checks to the Celery worker instead of running them inline
GIVERS_MILESTONES_ASYNC = os.getenv("GIVERS_MILESTONES_ASYNC", "false").lower() == "true"
GIVERS_ANONYMOUS_DISPLAY_NAME = os.getenv("GIVERS_ANONYMOUS_DISPLAY_NAME", "anonymous")
GIVERS_DONOR_TOKEN_COOKIE = "donor_token"

# -----------------------------------------------------------------------------
# Logging (stdout; store faults carry a correlation_id)
# -----------------------------------------------------------------------------
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "[{levelname}] {name}: {message}", "style": "{"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "root": {"handlers": ["console"], "level": "INFO"},
    "loggers": {
        "django.server": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "celery": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "donations": {
            "handlers": ["console"],
            "level": os.getenv("GIVERS_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
