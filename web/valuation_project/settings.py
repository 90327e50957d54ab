"""Django settings for the portfolio valuation API."""

import os
import sys
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

# Add the repo root to sys.path so valuation_engine imports without installation
REPO_ROOT = BASE_DIR.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from valuation_engine.config import EngineConfig  # noqa: E402

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "valuation-desk-not-for-production")

DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"

ALLOWED_HOSTS = ["*"]

INSTALLED_APPS = [
    "daphne",
    "channels",
    "corsheaders",
    "portfolio_app",
]

MIDDLEWARE = [
    "corsheaders.middleware.CorsMiddleware",
    "django.middleware.common.CommonMiddleware",
]

# CORS (django-cors-headers): the API is consumed by a separately served front end.
# CORS_ALLOWED_ORIGINS="https://a.example,https://b.example" restricts it; unset allows all.
CORS_ALLOWED_ORIGINS = [
    o.strip() for o in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",") if o.strip()
]
CORS_ALLOW_ALL_ORIGINS = not CORS_ALLOWED_ORIGINS

# Channels
ASGI_APPLICATION = "valuation_project.asgi.application"
CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    },
}

ROOT_URLCONF = "valuation_project.urls"

# In-memory only
DATABASES = {}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Engine settings come from VALUATION_* environment variables
VALUATION_CONFIG = EngineConfig.from_env()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "brief": {
            "format": "%(asctime)s  %(levelname)-7s %(name)s  %(message)s",
            "datefmt": "%H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "brief",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "portfolio_app": {
            "handlers": ["console"],
            "level": os.environ.get("PORTFOLIO_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "valuation_engine": {
            "handlers": ["console"],
            "level": os.environ.get("VALUATION_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        # Suppress noisy libs
        "daphne": {"level": "WARNING"},
        "django": {"level": "WARNING"},
        "django.channels": {"level": "WARNING"},
        "yfinance": {"level": "WARNING"},
    },
}
