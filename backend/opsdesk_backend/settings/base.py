# backend/opsdesk_backend/settings/base.py
import os
from pathlib import Path
from datetime import timedelta
from corsheaders.defaults import default_headers, default_methods

BASE_DIR = Path(__file__).resolve().parents[2]

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-secret")
DEBUG = os.getenv("DJANGO_DEBUG", "true").lower() == "true"

ALLOWED_HOSTS = [h for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,0.0.0.0").split(",") if h]
CSRF_TRUSTED_ORIGINS = [s.strip() for s in os.getenv("CSRF_TRUSTED_ORIGINS", "").split(",") if s.strip()]

INSTALLED_APPS = [
    "core.apps.CoreConfig",
    "identity.apps.IdentityConfig",
    "platformapp",
    "crm",
    "notificationsapp.apps.NotificationsappConfig",
    "support.apps.SupportConfig",
    "cms.apps.CmsConfig",

    # third-party
    "corsheaders",
    "rest_framework",
    "rest_framework_simplejwt",
    "django_filters",
    "drf_spectacular",

    # contrib
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
]

AUTH_USER_MODEL = "identity.User"

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "core.middleware.RequestIDMiddleware",
    "core.middleware.TimingMiddleware",
    "corsheaders.middleware.CorsMiddleware",

    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    # answers 404s with stored redirects; keep it last so it sees the final response
    "cms.middleware.RedirectMiddleware",
]

ROOT_URLCONF = "opsdesk_backend.urls"

TEMPLATES = [{
    "BACKEND": "django.template.backends.django.DjangoTemplates",
    "DIRS": [],
    "APP_DIRS": True,
    "OPTIONS": {"context_processors": [
        "django.template.context_processors.debug",
        "django.template.context_processors.request",
        "django.contrib.auth.context_processors.auth",
        "django.contrib.messages.context_processors.messages",
    ]},
}]

WSGI_APPLICATION = "opsdesk_backend.wsgi.application"

if os.getenv("POSTGRES_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "opsdesk"),
            "USER": os.getenv("POSTGRES_USER", "postgres"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
            "HOST": os.getenv("POSTGRES_HOST"),
            "PORT": int(os.getenv("POSTGRES_PORT", "5432")),
            "CONN_MAX_AGE": 60,
        }
    }
else:
    DATABASES = {"default": {"ENGINE": "django.db.backends.sqlite3", "NAME": str(BASE_DIR / "db.sqlite3")}}

LANGUAGE_CODE = "en-us"; TIME_ZONE = os.getenv("TIME_ZONE", "UTC"); USE_I18N = True; USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage"},
}
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

MEDIA_ROOT = BASE_DIR / "media"
MEDIA_URL = "/media/"

APPEND_SLASH = False
USE_X_FORWARDED_HOST = True
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

CACHES = {
    "default": {
        "BACKEND": os.getenv("CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": os.getenv("CACHE_LOCATION", "opsdesk"),
    }
}

EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "support@opsdesk.local")

# DRF
REST_FRAMEWORK = {
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.IsAuthenticatedOrReadOnly"],
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework_simplejwt.authentication.JWTAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_FILTER_BACKENDS": ["django_filters.rest_framework.DjangoFilterBackend"],
    "EXCEPTION_HANDLER": "common.exceptions.api_exception_handler",
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.AnonRateThrottle",
        "rest_framework.throttling.UserRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "anon": "60/minute",
        "user": "600/minute",
        "chatbot": "30/minute",
    },
}
if DEBUG:
    REST_FRAMEWORK["DEFAULT_RENDERER_CLASSES"].append("rest_framework.renderers.BrowsableAPIRenderer")

SPECTACULAR_SETTINGS = {"TITLE": "OpsDesk API", "DESCRIPTION": "Helpdesk + CMS API", "VERSION": "0.3.0"}

SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=15),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=1),
    "ROTATE_REFRESH_TOKENS": True,
    "UPDATE_LAST_LOGIN": True,
    "ALGORITHM": "HS256",
    "SIGNING_KEY": SECRET_KEY,
    "AUTH_HEADER_TYPES": ("Bearer",),
    "AUTH_HEADER_NAME": "HTTP_AUTHORIZATION",
    "USER_ID_FIELD": "id",
    "USER_ID_CLAIM": "user_id",
    "AUTH_TOKEN_CLASSES": ("rest_framework_simplejwt.tokens.AccessToken",),
    "TOKEN_TYPE_CLAIM": "token_type",
}

SESSION_ENGINE = "django.contrib.sessions.backends.db"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
    "version": 1, "disable_existing_loggers": False,
    "filters": {"request_id": {"()": "core.middleware.RequestIDLogFilter"}},
    "formatters": {"plain": {"format": "%(asctime)s %(levelname)s [%(request_id)s] %(name)s %(message)s"}},
    "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "plain", "filters": ["request_id"]}},
    "loggers": {"django": {"handlers": ["console"], "level": "INFO"},
                "django.request": {"handlers": ["console"], "level": "ERROR", "propagate": False},
                "support": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
                "cms": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
                "notificationsapp": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False}},
}

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = os.getenv("CELERY_TASK_ALWAYS_EAGER", "false").lower() == "true"
CELERY_BEAT_SCHEDULE = {
    "support-sla-sweep": {
        "task": "support.tasks.sweep_sla_breaches",
        "schedule": 300,
    },
    "cms-publish-scheduled": {
        "task": "cms.tasks.publish_scheduled_pages",
        "schedule": 300,
    },
    "cms-sitemap-daily": {
        "task": "cms.tasks.regenerate_sitemaps",
        "schedule": 86400,
    },
}

# CORS
CORS_ALLOW_ALL_ORIGINS = True
CORS_ALLOW_CREDENTIALS = False
CORS_ALLOW_HEADERS = list(default_headers) + ["authorization", "content-type", "accept", "x-tenant-id"]
CORS_EXPOSE_HEADERS = ["Location", "X-Request-ID"]
CORS_ALLOW_METHODS = list(default_methods)
CORS_URLS_REGEX = r"^/.*$"

# ---- Support desk ----
SUPPORT_SLA = {
    "business_hours_enabled": True,
    "business_start_time": "09:00",
    "business_end_time": "17:00",
    "business_days": ["monday", "tuesday", "wednesday", "thursday", "friday"],
    "sla_warning_threshold": 80,
    "enable_sla_escalation": True,
}
SUPPORT_AI = {
    "PROVIDER": os.getenv("SUPPORT_AI_PROVIDER", "heuristic"),  # heuristic|http
    "URL": os.getenv("SUPPORT_AI_URL", ""),
    "TOKEN": os.getenv("SUPPORT_AI_TOKEN", ""),
    "TIMEOUT": int(os.getenv("SUPPORT_AI_TIMEOUT", "20")),
    "AUTO_TRIAGE": os.getenv("SUPPORT_AI_AUTO_TRIAGE", "true").lower() == "true",
}
SUPPORT_AUTOMATION_ASYNC = os.getenv("SUPPORT_AUTOMATION_ASYNC", "false").lower() == "true"
SUPPORT_CHATBOT_TTL = int(os.getenv("SUPPORT_CHATBOT_TTL", str(60 * 60 * 24)))

# ---- CMS ----
SITE_BASE_URL = os.getenv("SITE_BASE_URL", "http://localhost:8000")
CMS_SITE_TENANT = os.getenv("CMS_SITE_TENANT", "")  # slug served by /sitemap.xml and the redirect middleware
CMS_TREE_MAX_DEPTH = int(os.getenv("CMS_TREE_MAX_DEPTH", "10"))
CMS_REDIRECT_MAX_HOPS = int(os.getenv("CMS_REDIRECT_MAX_HOPS", "10"))
CMS_SITEMAP_STATIC_ROUTES = [
    {"path": "/about", "changefreq": "monthly", "priority": "0.8"},
    {"path": "/contact", "changefreq": "monthly", "priority": "0.7"},
    {"path": "/services", "changefreq": "weekly", "priority": "0.8"},
    {"path": "/blog", "changefreq": "daily", "priority": "0.9"},
]
CMS_SITEMAP_PING_URLS = {
    "google": "https://www.google.com/ping",
    "bing": "https://www.bing.com/ping",
}
CMS_MEDIA_MAX_UPLOAD_MB = int(os.getenv("CMS_MEDIA_MAX_UPLOAD_MB", "10"))
CMS_MEDIA_ALLOWED_TYPES = [
    "image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml",
    "application/pdf", "text/plain", "text/csv", "video/mp4", "audio/mpeg",
]
