# backend/opsdesk_backend/settings/dev.py
from .base import *

DEBUG = True

# answer browser preflights before anything else can redirect them
MIDDLEWARE = [
    "core.middleware.DevCORSPreflightMiddleware",
] + MIDDLEWARE

ALLOWED_HOSTS = ["*", "localhost", "127.0.0.1"]

FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
CSRF_TRUSTED_ORIGINS = [FRONTEND_ORIGIN]
CORS_ALLOWED_ORIGINS = [FRONTEND_ORIGIN]

EMAIL_BACKEND = "django.core.mail.backends.console.EmailBackend"
CELERY_TASK_ALWAYS_EAGER = os.getenv("CELERY_TASK_ALWAYS_EAGER", "true").lower() == "true"

LOGGING["loggers"]["support"]["level"] = "DEBUG"
LOGGING["loggers"]["cms"]["level"] = "DEBUG"
