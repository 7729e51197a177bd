"""Gunicorn configuration for production deployment.

Bind address and log level come from the same Settings the app reads.
Quota windows, the result cache and tracked operations live in process
memory, so exactly one uvicorn worker serves the app.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os

from core.config import Settings

settings = Settings()

bind = f"{settings.host}:{settings.port}"

# More workers would multiply every service quota
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"

timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

accesslog = None if settings.debug else "-"
errorlog = "-"
loglevel = settings.log_level.lower()

proc_name = "ai-orchestrator"
