"""
Production Server Configuration

    gunicorn -c gunicorn.conf.py

Uvicorn workers serve catalog.main:app; each worker opens its own engine
and Redis pool in the app lifespan.
"""

import multiprocessing
import os

wsgi_app = "catalog.main:app"

# Server socket
bind = os.getenv("BIND", "0.0.0.0:8000")
forwarded_allow_ips = os.getenv("FORWARDED_ALLOW_IPS", "127.0.0.1")

# Workers; tree rebuilds are I/O bound, so a modest count is enough
workers = int(os.getenv("WORKERS", min(multiprocessing.cpu_count() * 2 + 1, 8)))
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = int(os.getenv("MAX_REQUESTS", 10000))
max_requests_jitter = 1000
timeout = int(os.getenv("WORKER_TIMEOUT", 60))
graceful_timeout = 30
keepalive = 5

proc_name = "catalog-api"
pidfile = os.getenv("PIDFILE", "/tmp/catalog-gunicorn.pid")

# Access lines carry the request id set by the API middleware
errorlog = "-"
accesslog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)sus request_id=%({x-request-id}o)s'
