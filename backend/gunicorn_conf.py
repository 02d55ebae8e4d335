# backend/gunicorn_conf.py

# Production server for chatflow.main:app. Each worker runs its own runtime
# (inbound consumers and deferred workers); Redis locks keep them consistent.

bind = "0.0.0.0:8000"
workers = 2
worker_class = "uvicorn.workers.UvicornWorker"
wsgi_app = "chatflow.main:app"

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

accesslog = "-"
errorlog = "-"
loglevel = "info"

# Engine runs hold session locks; give them time to finish on shutdown.
graceful_timeout = 60
