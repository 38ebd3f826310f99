# backend/gunicorn_conf.py

# Gunicorn config file: gunicorn -c gunicorn_conf.py convoflow.main:app

import os

bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"

# Flow runs finish inside the webhook request; keep the worker timeout above
# the request timeout middleware.
timeout = 60
graceful_timeout = 30

# Behind a reverse proxy
forwarded_allow_ips = "*"

# --- Logging ---
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
