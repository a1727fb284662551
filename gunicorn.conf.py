# Gunicorn configuration file
# Usage: gunicorn -c gunicorn.conf.py app:app

import multiprocessing

# Server socket
# Note: bind will be overridden by --bind flag in command line
bind = "0.0.0.0:10000"
backlog = 2048

# Worker processes
# The consume endpoint is a few short SQL statements; meter events are sent
# from a background thread pool, so sync workers never wait on Stripe.
workers = multiprocessing.cpu_count() * 2 + 1
worker_class = "sync"
timeout = 30
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = "info"
access_log_format = '%(h)s - - [%(t)s] - "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s"'

# Process naming
proc_name = "usage-metering"

# Server mechanics
daemon = False
pidfile = None
umask = 0
user = None
group = None
tmp_upload_dir = None


def worker_exit(server, worker):
    # Flush queued meter events before the worker goes away
    from app import meter_reporter

    shutdown = getattr(meter_reporter, "shutdown", None)
    if shutdown is not None:
        shutdown(wait=True)
