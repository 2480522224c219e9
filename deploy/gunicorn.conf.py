"""
Gunicorn configuration for the ExamHub engine API.

Run with:
    gunicorn -c deploy/gunicorn.conf.py examhub.main:app
"""
import os

wsgi_app = "examhub.main:app"

bind = os.environ.get("BIND", "0.0.0.0:8000")
backlog = 2048

# SQLite serialises writers; keep one worker unless DATABASE_URL points elsewhere
workers = int(os.environ.get("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 60
graceful_timeout = 30
keepalive = 5

accesslog = os.environ.get("ACCESS_LOG", "-")
errorlog = os.environ.get("ERROR_LOG", "-")
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(t)s "%(r)s" %(s)s %(b)s %(D)s'

proc_name = "examhub"

daemon = False
pidfile = os.environ.get("PIDFILE", "/tmp/examhub.pid")

limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    server.log.info(f"ExamHub ready with {workers} worker(s)")


def on_exit(server):
    server.log.info("ExamHub shutting down")
