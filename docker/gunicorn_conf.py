# Gunicorn configuration for exportjob
# One worker process owns APScheduler, so no export job is dispatched twice.
# Concurrency for the health endpoint comes from threads, not processes.

import os

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
wsgi_app = 'exportjob:create_app()'
workers = 1
threads = int(os.environ.get('GUNICORN_THREADS', '4'))
raw_env = ['SCHEDULER_WORKER=true']
