# Gunicorn configuration for dbkeeper
# Usage: gunicorn -c docker/gunicorn_conf.py "dbkeeper:create_app()"
# Exactly one worker runs the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('DBKEEPER_BIND', '0.0.0.0:8080')
workers = int(os.environ.get('DBKEEPER_WORKERS', '2'))
# Backup runs triggered through POST /api/backups can take a while
timeout = int(os.environ.get('DBKEEPER_WORKER_TIMEOUT', '3600'))


def post_fork(server, worker):
    """
    Called in each worker right after fork, before the app is loaded.

    Designates the first worker (worker.age == 1) as the scheduler owner.
    Only this worker starts APScheduler, so scheduled backups never run
    twice against the same storage.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (gunicorn numbers workers from age 1)
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): owns the backup scheduler")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): status API only (scheduler disabled)")
