# Gunicorn configuration for Sitekeeper
# Backups run inside the trigger request, so workers need a long timeout

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))
timeout = int(os.environ.get('GUNICORN_TIMEOUT', str(6 * 60 * 60)))


def pre_fork(server, worker):
    """
    Pick the scheduler owner in the master, before the worker is forked.

    The first worker spawned while no owner is alive gets the role, so a
    replacement takes over when the owner exits.
    """
    owner_age = getattr(server, 'scheduler_owner_age', None)
    worker.scheduler_owner = owner_age is None
    if worker.scheduler_owner:
        server.scheduler_owner_age = worker.age


def post_fork(server, worker):
    """
    Export the role to the worker before it loads the app.

    Only the owner starts APScheduler, so scheduled backups and license
    refreshes run once per deployment.
    """
    if getattr(worker, 'scheduler_owner', False):
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP only")


def child_exit(server, worker):
    """Free the scheduler role when its worker exits."""
    if getattr(server, 'scheduler_owner_age', None) == worker.age:
        server.scheduler_owner_age = None
        logger.info(f"Scheduler owner (age={worker.age}) exited, next worker takes over")
