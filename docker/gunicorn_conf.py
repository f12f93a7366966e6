# Gunicorn hooks for vaultsync
# Exactly one worker owns the schedule tick, retention and sync queue replay

import os
import logging

logger = logging.getLogger('gunicorn.error')

def post_worker_init(worker):
    """
    Mark the first worker (age 0) as the one that starts APScheduler.

    The other workers only serve requests, so a due schedule produces one
    backup job and the sync queue has a single replayer.

    Args:
        worker: Gunicorn worker instance
    """
    owns_scheduler = worker.age == 0
    os.environ['SCHEDULER_WORKER'] = 'true' if owns_scheduler else 'false'

    if owns_scheduler:
        logger.info(f"vaultsync worker {worker.pid}: running backup scheduler and sync replay")
    else:
        logger.info(f"vaultsync worker {worker.pid}: request handling only")
