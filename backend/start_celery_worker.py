#!/usr/bin/env python3
"""Start the import Celery worker with container-friendly defaults."""

import sys
import warnings

# Containers usually run as root
warnings.filterwarnings('ignore', category=UserWarning, message='.*superuser privileges.*')
warnings.filterwarnings('ignore', category=RuntimeWarning, message='.*superuser privileges.*')

from dbimport.workers.celery_app import celery_app

if __name__ == '__main__':
    celery_app.worker_main(
        argv=[
            'worker',
            '--loglevel=info',
            '--queues=imports',
            '--pool=solo',
            '--without-mingle',
            '--without-gossip',
        ]
        + sys.argv[1:]
    )
