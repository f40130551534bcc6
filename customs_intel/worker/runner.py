"""
RQ worker for orchestrated extractions.
Run with: python -m customs_intel.worker.runner
"""

import os
import socket

import structlog
from redis import Redis
from rq import Worker

from customs_intel.config import settings
from customs_intel.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def main():
    setup_logging(component="worker")

    # RQ refuses two live workers with the same name
    name = f"{settings.APP_NAME}-{socket.gethostname()}-{os.getpid()}"
    logger.info("worker_starting", queue=settings.QUEUE_NAME, worker_name=name, api_base_url=settings.API_BASE_URL)

    worker = Worker(queues=[settings.QUEUE_NAME], connection=Redis.from_url(settings.REDIS_URL), name=name)
    worker.work(with_scheduler=False)


if __name__ == "__main__":
    main()
