"""RQ worker process entrypoint for upload jobs."""

import logging

from rq import Worker
from rq.worker_pool import WorkerPool

from config import settings
from services.upload_queue import get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    concurrency = max(int(settings.WORKER_CONCURRENCY), 1)
    if concurrency == 1:
        worker = Worker([settings.UPLOAD_QUEUE_NAME], connection=redis_conn)
        worker.work(with_scheduler=True)
        return

    # Each pool member takes one job at a time; SIGTERM lets in-flight jobs finish.
    pool = WorkerPool([settings.UPLOAD_QUEUE_NAME], connection=redis_conn, num_workers=concurrency)
    pool.start()


if __name__ == "__main__":
    main()
