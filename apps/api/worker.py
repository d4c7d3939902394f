"""RQ worker process entrypoint for task event jobs."""

import logging

from rq import Worker

from services.task_events import TASK_EVENTS_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    worker = Worker([TASK_EVENTS_QUEUE_NAME], connection=get_redis_connection())
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
