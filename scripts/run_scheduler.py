# scripts/run_scheduler.py

import logging
import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(ROOT)

from apscheduler.schedulers.blocking import BlockingScheduler

from app.config import configure_logging
from app.notification_scheduler import setup_scheduler

logger = logging.getLogger("scheduler")


def run():
    configure_logging()
    scheduler = setup_scheduler(scheduler=BlockingScheduler(timezone="UTC"))
    logger.info("Starting notification scheduler (Ctrl+C to stop)")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Notification scheduler stopped")


if __name__ == "__main__":
    run()
